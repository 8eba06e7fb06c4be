"""
Runtime package for the rule engine.

Sessions, the matching network, the agenda and the firing trace.
"""

from ruleflow.runtime.actions import ActionContext
from ruleflow.runtime.agenda import Activation, Agenda
from ruleflow.runtime.network import MatchingNetwork
from ruleflow.runtime.session import Session, create_session, run, run_sessions
from ruleflow.runtime.trace import FiringStatus, RunResult, TerminalState, TraceEntry

__all__ = [
    # Session
    "Session",
    "create_session",
    "run",
    "run_sessions",
    # Matching
    "MatchingNetwork",
    "Activation",
    "Agenda",
    # Actions
    "ActionContext",
    # Trace
    "FiringStatus",
    "RunResult",
    "TerminalState",
    "TraceEntry",
]
