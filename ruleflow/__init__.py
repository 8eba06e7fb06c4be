"""
ruleflow - a forward-chaining production rule engine.

Compile a rule set once, then create sessions over it:

    rule_set = compile_rules(spec)
    result = run(create_session(rule_set, [("transaction", {"amount": 12500})]))
"""

from ruleflow.compiler import RuleCompiler, RuleSet, compile_rules
from ruleflow.core import (
    EngineSettings,
    MalformedRuleSet,
    NoSuchFact,
    RuleEngineError,
    SessionStateError,
    StaleFactReference,
    UnknownFactType,
    configure_logging,
    get_settings,
)
from ruleflow.facts import Fact, FactInput, FactType
from ruleflow.rules import RuleSetSpec, RuleSpec
from ruleflow.runtime import (
    ActionContext,
    FiringStatus,
    RunResult,
    Session,
    TerminalState,
    TraceEntry,
    create_session,
    run,
    run_sessions,
)

__version__ = "0.1.0"

__all__ = [
    # Rule sets
    "RuleSetSpec",
    "RuleSpec",
    "RuleCompiler",
    "RuleSet",
    "compile_rules",
    # Facts
    "Fact",
    "FactInput",
    "FactType",
    # Sessions
    "Session",
    "ActionContext",
    "create_session",
    "run",
    "run_sessions",
    "RunResult",
    "TraceEntry",
    "TerminalState",
    "FiringStatus",
    # Errors
    "RuleEngineError",
    "NoSuchFact",
    "StaleFactReference",
    "MalformedRuleSet",
    "UnknownFactType",
    "SessionStateError",
    # Config
    "EngineSettings",
    "get_settings",
    "configure_logging",
]
