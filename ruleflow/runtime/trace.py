"""
Firing trace and run results.

The trace is the audit record of a session: every selected activation leaves
exactly one entry, whether its action succeeded or not.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import yaml
from pydantic import BaseModel, Field

from ruleflow.facts.models import Fact


class TerminalState(str, Enum):
    """States of the inference loop."""

    RUNNING = "running"
    CONVERGED = "converged"
    CYCLE_LIMIT_EXCEEDED = "cycle_limit_exceeded"


class FiringStatus(str, Enum):
    """Outcome of one activation's execution."""

    FIRED = "fired"
    FAILED = "failed"
    STALE = "stale"
    """The action referenced a fact retracted earlier in the same cycle."""


class TraceEntry(BaseModel):
    """A single firing in the trace."""

    cycle_number: int
    """1-based inference cycle in which the activation fired."""

    rule_name: str
    """The rule that fired."""

    bound_fact_identities: list[int] = Field(default_factory=list)
    """Identities bound by the activation, in LHS order."""

    explanation_text: str = ""
    """Human-readable reasons appended by the rule."""

    status: FiringStatus = FiringStatus.FIRED
    """Whether the action ran to completion."""

    error: str | None = None
    """Error message if the action was aborted."""

    error_type: str | None = None
    """Error class name if the action was aborted."""

    @property
    def succeeded(self) -> bool:
        return self.status == FiringStatus.FIRED


class RunResult(BaseModel):
    """Result of running a session."""

    session_id: str
    """Identifier of the session that produced this result."""

    terminal_state: TerminalState
    """Converged, or cycle_limit_exceeded with partial results."""

    final_facts: list[Fact] = Field(default_factory=list)
    """Live facts at the end of the run, ordered by identity."""

    trace: list[TraceEntry] = Field(default_factory=list)
    """Ordered firing trace."""

    cycles: int = 0
    """Number of activations fired."""

    halted_by: str | None = None
    """'cycle_limit' or 'time_budget' when the run did not converge."""

    elapsed_ms: float = 0.0
    """Wall-clock duration of the run."""

    rule_set_digest: str | None = None
    """Digest of the compiled rule set, for audit."""

    @property
    def converged(self) -> bool:
        return self.terminal_state == TerminalState.CONVERGED

    def fired_rules(self) -> list[str]:
        """Names of rules whose actions completed, in firing order."""
        return [entry.rule_name for entry in self.trace if entry.succeeded]

    def explanations(self) -> list[str]:
        """Non-empty explanations in firing order (e.g., risk reasons)."""
        return [entry.explanation_text for entry in self.trace if entry.explanation_text]

    def failures(self) -> list[TraceEntry]:
        """Trace entries of aborted activations."""
        return [entry for entry in self.trace if not entry.succeeded]

    def facts_of(self, fact_type: str) -> list[Fact]:
        """Final facts of one type."""
        return [fact for fact in self.final_facts if fact.fact_type == fact_type]

    def to_dict(self) -> dict[str, Any]:
        """Serializable form of the result."""
        return self.model_dump(mode="json")

    def to_yaml(self) -> str:
        """YAML audit report of the run."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)
