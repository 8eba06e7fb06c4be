"""
Error taxonomy for the rule engine.

Per-activation failures (``NoSuchFact``, ``StaleFactReference``) are
recoverable and end up in the firing trace; ``MalformedRuleSet`` is fatal at
compile / session creation time.
"""

from __future__ import annotations

from typing import Any


class RuleEngineError(Exception):
    """Base exception for rule engine errors."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a serializable error payload."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NoSuchFact(RuleEngineError):
    """A fact identity that is not present in the fact store was referenced."""

    def __init__(self, fact_id: int, message: str | None = None):
        self.fact_id = fact_id
        super().__init__(
            "NO_SUCH_FACT",
            message or f"Fact not found: {fact_id}",
            {"fact_id": fact_id},
        )


class StaleFactReference(NoSuchFact):
    """A fact retracted earlier in the current cycle was referenced."""

    def __init__(self, fact_id: int):
        super().__init__(fact_id, f"Fact {fact_id} was retracted earlier in this cycle")
        self.code = "STALE_FACT_REFERENCE"


class MalformedRuleSet(RuleEngineError):
    """The rule set has structural defects and cannot be used."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        summary = "; ".join(self.problems[:3])
        if len(self.problems) > 3:
            summary += f" (+{len(self.problems) - 3} more)"
        super().__init__(
            "MALFORMED_RULE_SET",
            f"Malformed rule set: {summary}",
            {"problems": self.problems},
        )


class UnknownFactType(RuleEngineError):
    """A fact of an undeclared type, or with undeclared fields, was supplied."""

    def __init__(self, fact_type: str, fields: list[str] | None = None):
        self.fact_type = fact_type
        if fields:
            message = f"Undeclared fields for fact type '{fact_type}': {', '.join(fields)}"
        else:
            message = f"Undeclared fact type: {fact_type}"
        super().__init__(
            "UNKNOWN_FACT_TYPE",
            message,
            {"fact_type": fact_type, "fields": fields or []},
        )


class SessionStateError(RuleEngineError):
    """An operation is not allowed in the session's current state."""

    def __init__(self, message: str, state: str | None = None):
        super().__init__("SESSION_STATE_ERROR", message, {"state": state})
