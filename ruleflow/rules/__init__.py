"""Rules domain - declarative rule set specifications."""

from .schemas import (
    ActionSpec,
    AggregateSpec,
    CheckSpec,
    ConditionSpec,
    FactTypeSpec,
    JoinSpec,
    NotSpec,
    PatternSpec,
    RuleSetSpec,
    RuleSpec,
)

__all__ = [
    # Fact types
    "FactTypeSpec",
    # Conditions
    "CheckSpec",
    "PatternSpec",
    "JoinSpec",
    "NotSpec",
    "AggregateSpec",
    "ConditionSpec",
    # Actions
    "ActionSpec",
    # Rules
    "RuleSpec",
    "RuleSetSpec",
]
