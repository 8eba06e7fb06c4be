"""Pydantic models for declarative rule specifications handed to the compiler."""

from __future__ import annotations

from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, Field


# =============================================================================
# Fact Types
# =============================================================================


class FactTypeSpec(BaseModel):
    """A fact type declaration."""

    name: str = Field(..., description="Type tag (e.g., 'transaction')")
    fields: list[str] | None = Field(None, description="Declared fields, None for open types")
    description: str | None = Field(None, description="Human-readable description")


# =============================================================================
# Conditions
# =============================================================================


class CheckSpec(BaseModel):
    """A single field check on one fact."""

    field: str = Field(..., description="Field name to evaluate")
    operator: str = Field("==", description="Comparison operator")
    value: Any = Field(None, description="Expected value")


class PatternSpec(BaseModel):
    """Bind a variable to one fact of a type passing the tests."""

    kind: Literal["pattern"] = "pattern"
    var: str = Field(..., description="Variable name bound to the matching fact")
    fact_type: str = Field(..., description="Fact type to match")
    tests: list[CheckSpec] = Field(default_factory=list)
    where: Callable[..., bool] | None = Field(None, description="Extra predicate over the fact")


class JoinSpec(BaseModel):
    """A test across already-bound variables."""

    kind: Literal["join"] = "join"
    left: str | None = Field(None, description="Left operand as 'var.field'")
    operator: str = Field("==", description="Comparison operator")
    right: str | None = Field(None, description="Right operand as 'var.field'")
    where: Callable[..., bool] | None = Field(
        None, description="Predicate called with the facts bound to `variables`"
    )
    variables: list[str] = Field(default_factory=list)


class NotSpec(BaseModel):
    """Absence: no fact of the type passing the tests exists."""

    kind: Literal["not"] = "not"
    fact_type: str
    tests: list[CheckSpec] = Field(default_factory=list)
    where: Callable[..., bool] | None = None
    match: dict[str, str] = Field(
        default_factory=dict,
        description="Correlation: field of the negated fact -> bound 'var.field'",
    )


class AggregateSpec(BaseModel):
    """A count/sum/min/max over matching facts compared to a threshold."""

    kind: Literal["aggregate"] = "aggregate"
    fact_type: str
    function: str = Field("count", description="count, sum, min or max")
    field: str | None = Field(None, description="Aggregated field (sum/min/max)")
    tests: list[CheckSpec] = Field(default_factory=list)
    where: Callable[..., bool] | None = None
    match: dict[str, str] = Field(
        default_factory=dict,
        description="Grouping: field of the aggregated fact -> bound 'var.field'",
    )
    operator: str = Field(">=", description="Comparison against the threshold")
    threshold: Any = None
    bind: str | None = Field(None, description="Expose the aggregate value under this name")


ConditionSpec = Annotated[
    Union[PatternSpec, JoinSpec, NotSpec, AggregateSpec],
    Field(discriminator="kind"),
]


# =============================================================================
# Actions
# =============================================================================


class ActionSpec(BaseModel):
    """A declarative right-hand-side step.

    Kinds:
        set: ``target.field = value``
        append: append ``value`` to the list in ``target.field``
        insert: insert a fact of ``fact_type`` with ``data``
        retract: retract ``target``
        explain: append ``text`` (a template) to the explanation
    """

    kind: Literal["set", "append", "insert", "retract", "explain"]
    target: str | None = Field(None, description="Bound variable the step acts on")
    field: str | None = None
    value: Any = Field(None, description="Literal value, or a callable taking the action context")
    unique: bool = Field(False, description="For append: skip values already present")
    fact_type: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


# =============================================================================
# Rules
# =============================================================================


class RuleSpec(BaseModel):
    """A complete rule specification."""

    name: str = Field(..., description="Unique rule name")
    priority: int = Field(0, description="Higher fires first")
    description: str | None = None
    conditions: list[ConditionSpec] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(default_factory=list)
    then: Callable[..., Any] | None = Field(
        None, description="Python action run after the declarative actions"
    )
    explanation: str | None = Field(None, description="Explanation template, e.g. '{t.amount} > 10000'")
    refire_on_change: bool = False


class RuleSetSpec(BaseModel):
    """A collection of rules and the fact types they reason over."""

    name: str = Field("default", description="Rule set name")
    version: str = Field("1.0", description="Rule set version")
    fact_types: list[FactTypeSpec] = Field(default_factory=list)
    rules: list[RuleSpec] = Field(default_factory=list)
