"""
Intermediate Representation (IR) types for compiled rules.

These models are the compile-time output handed to sessions. They are frozen:
a compiled rule set is shared read-only by every session built from it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict

from ruleflow.compiler.operators import compare
from ruleflow.core.logging import get_logger
from ruleflow.facts.models import Fact, FactType

if TYPE_CHECKING:
    from ruleflow.compiler.type_index import TypeIndex
    from ruleflow.runtime.actions import ActionContext


logger = get_logger("ruleflow.compiler.ir")

OperatorName = Literal["eq", "ne", "in", "not_in", "contains", "gt", "lt", "gte", "lte", "exists"]


def call_predicate(predicate: Callable[..., Any], *facts: Fact) -> bool:
    """Call a user predicate. A predicate that raises does not match."""
    try:
        return bool(predicate(*facts))
    except Exception as exc:
        logger.warning(
            "Predicate raised, treating as no match",
            predicate=getattr(predicate, "__qualname__", repr(predicate)),
            fact_ids=[fact.fact_id for fact in facts],
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return False


def hashable(value: Any) -> Any:
    """Freeze a field value so it can be used in a correlation key."""
    if isinstance(value, (list, tuple)):
        return tuple(hashable(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, hashable(v)) for k, v in value.items()))
    return value


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class FieldRef(_Frozen):
    """A reference to a field of a bound variable (``var.field``)."""

    var: str
    field: str

    def resolve(self, bindings: dict[str, Fact]) -> Any:
        return bindings[self.var].get(self.field)

    def __str__(self) -> str:
        return f"{self.var}.{self.field}"


class FieldTest(_Frozen):
    """A single-fact check: ``fact[field] <op> value``."""

    field: str
    op: OperatorName
    value: Any = None

    def matches(self, fact: Fact) -> bool:
        return compare(self.op, fact.get(self.field), self.value)


class KeyBinding(_Frozen):
    """Equality correlation between a field of a candidate fact and a bound field."""

    field: str
    """Field of the negated / aggregated fact."""

    ref: FieldRef
    """Bound field it must equal."""


# =============================================================================
# Conditions
# =============================================================================


class FactFilter(_Frozen):
    """Single-fact filter shared by pattern, negation and aggregate conditions."""

    fact_type: str
    tests: tuple[FieldTest, ...] = ()
    predicate: Callable[[Fact], bool] | None = None

    def accepts(self, fact: Fact) -> bool:
        """Check whether a fact passes this filter."""
        if fact.fact_type != self.fact_type:
            return False
        for test in self.tests:
            if not test.matches(fact):
                return False
        if self.predicate is not None and not call_predicate(self.predicate, fact):
            return False
        return True

    @property
    def filter_key(self) -> tuple[Any, ...]:
        """Identity of this filter, used to share alpha memories."""
        predicate_id = id(self.predicate) if self.predicate is not None else None
        return (self.fact_type, repr(self.tests), predicate_id)


class PatternCondition(FactFilter):
    """Binds ``var`` to one fact passing the filter."""

    kind: Literal["pattern"] = "pattern"
    var: str


class JoinCondition(_Frozen):
    """A test across already-bound variables.

    Either a field comparison ``left <op> right`` or a predicate called with
    the bound facts of ``variables`` in order.
    """

    kind: Literal["join"] = "join"
    left: FieldRef | None = None
    op: OperatorName = "eq"
    right: FieldRef | None = None
    predicate: Callable[..., bool] | None = None
    variables: tuple[str, ...] = ()

    def holds(self, bindings: dict[str, Fact]) -> bool:
        if self.left is not None and self.right is not None:
            if not compare(self.op, self.left.resolve(bindings), self.right.resolve(bindings)):
                return False
        if self.predicate is not None:
            return call_predicate(self.predicate, *(bindings[var] for var in self.variables))
        return True


class NegationCondition(FactFilter):
    """Satisfied when no fact passing the filter (and the correlation keys) exists."""

    kind: Literal["not"] = "not"
    keys: tuple[KeyBinding, ...] = ()

    def fact_key(self, fact: Fact) -> tuple[Any, ...]:
        return tuple(hashable(fact.get(k.field)) for k in self.keys)

    def token_key(self, bindings: dict[str, Fact]) -> tuple[Any, ...]:
        return tuple(hashable(k.ref.resolve(bindings)) for k in self.keys)


class AggregateCondition(FactFilter):
    """Compares a running count/sum/min/max over filtered facts to a threshold."""

    kind: Literal["aggregate"] = "aggregate"
    keys: tuple[KeyBinding, ...] = ()
    function: Literal["count", "sum", "min", "max"] = "count"
    field: str | None = None
    op: OperatorName = "gte"
    threshold: Any = None
    bind: str | None = None
    """Name under which the aggregate value is exposed to the action."""

    def fact_key(self, fact: Fact) -> tuple[Any, ...]:
        return tuple(hashable(fact.get(k.field)) for k in self.keys)

    def token_key(self, bindings: dict[str, Fact]) -> tuple[Any, ...]:
        return tuple(hashable(k.ref.resolve(bindings)) for k in self.keys)

    def contribution(self, fact: Fact) -> Any:
        """Value a fact contributes, or None if it does not take part."""
        if self.function == "count":
            return 1
        value = fact.get(self.field) if self.field else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    def satisfied_by(self, value: Any) -> bool:
        return compare(self.op, value, self.threshold)


Condition = Union[PatternCondition, JoinCondition, NegationCondition, AggregateCondition]


# =============================================================================
# Rules
# =============================================================================


def _noop(ctx: ActionContext) -> None:
    """Action of rules that only record a firing."""


class CompiledRule(_Frozen):
    """A compiled, immutable production rule."""

    name: str
    priority: int = 0
    conditions: tuple[Condition, ...] = ()
    action: Callable[..., None] = _noop
    description: str | None = None
    explanation: str | None = None
    """Template formatted with bound facts (``{t.amount}``) on firing."""

    order: int = 0
    """Declaration position, the last conflict-resolution tie-break."""

    refire_on_change: bool = False
    """Re-activate when a bound fact is updated (versions join the refraction key)."""

    @property
    def specificity(self) -> int:
        return len(self.conditions)

    @property
    def variables(self) -> tuple[str, ...]:
        """Pattern variables in LHS order (the layout of a token)."""
        return tuple(c.var for c in self.conditions if isinstance(c, PatternCondition))

    @property
    def fact_types(self) -> set[str]:
        """Fact types referenced by the LHS."""
        return {c.fact_type for c in self.conditions if isinstance(c, FactFilter)}


class RuleSet:
    """An immutable, compiled set of rules shared by sessions."""

    def __init__(
        self,
        fact_types: dict[str, FactType],
        rules: tuple[CompiledRule, ...],
        index: TypeIndex,
        digest: str,
        name: str = "default",
        version: str = "1.0",
    ):
        self._fact_types = dict(fact_types)
        self._rules = tuple(rules)
        self._by_name = {rule.name: rule for rule in self._rules}
        self._index = index
        self._digest = digest
        self._name = name
        self._version = version

    @property
    def fact_types(self) -> dict[str, FactType]:
        return dict(self._fact_types)

    @property
    def rules(self) -> tuple[CompiledRule, ...]:
        return self._rules

    @property
    def index(self) -> TypeIndex:
        return self._index

    @property
    def digest(self) -> str:
        """Content hash of the compiled rules, for audit."""
        return self._digest

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    def rule(self, name: str) -> CompiledRule | None:
        return self._by_name.get(name)

    def __iter__(self) -> Iterator[CompiledRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RuleSet(name={self._name!r}, rules={len(self._rules)}, digest={self._digest!r})"
