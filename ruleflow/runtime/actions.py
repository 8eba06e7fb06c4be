"""
Action execution context.

Every rule action receives an ``ActionContext``: the facts bound by the
activation, the values of named aggregates, fact store operations and an
explanation buffer.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

from ruleflow.facts.models import Fact
from ruleflow.facts.store import FactStore
from ruleflow.runtime.agenda import Activation

FactRef = str | int | Fact


class _FieldView:
    """Attribute-style access to fact fields for explanation templates."""

    def __init__(self, fact: Fact):
        self._fact = fact

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._fact.get(name)

    def __str__(self) -> str:
        return f"{self._fact.fact_type}#{self._fact.fact_id}"

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


class ActionContext:
    """What a rule's right-hand side can see and do."""

    def __init__(
        self,
        store: FactStore,
        activation: Activation,
        bindings: dict[str, Fact],
        values: dict[str, Any] | None = None,
        cycle: int = 0,
    ):
        self._store = store
        self._activation = activation
        self._bindings = dict(bindings)
        self._values = dict(values or {})
        self._explanations: list[str] = []
        self.cycle = cycle

    # =========================================================================
    # Bound data
    # =========================================================================

    @property
    def rule_name(self) -> str:
        return self._activation.rule.name

    @property
    def facts(self) -> Mapping[str, Fact]:
        """Facts bound by the activation, as they were when it fired."""
        return MappingProxyType(self._bindings)

    def fact(self, var: str) -> Fact:
        """The snapshot bound to a variable when the activation fired."""
        return self._bindings[var]

    def current(self, target: FactRef) -> Fact:
        """The live snapshot of a bound variable or identity."""
        return self._store.get(self._fact_id(target))

    def value(self, name: str) -> Any:
        """Value of a named aggregate."""
        return self._values[name]

    # =========================================================================
    # Fact store operations
    # =========================================================================

    def insert(self, fact_type: str, data: Mapping[str, Any] | None = None, **fields: Any) -> int:
        return self._store.insert(fact_type, {**(data or {}), **fields})

    def update(self, target: FactRef, data: Mapping[str, Any]) -> Fact:
        return self._store.update(self._fact_id(target), data)

    def modify(self, target: FactRef, **changes: Any) -> Fact:
        return self._store.modify(self._fact_id(target), **changes)

    def retract(self, target: FactRef) -> Fact:
        return self._store.retract(self._fact_id(target))

    def get(self, fact_id: int) -> Fact:
        return self._store.get(fact_id)

    def scan(self, fact_type: str) -> list[Fact]:
        return self._store.scan(fact_type)

    # =========================================================================
    # Explanations
    # =========================================================================

    def explain(self, text: str) -> None:
        """Append a human-readable reason to this firing's trace entry."""
        self._explanations.append(text)

    def format(self, template: str) -> str:
        """Format a template with bound facts (``{t.amount}``) and aggregate values."""
        views = {var: _FieldView(fact) for var, fact in self._bindings.items()}
        return template.format(**views, **self._values)

    @property
    def explanation(self) -> str:
        return "; ".join(self._explanations)

    def _fact_id(self, target: FactRef) -> int:
        if isinstance(target, Fact):
            return target.fact_id
        if isinstance(target, str):
            return self._bindings[target].fact_id
        return target
