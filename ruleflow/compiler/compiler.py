"""
Rule compiler for transforming rule specs to IR.

Compiles declarative rule specifications into frozen ``CompiledRule`` objects
and a shared ``RuleSet``. Structural defects are collected and raised together
as ``MalformedRuleSet``; a rule set that compiles is never rejected later.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable

from pydantic import ValidationError

from ruleflow.compiler.ir import (
    AggregateCondition,
    CompiledRule,
    Condition,
    FieldRef,
    FieldTest,
    JoinCondition,
    KeyBinding,
    NegationCondition,
    PatternCondition,
    RuleSet,
)
from ruleflow.compiler.operators import normalize_operator
from ruleflow.compiler.type_index import TypeIndex
from ruleflow.core.errors import MalformedRuleSet
from ruleflow.core.logging import get_logger
from ruleflow.facts.models import FactType
from ruleflow.rules.schemas import (
    ActionSpec,
    AggregateSpec,
    CheckSpec,
    JoinSpec,
    NotSpec,
    PatternSpec,
    RuleSetSpec,
    RuleSpec,
)

logger = get_logger("ruleflow.compiler")

AGGREGATE_FUNCTIONS = ("count", "sum", "min", "max")


class RuleCompiler:
    """Compiles rule set specs to IR."""

    def __init__(self):
        self._problems: list[str] = []

    def compile(self, spec: RuleSetSpec | dict[str, Any]) -> RuleSet:
        """Compile a rule set.

        Args:
            spec: The rule set spec (or a dict validated into one)

        Returns:
            Immutable compiled RuleSet

        Raises:
            MalformedRuleSet: If any structural problem was found
        """
        if isinstance(spec, dict):
            try:
                spec = RuleSetSpec.model_validate(spec)
            except ValidationError as exc:
                raise MalformedRuleSet(
                    [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
                ) from exc

        self._problems = []

        fact_types = self._compile_fact_types(spec)

        rules: list[CompiledRule] = []
        seen: set[str] = set()
        for order, rule_spec in enumerate(spec.rules):
            if rule_spec.name in seen:
                self._problem(rule_spec.name, "duplicate rule name")
                continue
            seen.add(rule_spec.name)
            rule = self.compile_rule(rule_spec, fact_types, order)
            if rule is not None:
                rules.append(rule)

        if self._problems:
            logger.warning("Rule set rejected", rule_set=spec.name, problems=len(self._problems))
            raise MalformedRuleSet(self._problems)

        index = TypeIndex()
        index.build(rules)

        rule_set = RuleSet(
            fact_types=fact_types,
            rules=tuple(rules),
            index=index,
            digest=self._digest(spec),
            name=spec.name,
            version=spec.version,
        )
        logger.info(
            "Rule set compiled",
            rule_set=spec.name,
            rules=len(rules),
            fact_types=len(fact_types),
            digest=rule_set.digest,
        )
        return rule_set

    def compile_rule(
        self,
        spec: RuleSpec,
        fact_types: dict[str, FactType],
        order: int = 0,
    ) -> CompiledRule | None:
        """Compile a single rule, recording problems instead of raising.

        Args:
            spec: The rule spec
            fact_types: Declared fact types
            order: Declaration position

        Returns:
            CompiledRule, or None if the rule has problems
        """
        before = len(self._problems)
        bound: dict[str, str] = {}  # var -> fact type
        conditions: list[Condition] = []

        for position, cond in enumerate(spec.conditions):
            where = f"{spec.name}.conditions[{position}]"
            compiled = self._compile_condition(cond, where, fact_types, bound)
            if compiled is not None:
                conditions.append(compiled)

        action = self._compile_actions(spec, fact_types, bound)

        if len(self._problems) > before:
            return None

        return CompiledRule(
            name=spec.name,
            priority=spec.priority,
            conditions=tuple(conditions),
            action=action,
            description=spec.description,
            explanation=spec.explanation,
            order=order,
            refire_on_change=spec.refire_on_change,
        )

    # =========================================================================
    # Fact types
    # =========================================================================

    def _compile_fact_types(self, spec: RuleSetSpec) -> dict[str, FactType]:
        fact_types: dict[str, FactType] = {}
        for ft in spec.fact_types:
            if ft.name in fact_types:
                self._problems.append(f"fact type '{ft.name}': declared twice")
                continue
            fact_types[ft.name] = FactType(
                name=ft.name,
                fields=tuple(ft.fields) if ft.fields is not None else None,
                description=ft.description,
            )
        return fact_types

    # =========================================================================
    # Conditions
    # =========================================================================

    def _compile_condition(
        self,
        cond: PatternSpec | JoinSpec | NotSpec | AggregateSpec,
        where: str,
        fact_types: dict[str, FactType],
        bound: dict[str, str],
    ) -> Condition | None:
        if isinstance(cond, PatternSpec):
            return self._compile_pattern(cond, where, fact_types, bound)
        if isinstance(cond, JoinSpec):
            return self._compile_join(cond, where, fact_types, bound)
        if isinstance(cond, NotSpec):
            return self._compile_negation(cond, where, fact_types, bound)
        return self._compile_aggregate(cond, where, fact_types, bound)

    def _compile_pattern(self, cond, where, fact_types, bound) -> PatternCondition | None:
        if not self._check_type(cond.fact_type, where, fact_types):
            return None
        if cond.var in bound:
            self._problem(where, f"variable '{cond.var}' bound twice")
            return None
        tests = self._compile_tests(cond.tests, cond.fact_type, where, fact_types)
        bound[cond.var] = cond.fact_type
        if tests is None:
            return None
        return PatternCondition(
            var=cond.var,
            fact_type=cond.fact_type,
            tests=tests,
            predicate=cond.where,
        )

    def _compile_join(self, cond, where, fact_types, bound) -> JoinCondition | None:
        if cond.where is None and (cond.left is None or cond.right is None):
            self._problem(where, "join needs 'left' and 'right' or a 'where' predicate")
            return None
        if (cond.left is None) != (cond.right is None):
            self._problem(where, "join needs both 'left' and 'right'")
            return None

        ok = True
        left = right = None
        if cond.left is not None:
            left = self._field_ref(cond.left, where, fact_types, bound)
            right = self._field_ref(cond.right, where, fact_types, bound)
            ok = left is not None and right is not None

        op = self._operator(cond.operator, where)
        for var in cond.variables:
            if var not in bound:
                self._problem(where, f"join references unbound variable '{var}'")
                ok = False
        if cond.where is not None and not cond.variables:
            self._problem(where, "join predicate needs 'variables'")
            ok = False

        if not ok or op is None:
            return None
        return JoinCondition(
            left=left,
            op=op,
            right=right,
            predicate=cond.where,
            variables=tuple(cond.variables),
        )

    def _compile_negation(self, cond, where, fact_types, bound) -> NegationCondition | None:
        if not self._check_type(cond.fact_type, where, fact_types):
            return None
        tests = self._compile_tests(cond.tests, cond.fact_type, where, fact_types)
        keys = self._compile_keys(cond.match, cond.fact_type, where, fact_types, bound)
        if tests is None or keys is None:
            return None
        return NegationCondition(
            fact_type=cond.fact_type,
            tests=tests,
            predicate=cond.where,
            keys=keys,
        )

    def _compile_aggregate(self, cond, where, fact_types, bound) -> AggregateCondition | None:
        if not self._check_type(cond.fact_type, where, fact_types):
            return None
        ok = True
        function = cond.function.lower()
        if function not in AGGREGATE_FUNCTIONS:
            self._problem(where, f"unknown aggregate function '{cond.function}'")
            ok = False
        elif function != "count":
            if not cond.field:
                self._problem(where, f"aggregate '{function}' needs a 'field'")
                ok = False
            elif not self._check_field(cond.fact_type, cond.field, where, fact_types):
                ok = False
        if cond.bind is not None and cond.bind in bound:
            self._problem(where, f"aggregate binding '{cond.bind}' shadows a variable")
            ok = False

        op = self._operator(cond.operator, where)
        tests = self._compile_tests(cond.tests, cond.fact_type, where, fact_types)
        keys = self._compile_keys(cond.match, cond.fact_type, where, fact_types, bound)
        if not ok or op is None or tests is None or keys is None:
            return None
        return AggregateCondition(
            fact_type=cond.fact_type,
            tests=tests,
            predicate=cond.where,
            keys=keys,
            function=function,
            field=cond.field,
            op=op,
            threshold=cond.threshold,
            bind=cond.bind,
        )

    def _compile_tests(
        self,
        tests: list[CheckSpec],
        fact_type: str,
        where: str,
        fact_types: dict[str, FactType],
    ) -> tuple[FieldTest, ...] | None:
        compiled: list[FieldTest] = []
        ok = True
        for test in tests:
            op = self._operator(test.operator, where)
            if op is None or not self._check_field(fact_type, test.field, where, fact_types):
                ok = False
                continue
            value = test.value
            if op in ("in", "not_in") and isinstance(value, (list, set, frozenset)):
                value = tuple(value)
            compiled.append(FieldTest(field=test.field, op=op, value=value))
        return tuple(compiled) if ok else None

    def _compile_keys(
        self,
        match: dict[str, str],
        fact_type: str,
        where: str,
        fact_types: dict[str, FactType],
        bound: dict[str, str],
    ) -> tuple[KeyBinding, ...] | None:
        keys: list[KeyBinding] = []
        ok = True
        for field in sorted(match):
            ref = self._field_ref(match[field], where, fact_types, bound)
            if ref is None or not self._check_field(fact_type, field, where, fact_types):
                ok = False
                continue
            keys.append(KeyBinding(field=field, ref=ref))
        return tuple(keys) if ok else None

    # =========================================================================
    # Actions
    # =========================================================================

    def _compile_actions(
        self,
        spec: RuleSpec,
        fact_types: dict[str, FactType],
        bound: dict[str, str],
    ) -> Callable[..., None]:
        steps: list[Callable[..., None]] = []
        for position, action in enumerate(spec.actions):
            where = f"{spec.name}.actions[{position}]"
            step = self._compile_action(action, where, fact_types, bound)
            if step is not None:
                steps.append(step)
        if spec.then is not None:
            steps.append(spec.then)
        return sequence(*steps)

    def _compile_action(
        self,
        action: ActionSpec,
        where: str,
        fact_types: dict[str, FactType],
        bound: dict[str, str],
    ) -> Callable[..., None] | None:
        kind = action.kind

        if kind == "explain":
            if not action.text:
                self._problem(where, "explain needs 'text'")
                return None
            return explain(action.text)

        if kind == "insert":
            if not action.fact_type:
                self._problem(where, "insert needs 'fact_type'")
                return None
            if not self._check_type(action.fact_type, where, fact_types):
                return None
            declared = fact_types[action.fact_type]
            extra = declared.undeclared(action.data)
            if extra:
                self._problem(where, f"undeclared fields for '{action.fact_type}': {', '.join(extra)}")
                return None
            return insert_fact(action.fact_type, action.data)

        if action.target not in bound:
            self._problem(where, f"{kind} targets unbound variable '{action.target}'")
            return None

        if kind == "retract":
            return retract_var(action.target)

        if not action.field:
            self._problem(where, f"{kind} needs 'field'")
            return None
        if not self._check_field(bound[action.target], action.field, where, fact_types):
            return None
        if kind == "set":
            return set_field(action.target, action.field, action.value)
        return append_to(action.target, action.field, action.value, unique=action.unique)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _problem(self, where: str, message: str) -> None:
        self._problems.append(f"{where}: {message}")

    def _check_type(self, fact_type: str, where: str, fact_types: dict[str, FactType]) -> bool:
        if fact_type not in fact_types:
            self._problem(where, f"undeclared fact type '{fact_type}'")
            return False
        return True

    def _check_field(
        self,
        fact_type: str,
        field: str,
        where: str,
        fact_types: dict[str, FactType],
    ) -> bool:
        declared = fact_types.get(fact_type)
        if declared is None or declared.fields is None or field in declared.fields:
            return True
        self._problem(where, f"undeclared field '{field}' on '{fact_type}'")
        return False

    def _operator(self, op: str, where: str) -> str | None:
        canonical = normalize_operator(op)
        if canonical is None:
            self._problem(where, f"unknown operator '{op}'")
        return canonical

    def _field_ref(
        self,
        ref: str,
        where: str,
        fact_types: dict[str, FactType],
        bound: dict[str, str],
    ) -> FieldRef | None:
        var, sep, field = ref.partition(".")
        if not sep or not var or not field:
            self._problem(where, f"expected 'var.field', got '{ref}'")
            return None
        if var not in bound:
            self._problem(where, f"reference to unbound variable '{var}'")
            return None
        if not self._check_field(bound[var], field, where, fact_types):
            return None
        return FieldRef(var=var, field=field)

    def _digest(self, spec: RuleSetSpec) -> str:
        """Content hash of the rule set, ignoring Python callables."""
        payload = spec.model_dump(
            mode="python",
            exclude={"rules": {"__all__": {"then": True, "conditions": {"__all__": {"where"}}}}},
        )
        content = json.dumps(payload, sort_keys=True, default=_describe)
        return hashlib.sha256(content.encode()).hexdigest()[:16]


def _describe(value: Any) -> str:
    """JSON fallback for values in rule specs (callables are named, not hashed)."""
    if callable(value):
        return getattr(value, "__qualname__", type(value).__name__)
    return repr(value)


# =============================================================================
# Declarative actions
# =============================================================================


def _resolve(value: Any, ctx: Any) -> Any:
    return value(ctx) if callable(value) else value


def set_field(target: str, field: str, value: Any) -> Callable[..., None]:
    """Action: set ``target.field`` to ``value``."""

    def action(ctx) -> None:
        ctx.modify(target, **{field: _resolve(value, ctx)})

    return action


def append_to(target: str, field: str, value: Any, unique: bool = False) -> Callable[..., None]:
    """Action: append ``value`` to the list in ``target.field``."""

    def action(ctx) -> None:
        item = _resolve(value, ctx)
        current = list(ctx.current(target).get(field) or [])
        if unique and item in current:
            return
        current.append(item)
        ctx.modify(target, **{field: current})

    return action


def insert_fact(fact_type: str, data: dict[str, Any]) -> Callable[..., None]:
    """Action: insert a fact. Callable values are resolved against the context."""

    def action(ctx) -> None:
        ctx.insert(fact_type, {key: _resolve(val, ctx) for key, val in data.items()})

    return action


def retract_var(target: str) -> Callable[..., None]:
    """Action: retract the fact bound to ``target``."""

    def action(ctx) -> None:
        ctx.retract(target)

    return action


def explain(text: str) -> Callable[..., None]:
    """Action: append a formatted explanation."""

    def action(ctx) -> None:
        ctx.explain(ctx.format(text))

    return action


def sequence(*steps: Callable[..., None]) -> Callable[..., None]:
    """Combine actions into one, run in order."""

    def action(ctx) -> None:
        for step in steps:
            step(ctx)

    return action


def compile_rules(spec: RuleSetSpec | dict[str, Any]) -> RuleSet:
    """Convenience function to compile a rule set.

    Args:
        spec: The rule set spec or an equivalent dict

    Returns:
        Compiled RuleSet
    """
    return RuleCompiler().compile(spec)
