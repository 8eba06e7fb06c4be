"""
Tests for the compiler layer.

Tests rule compilation, structural validation, operators and the type index.
"""

import pytest

from ruleflow.compiler import (
    AggregateCondition,
    JoinCondition,
    NegationCondition,
    PatternCondition,
    RuleCompiler,
    RuleSet,
    TypeIndex,
    compare,
    compile_rules,
    normalize_operator,
)
from ruleflow.core.errors import MalformedRuleSet
from ruleflow.rules import RuleSetSpec


def _spec(*rules, fact_types=None):
    return {
        "fact_types": fact_types or [
            {"name": "transaction", "fields": ["amount", "account", "tags"]},
            {"name": "account", "fields": ["id"]},
        ],
        "rules": list(rules),
    }


def _pattern(var="t", fact_type="transaction", **extra):
    return {"kind": "pattern", "var": var, "fact_type": fact_type, **extra}


class TestOperators:
    """Test the operator table."""

    def test_aliases_normalized(self):
        """Test symbolic spellings map to canonical names."""
        assert normalize_operator("==") == "eq"
        assert normalize_operator(">=") == "gte"
        assert normalize_operator("not in") == "not_in"
        assert normalize_operator("NOT IN") == "not_in"
        assert normalize_operator("lt") == "lt"

    def test_unknown_operator(self):
        """Test unknown spellings are rejected."""
        assert normalize_operator("~=") is None

    def test_ordering_tolerates_missing_values(self):
        """Test ordering on None or incomparable values is False, not an error."""
        assert compare("gt", None, 5) is False
        assert compare("lte", "abc", 5) is False
        assert compare("gt", 6, 5) is True

    def test_membership(self):
        """Test in, not_in and contains."""
        assert compare("in", "CN", ("CN", "IR"))
        assert compare("not_in", "DE", ("CN", "IR"))
        assert compare("contains", ["large"], "large")
        assert not compare("contains", None, "large")

    def test_exists(self):
        """Test exists ignores the expected value."""
        assert compare("exists", 0, None)
        assert not compare("exists", None, None)


class TestRuleCompiler:
    """Test compiling valid rule sets."""

    def test_compile_risk_rules(self, risk_rules):
        """Test the compiled rule set keeps rules in declaration order."""
        assert isinstance(risk_rules, RuleSet)
        assert [rule.name for rule in risk_rules] == ["large", "risky-country"]
        assert risk_rules.rule("large").priority == 10
        assert risk_rules.rule("missing") is None
        assert risk_rules.name == "risk"

    def test_condition_kinds(self, mixed_rules):
        """Test each spec kind compiles to its IR condition."""
        owned = mixed_rules.rule("owned")
        assert isinstance(owned.conditions[0], PatternCondition)
        assert isinstance(owned.conditions[2], JoinCondition)
        assert isinstance(mixed_rules.rule("unflagged").conditions[1], NegationCondition)
        busy = mixed_rules.rule("busy").conditions[1]
        assert isinstance(busy, AggregateCondition)
        assert busy.function == "count"
        assert busy.op == "gte"
        assert busy.bind == "n"

    def test_operators_canonicalized(self, risk_rules):
        """Test operators in field tests are stored canonically."""
        test = risk_rules.rule("large").conditions[0].tests[0]
        assert test.op == "gt"
        assert risk_rules.rule("risky-country").conditions[0].tests[0].value == ("CN", "KP", "IR")

    def test_rule_properties(self, mixed_rules):
        """Test specificity, variables and referenced types."""
        pair = mixed_rules.rule("pair")
        assert pair.specificity == 4
        assert pair.variables == ("t1", "t2")
        assert pair.fact_types == {"transaction", "flag"}

    def test_compiled_rules_are_frozen(self, risk_rules):
        """Test compiled rules cannot be mutated."""
        with pytest.raises(Exception):
            risk_rules.rule("large").priority = 0

    def test_accepts_spec_model(self, risk_rule_spec):
        """Test compiling a validated RuleSetSpec."""
        spec = RuleSetSpec.model_validate(risk_rule_spec)
        assert len(RuleCompiler().compile(spec)) == 2

    def test_digest_is_stable(self, risk_rule_spec):
        """Test identical specs produce identical digests."""
        assert compile_rules(risk_rule_spec).digest == compile_rules(risk_rule_spec).digest

    def test_digest_changes_with_rules(self, risk_rule_spec):
        """Test a changed priority changes the digest."""
        before = compile_rules(risk_rule_spec).digest
        risk_rule_spec["rules"][0]["priority"] = 1
        assert compile_rules(risk_rule_spec).digest != before

    def test_python_predicates(self):
        """Test callable predicates on patterns and joins."""
        rule_set = compile_rules(_spec({
            "name": "odd-pair",
            "conditions": [
                _pattern("t", where=lambda fact: fact.get("amount", 0) % 2 == 1),
                _pattern("a", "account"),
                {"kind": "join", "where": lambda t, a: t["account"] == a["id"], "variables": ["t", "a"]},
            ],
        }))
        join = rule_set.rule("odd-pair").conditions[2]
        assert join.variables == ("t", "a")
        assert join.predicate is not None

    def test_rule_without_conditions(self):
        """Test an empty LHS is a valid rule."""
        rule_set = compile_rules(_spec({"name": "always"}))
        assert rule_set.rule("always").specificity == 0


class TestMalformedRuleSet:
    """Test structural validation."""

    def _problems(self, spec) -> list[str]:
        with pytest.raises(MalformedRuleSet) as exc_info:
            compile_rules(spec)
        assert exc_info.value.code == "MALFORMED_RULE_SET"
        assert exc_info.value.details["problems"] == exc_info.value.problems
        return exc_info.value.problems

    def test_duplicate_rule_names(self):
        """Test two rules with one name."""
        problems = self._problems(_spec({"name": "r"}, {"name": "r"}))
        assert any("duplicate rule name" in p for p in problems)

    def test_duplicate_fact_types(self):
        """Test a fact type declared twice."""
        problems = self._problems(_spec(fact_types=[{"name": "x"}, {"name": "x"}]))
        assert any("declared twice" in p for p in problems)

    def test_undeclared_fact_type(self):
        """Test a pattern over an unknown type."""
        problems = self._problems(_spec({"name": "r", "conditions": [_pattern("r", "refund")]}))
        assert any("undeclared fact type 'refund'" in p for p in problems)

    def test_undeclared_field(self):
        """Test a field test on a field the type does not declare."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [_pattern(tests=[{"field": "iban", "operator": "==", "value": "X"}])],
        }))
        assert any("undeclared field 'iban'" in p for p in problems)

    def test_unknown_operator(self):
        """Test an operator outside the table."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [_pattern(tests=[{"field": "amount", "operator": "~=", "value": 1}])],
        }))
        assert any("unknown operator '~='" in p for p in problems)

    def test_variable_bound_twice(self):
        """Test two patterns binding the same variable."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [_pattern("t"), _pattern("t")],
        }))
        assert any("bound twice" in p for p in problems)

    def test_join_on_unbound_variable(self):
        """Test a join referencing a variable bound nowhere."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [
                _pattern("t"),
                {"kind": "join", "left": "t.account", "operator": "==", "right": "a.id"},
            ],
        }))
        assert any("unbound variable 'a'" in p for p in problems)

    def test_join_before_binding(self):
        """Test a join may only reference variables bound earlier."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [
                {"kind": "join", "left": "t.account", "operator": "==", "right": "a.id"},
                _pattern("t"),
                _pattern("a", "account"),
            ],
        }))
        assert problems

    def test_malformed_field_reference(self):
        """Test references must be 'var.field'."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [
                _pattern("t"),
                _pattern("a", "account"),
                {"kind": "join", "left": "t", "operator": "==", "right": "a.id"},
            ],
        }))
        assert any("expected 'var.field'" in p for p in problems)

    def test_unknown_aggregate_function(self):
        """Test aggregate functions outside count/sum/min/max."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [{"kind": "aggregate", "fact_type": "transaction", "function": "median",
                            "field": "amount", "threshold": 1}],
        }))
        assert any("unknown aggregate function 'median'" in p for p in problems)

    def test_sum_requires_field(self):
        """Test sum without a field."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [{"kind": "aggregate", "fact_type": "transaction", "function": "sum",
                            "threshold": 1}],
        }))
        assert any("needs a 'field'" in p for p in problems)

    def test_action_targets_unbound_variable(self):
        """Test an action acting on a variable the LHS does not bind."""
        problems = self._problems(_spec({
            "name": "r",
            "conditions": [_pattern("t")],
            "actions": [{"kind": "retract", "target": "x"}],
        }))
        assert any("unbound variable 'x'" in p for p in problems)

    def test_insert_with_undeclared_fields(self):
        """Test an insert action with fields the type does not declare."""
        problems = self._problems(_spec({
            "name": "r",
            "actions": [{"kind": "insert", "fact_type": "account", "data": {"owner": "x"}}],
        }))
        assert any("undeclared fields for 'account'" in p for p in problems)

    def test_problems_are_collected(self):
        """Test every problem is reported, not only the first."""
        problems = self._problems(_spec(
            {"name": "a", "conditions": [_pattern("r", "refund")]},
            {"name": "b", "conditions": [_pattern(tests=[{"field": "amount", "operator": "~", "value": 1}])]},
        ))
        assert len(problems) == 2

    def test_invalid_shape(self):
        """Test a spec that fails schema validation."""
        problems = self._problems({"rules": [{"name": "r", "conditions": [{"kind": "maybe"}]}]})
        assert problems


class TestTypeIndex:
    """Test the fact type index."""

    def test_lookup(self, mixed_rules):
        """Test rules are found by the types their LHS references."""
        index = mixed_rules.index
        assert index.lookup("flag") == ["unflagged", "pair"]
        assert index.lookup("account") == ["owned", "unflagged", "busy", "heavy", "peak"]
        assert index.lookup("refund") == []

    def test_positions(self, mixed_rules):
        """Test condition positions are recorded per type."""
        positions = mixed_rules.index.positions("transaction")
        assert ("owned", 1) in positions
        assert ("busy", 1) in positions
        assert ("pair", 0) in positions and ("pair", 1) in positions

    def test_build_from_rules(self, risk_rules):
        """Test building a fresh index."""
        index = TypeIndex()
        result = index.build(risk_rules.rules)
        assert result == {"transaction": ["large", "risky-country"]}
        assert index.get_all_keys() == ["transaction"]

    def test_stats(self, mixed_rules):
        """Test index statistics."""
        stats = mixed_rules.index.get_stats(mixed_rules.rules)
        assert stats["total_types"] == 3
        assert stats["total_rules"] == 7
        assert stats["positions_by_kind"]["not"] == 2
        assert stats["positions_by_kind"]["aggregate"] == 3

    def test_empty_stats(self):
        """Test statistics of an empty index."""
        assert TypeIndex().get_stats()["total_types"] == 0
