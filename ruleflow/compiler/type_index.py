"""
Type index for change-driven rule lookup.

The type index is an inverted index mapping fact types to the rules (and the
condition positions within them) that reference the type, so a fact change
only touches the rules that can be affected by it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable

from ruleflow.compiler.ir import (
    AggregateCondition,
    CompiledRule,
    FactFilter,
    NegationCondition,
    PatternCondition,
)


class TypeIndex:
    """Maps fact types to the rules and condition positions referencing them."""

    def __init__(self):
        self._rules: dict[str, list[str]] = defaultdict(list)
        self._positions: dict[str, list[tuple[str, int]]] = defaultdict(list)

    def build(self, rules: Iterable[CompiledRule]) -> dict[str, list[str]]:
        """Build the index from a list of rules.

        Args:
            rules: Compiled rules in declaration order

        Returns:
            Dict mapping fact type to rule names in declaration order
        """
        self._rules.clear()
        self._positions.clear()

        for rule in rules:
            self.add_rule(rule)

        return {k: list(v) for k, v in self._rules.items()}

    def add_rule(self, rule: CompiledRule) -> list[str]:
        """Add a single rule to the index.

        Args:
            rule: Compiled rule to add

        Returns:
            List of fact types the rule was indexed under
        """
        keys: list[str] = []
        for position, condition in enumerate(rule.conditions):
            if not isinstance(condition, FactFilter):
                continue
            fact_type = condition.fact_type
            self._positions[fact_type].append((rule.name, position))
            if rule.name not in self._rules[fact_type]:
                self._rules[fact_type].append(rule.name)
                keys.append(fact_type)
        return keys

    def lookup(self, fact_type: str) -> list[str]:
        """Names of rules whose LHS references a fact type.

        Args:
            fact_type: Type tag of a changed fact

        Returns:
            Rule names in declaration order
        """
        return list(self._rules.get(fact_type, ()))

    def positions(self, fact_type: str) -> list[tuple[str, int]]:
        """``(rule name, condition index)`` pairs referencing a fact type."""
        return list(self._positions.get(fact_type, ()))

    def get_all_keys(self) -> list[str]:
        """Get all fact types in the index."""
        return list(self._rules.keys())

    def get_stats(self, rules: Iterable[CompiledRule] = ()) -> dict[str, Any]:
        """Get statistics about the index.

        Args:
            rules: Optionally, the indexed rules, to break positions down by
                condition kind

        Returns:
            Dict with index statistics
        """
        if not self._rules:
            return {
                "total_types": 0,
                "total_rules": 0,
                "avg_rules_per_type": 0,
                "max_rules_per_type": 0,
            }

        rule_counts = [len(v) for v in self._rules.values()]
        all_rules = set()
        for names in self._rules.values():
            all_rules.update(names)

        stats: dict[str, Any] = {
            "total_types": len(self._rules),
            "total_rules": len(all_rules),
            "avg_rules_per_type": sum(rule_counts) / len(rule_counts),
            "max_rules_per_type": max(rule_counts),
        }
        kinds = self._group_positions_by_kind(rules)
        if kinds:
            stats["positions_by_kind"] = kinds
        return stats

    def _group_positions_by_kind(self, rules: Iterable[CompiledRule]) -> dict[str, int]:
        """Count indexed condition positions by condition kind."""
        by_name = {rule.name: rule for rule in rules}
        kinds: dict[str, int] = defaultdict(int)
        for entries in self._positions.values():
            for name, position in entries:
                rule = by_name.get(name)
                if rule is None:
                    continue
                condition = rule.conditions[position]
                if isinstance(condition, PatternCondition):
                    kinds["pattern"] += 1
                elif isinstance(condition, NegationCondition):
                    kinds["not"] += 1
                elif isinstance(condition, AggregateCondition):
                    kinds["aggregate"] += 1
        return dict(kinds)
