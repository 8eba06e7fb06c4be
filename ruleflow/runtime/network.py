"""
Incremental matching network.

Keeps, per rule, the partial matches (tokens) satisfying each prefix of the
LHS, so a fact change only recomputes the matches it can affect:

- alpha memories: facts passing a single-fact filter, shared across rules
  with identical filters and reached through the type index
- beta levels: level i of a rule holds the tokens satisfying conditions 0..i;
  a token is the tuple of fact identities bound by the patterns so far
- negation memories: count of matching facts per correlation key
- aggregate memories: count and the multiset of contributions per group
  key; sum/min/max are computed from the multiset

Complete tokens are offered to the agenda and withdrawn when they stop
matching. Bindings that already fired are not offered again (refraction).
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from typing import Any, Callable, Iterable

from ruleflow.compiler.ir import (
    AggregateCondition,
    CompiledRule,
    FactFilter,
    JoinCondition,
    NegationCondition,
    PatternCondition,
    RuleSet,
)
from ruleflow.core.logging import get_logger
from ruleflow.facts.models import ChangeEvent, ChangeKind, Fact
from ruleflow.runtime.agenda import Activation, Agenda, Token

logger = get_logger("ruleflow.network")

RefractionKey = tuple[Any, ...]


# =============================================================================
# Memories
# =============================================================================


class AlphaMemory:
    """Identities of facts passing one single-fact filter."""

    def __init__(self, fact_filter: FactFilter):
        self.filter = fact_filter
        self.fact_ids: dict[int, None] = {}

    def accepts(self, fact: Fact) -> bool:
        return self.filter.accepts(fact)

    def __len__(self) -> int:
        return len(self.fact_ids)


class NegationMemory:
    """Counts facts matching a negation condition, per correlation key."""

    def __init__(self, condition: NegationCondition):
        self.condition = condition
        self.counts: dict[tuple[Any, ...], int] = defaultdict(int)
        self.members: dict[int, tuple[Any, ...]] = {}

    def add(self, fact: Fact) -> tuple[Any, ...] | None:
        """Count a fact. Returns its key if the key went from absent to present."""
        if not self.condition.accepts(fact):
            return None
        key = self.condition.fact_key(fact)
        self.members[fact.fact_id] = key
        self.counts[key] += 1
        return key if self.counts[key] == 1 else None

    def remove(self, fact_id: int) -> tuple[Any, ...] | None:
        """Uncount a fact. Returns its key if the key went from present to absent."""
        key = self.members.pop(fact_id, None)
        if key is None:
            return None
        self.counts[key] -= 1
        if self.counts[key] == 0:
            del self.counts[key]
            return key
        return None

    def blocked(self, key: tuple[Any, ...]) -> bool:
        return self.counts.get(key, 0) > 0


class _Bucket:
    def __init__(self):
        self.count = 0
        self.values: Counter = Counter()


def exact_sum(values: Iterable[Any]) -> Any:
    """Sum that does not depend on the order values were added or removed in.

    Integers are summed exactly; anything else goes through math.fsum.
    """
    values = list(values)
    if all(isinstance(value, int) for value in values):
        return sum(values)
    return math.fsum(values)


def aggregate_value(function: str, values: Iterable[Any]) -> Any:
    """Value of an aggregate function over the contributions of one group."""
    values = list(values)
    if function == "count":
        return len(values)
    if function == "sum":
        return exact_sum(values)
    if not values:
        return None
    return min(values) if function == "min" else max(values)


class AggregateMemory:
    """Running aggregate over facts matching an aggregate condition, per group key."""

    def __init__(self, condition: AggregateCondition):
        self.condition = condition
        self.buckets: dict[tuple[Any, ...], _Bucket] = {}
        self.members: dict[int, tuple[tuple[Any, ...], Any]] = {}

    def add(self, fact: Fact) -> tuple[Any, ...] | None:
        """Fold a fact into its bucket. Returns the key of the changed bucket."""
        if not self.condition.accepts(fact):
            return None
        contribution = self.condition.contribution(fact)
        if contribution is None:
            return None
        key = self.condition.fact_key(fact)
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = self.buckets[key] = _Bucket()
        bucket.count += 1
        bucket.values[contribution] += 1
        self.members[fact.fact_id] = (key, contribution)
        return key

    def remove(self, fact_id: int) -> tuple[Any, ...] | None:
        """Take a fact out of its bucket. Returns the key of the changed bucket."""
        entry = self.members.pop(fact_id, None)
        if entry is None:
            return None
        key, contribution = entry
        bucket = self.buckets[key]
        bucket.count -= 1
        bucket.values[contribution] -= 1
        if bucket.values[contribution] == 0:
            del bucket.values[contribution]
        if bucket.count == 0:
            del self.buckets[key]
        return key

    def value(self, key: tuple[Any, ...]) -> Any:
        bucket = self.buckets.get(key)
        if bucket is None:
            return aggregate_value(self.condition.function, ())
        if self.condition.function == "count":
            return bucket.count
        return aggregate_value(self.condition.function, bucket.values.elements())

    def passes(self, key: tuple[Any, ...]) -> bool:
        return self.condition.satisfied_by(self.value(key))


class RuleMemory:
    """Beta levels and condition memories of one rule."""

    def __init__(self, rule: CompiledRule):
        self.rule = rule
        self.variables = rule.variables
        self.levels: list[set[Token]] = [set() for _ in rule.conditions]
        self.alphas: dict[int, AlphaMemory] = {}
        self.negations: dict[int, NegationMemory] = {}
        self.aggregates: dict[int, AggregateMemory] = {}

        # Token width after each condition
        self.widths: list[int] = []
        width = 0
        for condition in rule.conditions:
            if isinstance(condition, PatternCondition):
                width += 1
            self.widths.append(width)

    def parent(self, position: int) -> list[Token]:
        """Tokens satisfying the conditions before ``position``."""
        if position == 0:
            return [()]
        return list(self.levels[position - 1])

    def complete(self) -> set[Token]:
        """Tokens satisfying the whole LHS."""
        if not self.levels:
            return {()}
        return set(self.levels[-1])

    def token_count(self) -> int:
        return sum(len(level) for level in self.levels)


# =============================================================================
# Network
# =============================================================================


class MatchingNetwork:
    """Maintains the activations of one session incrementally."""

    def __init__(self, rule_set: RuleSet, agenda: Agenda):
        """Build the network and activate rules satisfied by an empty store.

        Args:
            rule_set: Compiled rule set (shared, read-only)
            agenda: Agenda receiving offers and withdrawals
        """
        self._rule_set = rule_set
        self._agenda = agenda
        self._facts: dict[int, Fact] = {}
        self._alphas: dict[tuple[Any, ...], AlphaMemory] = {}
        self._alphas_by_type: dict[str, list[AlphaMemory]] = defaultdict(list)
        self._memories: dict[str, RuleMemory] = {}
        self._fired: set[RefractionKey] = set()

        for rule in rule_set:
            self._memories[rule.name] = self._build_memory(rule)

        for memory in self._memories.values():
            if not memory.rule.conditions:
                self._activate(memory, ())
            else:
                self._extend(memory, 0, self._pass(memory, 0, ()))

    def _build_memory(self, rule: CompiledRule) -> RuleMemory:
        memory = RuleMemory(rule)
        for position, condition in enumerate(rule.conditions):
            if isinstance(condition, PatternCondition):
                key = condition.filter_key
                alpha = self._alphas.get(key)
                if alpha is None:
                    alpha = self._alphas[key] = AlphaMemory(condition)
                    self._alphas_by_type[condition.fact_type].append(alpha)
                memory.alphas[position] = alpha
            elif isinstance(condition, NegationCondition):
                memory.negations[position] = NegationMemory(condition)
            elif isinstance(condition, AggregateCondition):
                memory.aggregates[position] = AggregateMemory(condition)
        return memory

    # =========================================================================
    # Change events
    # =========================================================================

    def on_change(self, event: ChangeEvent) -> None:
        """Apply a fact store change event."""
        if event.kind == ChangeKind.INSERTED:
            self._insert(event.fact)
        elif event.kind == ChangeKind.UPDATED:
            if event.previous is not None:
                self._retract(event.previous)
            self._insert(event.fact)
        else:
            self._retract(event.fact)

    def _insert(self, fact: Fact) -> None:
        fact_id = fact.fact_id
        self._facts[fact_id] = fact

        for alpha in self._alphas_by_type.get(fact.fact_type, ()):
            if alpha.accepts(fact):
                alpha.fact_ids[fact_id] = None

        positions = self._rule_set.index.positions(fact.fact_type)
        changed: list[tuple[RuleMemory, int, tuple[Any, ...]]] = []
        for name, position in positions:
            memory = self._memories[name]
            if position in memory.negations:
                key = memory.negations[position].add(fact)
            elif position in memory.aggregates:
                key = memory.aggregates[position].add(fact)
            else:
                continue
            if key is not None:
                changed.append((memory, position, key))

        for name, position in positions:
            memory = self._memories[name]
            alpha = memory.alphas.get(position)
            if alpha is None or fact_id not in alpha.fact_ids:
                continue
            seeds = [token + (fact_id,) for token in memory.parent(position) if fact_id not in token]
            self._extend(memory, position, seeds)

        for memory, position, key in changed:
            self._reevaluate(memory, position, key)

    def _retract(self, fact: Fact) -> None:
        fact_id = fact.fact_id

        for alpha in self._alphas_by_type.get(fact.fact_type, ()):
            alpha.fact_ids.pop(fact_id, None)

        changed: list[tuple[RuleMemory, int, tuple[Any, ...]]] = []
        first_pattern: dict[str, int] = {}
        for name, position in self._rule_set.index.positions(fact.fact_type):
            memory = self._memories[name]
            if position in memory.negations:
                key = memory.negations[position].remove(fact_id)
            elif position in memory.aggregates:
                key = memory.aggregates[position].remove(fact_id)
            else:
                first_pattern.setdefault(name, position)
                continue
            if key is not None:
                changed.append((memory, position, key))

        for name, position in first_pattern.items():
            self._remove(self._memories[name], position, lambda token: fact_id in token)

        del self._facts[fact_id]

        for memory, position, key in changed:
            self._reevaluate(memory, position, key)

    # =========================================================================
    # Token propagation
    # =========================================================================

    def _pass(self, memory: RuleMemory, position: int, token: Token) -> list[Token]:
        """Tokens produced by ``token`` at ``position`` (empty if it fails)."""
        condition = memory.rule.conditions[position]

        if isinstance(condition, PatternCondition):
            return [
                token + (fact_id,)
                for fact_id in memory.alphas[position].fact_ids
                if fact_id not in token
            ]

        bindings = self._bindings(memory, token)
        if isinstance(condition, JoinCondition):
            return [token] if condition.holds(bindings) else []
        if isinstance(condition, NegationCondition):
            key = condition.token_key(bindings)
            return [] if memory.negations[position].blocked(key) else [token]
        key = condition.token_key(bindings)
        return [token] if memory.aggregates[position].passes(key) else []

    def _extend(self, memory: RuleMemory, start: int, tokens: list[Token]) -> None:
        """Store tokens that satisfy conditions 0..start and push them forward."""
        levels = memory.levels
        current = [token for token in dict.fromkeys(tokens) if token not in levels[start]]
        levels[start].update(current)

        for position in range(start + 1, len(levels)):
            if not current:
                return
            produced: list[Token] = []
            for token in current:
                produced.extend(self._pass(memory, position, token))
            current = [token for token in dict.fromkeys(produced) if token not in levels[position]]
            levels[position].update(current)

        for token in current:
            self._activate(memory, token)

    def _remove(self, memory: RuleMemory, start: int, doomed: Callable[[Token], bool]) -> None:
        """Drop tokens matching ``doomed`` from level ``start`` onwards."""
        levels = memory.levels
        last = len(levels) - 1
        for position in range(start, len(levels)):
            gone = {token for token in levels[position] if doomed(token)}
            if not gone:
                continue
            levels[position] -= gone
            if position == last:
                for token in gone:
                    self._agenda.withdraw((memory.rule.name, token))

    def _reevaluate(self, memory: RuleMemory, position: int, key: tuple[Any, ...]) -> None:
        """Re-test tokens whose correlation key's negation/aggregate state changed."""
        condition = memory.rule.conditions[position]
        level = memory.levels[position]
        width = memory.widths[position]

        admitted: list[Token] = []
        rejected: set[Token] = set()
        for token in memory.parent(position):
            if condition.token_key(self._bindings(memory, token)) != key:
                continue
            passes = bool(self._pass(memory, position, token))
            if passes and token not in level:
                admitted.append(token)
            elif not passes and token in level:
                rejected.add(token)

        if rejected:
            self._remove(memory, position, lambda token: token[:width] in rejected)
        if admitted:
            self._extend(memory, position, admitted)

    # =========================================================================
    # Activations
    # =========================================================================

    def _bindings(self, memory: RuleMemory, token: Token) -> dict[str, Fact]:
        return {var: self._facts[fact_id] for var, fact_id in zip(memory.variables, token)}

    def _refraction_key(self, rule: CompiledRule, token: Token, versions: tuple[int, ...]) -> RefractionKey:
        if rule.refire_on_change:
            return (rule.name, token, versions)
        return (rule.name, token)

    def _activate(self, memory: RuleMemory, token: Token) -> None:
        facts = [self._facts[fact_id] for fact_id in token]
        versions = tuple(fact.version for fact in facts)
        if self._refraction_key(memory.rule, token, versions) in self._fired:
            return
        self._agenda.offer(
            Activation(
                rule=memory.rule,
                token=token,
                recency=tuple(sorted((fact.recency for fact in facts), reverse=True)),
                versions=versions,
            )
        )

    def mark_fired(self, activation: Activation) -> None:
        """Record that an activation fired so its binding is not offered again."""
        self._fired.add(self._refraction_key(activation.rule, activation.token, activation.versions))

    def bindings(self, activation: Activation) -> dict[str, Fact]:
        """Facts bound by an activation, by variable name."""
        return self._bindings(self._memories[activation.rule.name], activation.token)

    def aggregate_values(self, activation: Activation) -> dict[str, Any]:
        """Current values of the activation's named aggregates."""
        memory = self._memories[activation.rule.name]
        bindings = self._bindings(memory, activation.token)
        values: dict[str, Any] = {}
        for position, aggregate in memory.aggregates.items():
            condition = aggregate.condition
            if condition.bind is not None:
                values[condition.bind] = aggregate.value(condition.token_key(bindings))
        return values

    # =========================================================================
    # Inspection
    # =========================================================================

    def matches(self) -> set[tuple[str, Token]]:
        """Complete matches maintained incrementally."""
        return {
            (name, token)
            for name, memory in self._memories.items()
            for token in memory.complete()
        }

    def pending(self) -> set[tuple[str, Token]]:
        """Complete matches whose binding has not fired yet."""
        result = set()
        for name, memory in self._memories.items():
            for token in memory.complete():
                versions = tuple(self._facts[fact_id].version for fact_id in token)
                if self._refraction_key(memory.rule, token, versions) not in self._fired:
                    result.add((name, token))
        return result

    def rescan(self) -> set[tuple[str, Token]]:
        """Match every rule against the current facts from scratch.

        Ignores all memories; used to check the incremental state.
        """
        by_type: dict[str, list[Fact]] = defaultdict(list)
        for fact_id in sorted(self._facts):
            fact = self._facts[fact_id]
            by_type[fact.fact_type].append(fact)

        result: set[tuple[str, Token]] = set()
        for rule in self._rule_set:
            variables = rule.variables
            tokens: list[Token] = [()]
            for condition in rule.conditions:
                produced: list[Token] = []
                for token in tokens:
                    bindings = {var: self._facts[fact_id] for var, fact_id in zip(variables, token)}
                    if isinstance(condition, PatternCondition):
                        produced.extend(
                            token + (fact.fact_id,)
                            for fact in by_type[condition.fact_type]
                            if fact.fact_id not in token and condition.accepts(fact)
                        )
                    elif isinstance(condition, JoinCondition):
                        if condition.holds(bindings):
                            produced.append(token)
                    elif isinstance(condition, NegationCondition):
                        key = condition.token_key(bindings)
                        if not any(
                            condition.accepts(fact) and condition.fact_key(fact) == key
                            for fact in by_type[condition.fact_type]
                        ):
                            produced.append(token)
                    else:
                        key = condition.token_key(bindings)
                        contributions = [
                            condition.contribution(fact)
                            for fact in by_type[condition.fact_type]
                            if condition.accepts(fact) and condition.fact_key(fact) == key
                        ]
                        contributions = [c for c in contributions if c is not None]
                        value = aggregate_value(condition.function, contributions)
                        if condition.satisfied_by(value):
                            produced.append(token)
                tokens = produced
            result.update((rule.name, token) for token in tokens)
        return result

    def stats(self) -> dict[str, Any]:
        """Get statistics about the network state."""
        index = self._rule_set.index
        return {
            "rules_by_type": {fact_type: len(index.lookup(fact_type)) for fact_type in index.get_all_keys()},
            "index": index.get_stats(self._rule_set.rules),
            "facts": len(self._facts),
            "rules": len(self._memories),
            "alpha_memories": len(self._alphas),
            "alpha_entries": sum(len(alpha) for alpha in self._alphas.values()),
            "tokens": sum(memory.token_count() for memory in self._memories.values()),
            "complete_matches": sum(len(memory.complete()) for memory in self._memories.values()),
            "fired": len(self._fired),
        }
