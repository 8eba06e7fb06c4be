"""
Agenda of pending activations and the conflict-resolution policy.

Selection order:
    1. higher rule priority
    2. more LHS conditions (specificity)
    3. recency: the activation bound to the most recently inserted/updated
       fact wins. Stamps are compared most recent first; when one binding's
       stamps are a prefix of the other's, the binding with more facts wins
    4. rule declaration order, then the bound identities
The order is total, so selection is deterministic for identical inputs.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Iterator

from ruleflow.compiler.ir import CompiledRule

Token = tuple[int, ...]
ActivationKey = tuple[str, Token]


@dataclass(frozen=True, eq=False)
class Activation:
    """A rule together with a consistent binding of fact identities."""

    rule: CompiledRule
    token: Token
    recency: tuple[int, ...] = ()
    """Recency stamps of the bound facts, most recent first."""

    versions: tuple[int, ...] = ()
    """Versions of the bound facts, aligned with ``token``."""

    sort_key: tuple[Any, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        key = (
            -self.rule.priority,
            -self.rule.specificity,
            tuple(-stamp for stamp in self.recency) + (0,),  # 0 sorts after every negated stamp
            self.rule.order,
            self.token,
        )
        object.__setattr__(self, "sort_key", key)

    @property
    def key(self) -> ActivationKey:
        """Two activations are the same iff rule and bound identities match."""
        return (self.rule.name, self.token)

    @property
    def rule_name(self) -> str:
        return self.rule.name


class Agenda:
    """Pending activations ordered by conflict resolution.

    Withdrawn activations stay in the heap until they surface and are skipped.
    """

    def __init__(self):
        self._heap: list[tuple[tuple[Any, ...], int, Activation]] = []
        self._entries: dict[ActivationKey, Activation] = {}
        self._counter = itertools.count()

    def offer(self, activation: Activation) -> None:
        """Add an activation, replacing any pending one with the same key."""
        self._entries[activation.key] = activation
        heapq.heappush(self._heap, (activation.sort_key, next(self._counter), activation))

    def withdraw(self, key: ActivationKey) -> bool:
        """Remove a pending activation.

        Returns:
            True if an activation was pending under the key
        """
        return self._entries.pop(key, None) is not None

    def select(self) -> Activation | None:
        """Remove and return the next activation to fire, or None if empty."""
        while self._heap:
            _, _, activation = heapq.heappop(self._heap)
            if self._entries.get(activation.key) is activation:
                del self._entries[activation.key]
                return activation
        return None

    def peek(self) -> Activation | None:
        """Return the next activation without removing it."""
        while self._heap:
            activation = self._heap[0][2]
            if self._entries.get(activation.key) is activation:
                return activation
            heapq.heappop(self._heap)
        return None

    def activations(self) -> list[Activation]:
        """Pending activations in firing order."""
        return sorted(self._entries.values(), key=lambda a: a.sort_key)

    def clear(self) -> None:
        self._heap.clear()
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Activation]:
        return iter(self.activations())
