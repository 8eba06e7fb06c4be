"""
Fact store - typed, mutable collection of fact snapshots.

Every mutation emits a ``ChangeEvent`` to the subscribed listeners (the
matching network). Inside ``deferred()`` mutations hit the store immediately
but events are queued and delivered in order when the block exits, so a rule
action runs to completion before the network re-evaluates.
"""

from __future__ import annotations

from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping

from ruleflow.core.errors import NoSuchFact, StaleFactReference, UnknownFactType
from ruleflow.facts.models import ChangeEvent, ChangeKind, Fact, FactType

Listener = Callable[[ChangeEvent], None]


class FactStore:
    """Holds the live facts of one session."""

    def __init__(self, fact_types: Mapping[str, FactType] | None = None):
        """Initialize the store.

        Args:
            fact_types: Declared fact types. When given, inserts of any other
                type (or with undeclared fields) raise ``UnknownFactType``.
        """
        self._fact_types = dict(fact_types) if fact_types is not None else None
        self._facts: dict[int, Fact] = {}
        self._by_type: dict[str, dict[int, None]] = defaultdict(dict)
        self._next_id = 1
        self._clock = 0
        self._retracted_in_cycle: set[int] = set()
        self._listeners: list[Listener] = []
        self._deferred_depth = 0
        self._pending: deque[ChangeEvent] = deque()

    # =========================================================================
    # Listeners
    # =========================================================================

    def subscribe(self, listener: Listener) -> None:
        """Register a listener for change events."""
        self._listeners.append(listener)

    @contextmanager
    def deferred(self) -> Iterator[None]:
        """Queue change events until the outermost block exits."""
        self._deferred_depth += 1
        try:
            yield
        finally:
            self._deferred_depth -= 1
            if self._deferred_depth == 0:
                self._flush()

    def _emit(self, event: ChangeEvent) -> None:
        if self._deferred_depth:
            self._pending.append(event)
            return
        for listener in self._listeners:
            listener(event)

    def _flush(self) -> None:
        """Deliver every queued event, then re-raise the first listener error."""
        error: Exception | None = None
        while self._pending:
            event = self._pending.popleft()
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception as exc:
                    if error is None:
                        error = exc
        if error is not None:
            raise error

    def begin_cycle(self) -> None:
        """Start a new inference cycle."""
        self._retracted_in_cycle.clear()

    # =========================================================================
    # Mutations
    # =========================================================================

    def insert(self, fact_type: str, data: Mapping[str, Any] | None = None) -> int:
        """Insert a new fact.

        Args:
            fact_type: Type tag of the fact
            data: Field values

        Returns:
            The identity of the new fact
        """
        data = dict(data or {})
        self._check_type(fact_type, data)

        fact_id = self._next_id
        self._next_id += 1
        fact = Fact(
            fact_id=fact_id,
            fact_type=fact_type,
            data=data,
            version=1,
            recency=self._tick(),
        )
        self._facts[fact_id] = fact
        self._by_type[fact_type][fact_id] = None

        self._emit(ChangeEvent(ChangeKind.INSERTED, fact))
        return fact_id

    def update(self, fact_id: int, data: Mapping[str, Any]) -> Fact:
        """Replace the data of a fact, producing a new version.

        Raises:
            NoSuchFact: If the identity is not live
            StaleFactReference: If it was retracted earlier in this cycle
        """
        previous = self.get(fact_id)
        data = dict(data)
        self._check_type(previous.fact_type, data)

        fact = Fact(
            fact_id=fact_id,
            fact_type=previous.fact_type,
            data=data,
            version=previous.version + 1,
            recency=self._tick(),
        )
        self._facts[fact_id] = fact

        self._emit(ChangeEvent(ChangeKind.UPDATED, fact, previous))
        return fact

    def modify(self, fact_id: int, **changes: Any) -> Fact:
        """Update selected fields of a fact, keeping the others."""
        previous = self.get(fact_id)
        return self.update(fact_id, {**previous.data, **changes})

    def retract(self, fact_id: int) -> Fact:
        """Remove a fact. Its identity is never reused.

        Returns:
            The removed snapshot
        """
        fact = self.get(fact_id)
        del self._facts[fact_id]
        del self._by_type[fact.fact_type][fact_id]
        self._retracted_in_cycle.add(fact_id)

        self._emit(ChangeEvent(ChangeKind.RETRACTED, fact))
        return fact

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, fact_id: int) -> Fact:
        """Get a live fact by identity.

        Raises:
            NoSuchFact: If the identity is not live
            StaleFactReference: If it was retracted earlier in this cycle
        """
        fact = self._facts.get(fact_id)
        if fact is not None:
            return fact
        if fact_id in self._retracted_in_cycle:
            raise StaleFactReference(fact_id)
        raise NoSuchFact(fact_id)

    def find(self, fact_id: int) -> Fact | None:
        """Get a live fact by identity, or None."""
        return self._facts.get(fact_id)

    def scan(self, fact_type: str) -> list[Fact]:
        """All live facts of a type, in insertion order."""
        return [self._facts[fact_id] for fact_id in self._by_type.get(fact_type, {})]

    def facts(self) -> list[Fact]:
        """All live facts, ordered by identity."""
        return [self._facts[fact_id] for fact_id in sorted(self._facts)]

    def __len__(self) -> int:
        return len(self._facts)

    def __contains__(self, fact_id: object) -> bool:
        return fact_id in self._facts

    # =========================================================================
    # Helpers
    # =========================================================================

    def _tick(self) -> int:
        self._clock += 1
        return self._clock

    def _check_type(self, fact_type: str, data: dict[str, Any]) -> None:
        if self._fact_types is None:
            return
        declared = self._fact_types.get(fact_type)
        if declared is None:
            raise UnknownFactType(fact_type)
        extra = declared.undeclared(data)
        if extra:
            raise UnknownFactType(fact_type, extra)
