"""Fact models - immutable snapshots with stable identities."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class FactType(BaseModel):
    """A declared fact shape, resolved when a rule set is compiled."""

    model_config = ConfigDict(frozen=True)

    name: str
    """Type tag used for condition dispatch (e.g., 'transaction')."""

    fields: tuple[str, ...] | None = None
    """Declared field names. None means any field is accepted."""

    description: str | None = None

    def undeclared(self, data: Mapping[str, Any]) -> list[str]:
        """Return the keys of ``data`` this type does not declare."""
        if self.fields is None:
            return []
        return sorted(key for key in data if key not in self.fields)


class FactData(Mapping[str, Any]):
    """Read-only field values of a fact snapshot.

    Values are copied in on construction. Mutable values (lists, dicts, sets)
    are copied again on every read, so a snapshot cannot be changed in place.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None):
        self._values = copy.deepcopy(dict(values or {}))

    def __getitem__(self, field: str) -> Any:
        value = self._values[field]
        if isinstance(value, (list, dict, set)):
            return copy.deepcopy(value)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"FactData({self._values!r})"

    def to_dict(self) -> dict[str, Any]:
        """A mutable copy of the values."""
        return copy.deepcopy(self._values)


class Fact(BaseModel):
    """An immutable snapshot of a fact.

    Updating a fact produces a new snapshot with the same ``fact_id`` and an
    incremented ``version``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    fact_id: int
    """Identity, unique within a session and never reused."""

    fact_type: str
    """Type tag of the fact."""

    data: FactData = Field(default_factory=FactData)
    """Field values of this snapshot (read-only)."""

    version: int = 1
    """Incremented on every update."""

    recency: int = 0
    """Session-wide insertion/update stamp used for conflict resolution."""

    @field_validator("data", mode="before")
    @classmethod
    def _freeze_data(cls, value: Any) -> FactData:
        if isinstance(value, FactData):
            return value
        if not isinstance(value, Mapping):
            raise ValueError("fact data must be a mapping")
        return FactData(value)

    @field_serializer("data")
    def _dump_data(self, value: FactData) -> dict[str, Any]:
        return value.to_dict()

    def __getitem__(self, field: str) -> Any:
        return self.data[field]

    def __contains__(self, field: object) -> bool:
        return field in self.data

    def get(self, field: str, default: Any = None) -> Any:
        return self.data.get(field, default)


class ChangeKind(str, Enum):
    """Kinds of fact store mutations."""

    INSERTED = "inserted"
    UPDATED = "updated"
    RETRACTED = "retracted"


@dataclass(frozen=True)
class ChangeEvent:
    """A fact store mutation delivered to the matching network.

    For ``RETRACTED`` events ``fact`` is the removed snapshot; for ``UPDATED``
    events ``previous`` holds the snapshot that was replaced.
    """

    kind: ChangeKind
    fact: Fact
    previous: Fact | None = None


class FactInput(BaseModel):
    """An initial fact supplied by a fact source."""

    fact_type: str
    data: dict[str, Any] = Field(default_factory=dict)
