"""Facts domain - fact snapshots, change events and the fact store."""

from .models import ChangeEvent, ChangeKind, Fact, FactData, FactInput, FactType
from .store import FactStore

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "Fact",
    "FactData",
    "FactInput",
    "FactType",
    "FactStore",
]
