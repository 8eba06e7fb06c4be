"""Core package - configuration, errors and logging."""

from .config import EngineSettings, get_settings
from .errors import (
    MalformedRuleSet,
    NoSuchFact,
    RuleEngineError,
    SessionStateError,
    StaleFactReference,
    UnknownFactType,
)
from .logging import configure_from_settings, configure_logging, get_logger

__all__ = [
    # Config
    "EngineSettings",
    "get_settings",
    # Errors
    "RuleEngineError",
    "NoSuchFact",
    "StaleFactReference",
    "MalformedRuleSet",
    "UnknownFactType",
    "SessionStateError",
    # Logging
    "configure_logging",
    "configure_from_settings",
    "get_logger",
]
