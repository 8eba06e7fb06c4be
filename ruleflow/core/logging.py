"""
Structured logging for the rule engine.

The engine never configures logging on import; hosts call
``configure_logging`` once at startup (or rely on structlog defaults).
"""

import logging
import sys
from typing import Any, Dict

import structlog


def configure_logging(log_level: str = "info", json: bool = False) -> None:
    """Configure structured logging for the engine and its host."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_engine_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_engine_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag events with the engine component derived from the logger name."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["component"] = logger_name.split(".", 1)[1]
    return event_dict


def configure_from_settings() -> None:
    """Configure logging from ``EngineSettings``."""
    from ruleflow.core.config import get_settings

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
