"""Structured logging setup and the host event side-channel."""

import logging
from collections.abc import Callable
from typing import Literal

import structlog

Level = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# (event_type, message) callback handed in by the host, e.g. the CLI
EventCallback = Callable[[str, str], None]

logger = structlog.get_logger(__name__)


def configure_logging(level: Level = "INFO", json: bool = False) -> None:
    """Configure structlog with a console or JSON renderer."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=False,
    )


def emit(on_event: EventCallback | None, event_type: str, message: str) -> None:
    """Send an event to the host sink. A failing sink never fails the job."""
    if on_event is None:
        return
    try:
        on_event(event_type, message)
    except Exception as e:
        logger.warning("event_sink_failed", event_type=event_type, error=str(e))
