"""
Logging for the session orchestrator.

One structlog pipeline serves the API process and the queue worker. Lines are
JSON by default so per-session lifecycle, admission and queue events can be
filtered by ``session`` / ``queue`` fields; ``json_logs=False`` switches to
the console renderer for local runs.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: JSON lines when True, colourless key=value console output otherwise
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_session_context,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Health polling runs every second per session; keep its transport chatter out
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_session_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Normalize the session field so every lifecycle line can be filtered by it."""
    session = event_dict.pop("session_name", None)
    if session is not None and "session" not in event_dict:
        event_dict["session"] = session
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Readiness check outcome for a dependency (broker, database)."""
    logger = get_logger("health")

    log_data = {
        "service": service,
        "healthy": healthy,
        "latency_ms": latency_ms,
    }

    if error:
        log_data["error"] = error

    if healthy:
        logger.info("Dependency check passed", **log_data)
    else:
        logger.warning("Dependency check failed", **log_data)
