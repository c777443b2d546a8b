"""
structlog configuration shared by the API process and the CLI.

Events render as one JSON object per line on stdout. Credential-bearing
fields are masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

_SECRET_FIELDS = ("access_token", "token", "refresh_token", "code")

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _drop_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for field in _SECRET_FIELDS:
        if field in event_dict:
            event_dict[field] = "[redacted]"
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog over stdlib logging. Call once at process start.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _drop_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _emit(channel: str, failed: bool, ok_event: str, failed_event: str, **fields) -> None:
    logger = get_logger(channel)
    if failed:
        logger.warning(failed_event, **fields)
    else:
        logger.info(ok_event, **fields)


def log_dispatch_outcome(
    owner_id: str, target_id: str, status: str, detail: str | None = None, duration_ms: float = 0.0
):
    """One line per dispatch outcome; failures at warning level."""
    fields = {
        "owner_id": owner_id,
        "target_id": target_id,
        "status": status,
        "duration_ms": duration_ms,
        "event_type": "nudge_dispatch",
    }
    if detail:
        fields["detail"] = detail
    _emit("dispatch", status == "failed", "Nudge dispatch finished", "Nudge dispatch failed", **fields)


def log_request(method: str, path: str, status_code: int, duration_ms: float):
    _emit(
        "http",
        status_code >= 400,
        "HTTP request completed",
        "HTTP request failed",
        method=method,
        path=path,
        status_code=status_code,
        duration_ms=duration_ms,
        event_type="http_request",
    )
