"""
Logging setup for the gateway process.

Loggers accept keyword fields next to the message:

    logger = get_logger(__name__)
    logger.info("User joined room", user_id="u-1", room_id="general")

Production writes one JSON object per line; other environments get a
coloured single-line format. Records are tagged with the connection id of
the task that emitted them (shared.infrastructure.correlation).
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from shared.config.settings import settings

_NO_CONNECTION = "-"


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "fields", None) or {}


def _connection_id(record: logging.LogRecord) -> str | None:
    connection_id = getattr(record, "connection_id", _NO_CONNECTION)
    return None if connection_id == _NO_CONNECTION else connection_id


class JsonLineFormatter(logging.Formatter):
    """One JSON document per record, keyword fields nested under "data"."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        connection_id = _connection_id(record)
        if connection_id:
            entry["connection_id"] = connection_id
        fields = _fields(record)
        if fields:
            entry["data"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if settings.debug:
            entry["source"] = f"{record.pathname}:{record.lineno}"
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    _LEVEL_COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self._LEVEL_COLOURS.get(record.levelno, self._RESET)
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        connection_id = _connection_id(record)
        tag = f"[{connection_id[:8]}] " if connection_id else ""

        line = (
            f"{colour}{clock} {record.levelname:<8}{self._RESET} "
            f"{tag}{record.name}: {record.getMessage()}"
        )
        fields = _fields(record)
        if fields:
            line += "  " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger whose level methods take keyword fields instead of an extra dict."""

    def _emit(self, level: int, msg: str, args: tuple, **fields: Any) -> None:
        if not self.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        self._log(level, msg, args, exc_info=exc_info, extra={"fields": fields}, stacklevel=3)

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(logging.DEBUG, msg, args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(logging.INFO, msg, args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(logging.WARNING, msg, args, **fields)

    def error(self, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(logging.ERROR, msg, args, **fields)

    def critical(self, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(logging.CRITICAL, msg, args, **fields)

    def log(self, level: int, msg: str, *args: Any, **fields: Any) -> None:
        self._emit(level, msg, args, **fields)


logging.setLoggerClass(StructuredLogger)


def setup_logging() -> None:
    """Install the gateway handler on the root logger. Called once at startup."""
    from shared.infrastructure.correlation import CorrelationIdFilter

    level = logging.DEBUG if settings.debug else logging.INFO
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        JsonLineFormatter() if settings.environment == "production" else ConsoleFormatter()
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "aio_pika", "aiormq"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def mask_email(email: str | None) -> str:
    """Keep the first two characters of the local part: "al***@example.com"."""
    if not email or "@" not in email:
        return "<no-email>" if not email else "***@invalid"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


ws_gateway_logger = get_logger("ws_gateway")
security_audit_logger = get_logger("security.audit")


# =============================================================================
# Security audit
# =============================================================================


def audit_ws_connection(
    event_type: str,
    endpoint: str,
    user_id: str | None = None,
    connection_id: str | None = None,
    origin: str | None = None,
    reason: str | None = None,
    **extra: Any,
) -> None:
    """
    Record a connection lifecycle event (CONNECT, DISCONNECT, AUTH_FAILED, ...)
    on the security.audit logger.
    """
    security_audit_logger.info(
        f"WS_AUDIT: {event_type}",
        event_type=event_type,
        endpoint=endpoint,
        user_id=user_id,
        connection_id=connection_id,
        origin=origin,
        reason=reason,
        **extra,
    )


def audit_rate_limit_event(action: str, user_id: str, limit: int, window: int, **extra: Any) -> None:
    security_audit_logger.warning(
        f"RATE_LIMIT_AUDIT: {action}",
        action=action,
        user_id=user_id,
        limit=limit,
        window=window,
        **extra,
    )
