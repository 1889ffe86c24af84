"""
Structured logging for orgguard.

Every module logs through plain `logging.getLogger(__name__)` with a
snake_case event name and structured fields in `extra`. This module
decides how those records are rendered:

- production: one JSON object per line on stdout
- anything else: colored single-line text on stderr

Each dispatched command runs under its own request id (a context
variable, so concurrent asyncio tasks never see each other's id), and
every record emitted while the command runs carries it.

Usage:
    from orgguard.observability.logging_config import configure_logging

    configure_logging()  # ORGGUARD_ENV / ORGGUARD_LOG_LEVEL

    logger = logging.getLogger(__name__)
    logger.info("seats_adjusted", extra={"org_id": org.id, "seats": 12})

Fields whose name marks them as a secret are masked by both formatters,
whatever the caller passes.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional, Union

REDACTED = "***"

# Field names never rendered verbatim
SECRET_FIELDS = frozenset({
    "master_password_hash", "password", "api_key", "payment_token",
    "sharing_key", "owner_key", "encrypted_private_key", "signature",
})

_QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "supabase", "stripe", "uvicorn.access")

_RESERVED = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


# ── Request Context ──────────────────────────────────────────

_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "orgguard_request_id", default=None
)


def set_request_id(request_id: str) -> contextvars.Token:
    """Bind `request_id` to the running task; returns a reset token."""
    return _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def clear_request_id(token: Optional[contextvars.Token] = None) -> None:
    """Restore the id bound before `token` was issued, or unset it."""
    if token is None:
        _request_id.set(None)
    else:
        _request_id.reset(token)


class ContextFilter(logging.Filter):
    """Stamps the current request id onto records emitted inside a dispatch."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = _request_id.get()
        if request_id and not hasattr(record, "request_id"):
            record.request_id = request_id  # type: ignore[attr-defined]
        return True


# ── Field Extraction ─────────────────────────────────────────


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Structured fields of a record (its `extra`), secrets masked."""
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED or key.startswith("_"):
            continue
        fields[key] = REDACTED if key in SECRET_FIELDS else value
    return fields


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


# ── Formatters ───────────────────────────────────────────────


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

        {"timestamp": "...", "level": "INFO", "logger": "orgguard.enterprise.dispatcher",
         "message": "command_completed", "request_id": "...", "command": "adjust-seats"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, _jsonable(value)) for key, value in record_fields(record).items()
        )
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """
    Colored text for a terminal:

        [12:04:51] INFO     orgguard.enterprise.dispatcher: command_completed [command=... org_id=...]

    Only the fields in `INLINE_FIELDS` are shown, in that order.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    INLINE_FIELDS = (
        "request_id", "command", "org_id", "user_id", "mode",
        "state", "stage", "reason", "duration_ms",
    )

    def format(self, record: logging.LogRecord) -> str:
        fields = record_fields(record)
        inline = " ".join(
            f"{key}={fields[key]}"
            for key in self.INLINE_FIELDS
            if fields.get(key) is not None
        )
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)

        line = (
            f"[{self.formatTime(record, '%H:%M:%S')}] "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )
        if inline:
            line += f" [{inline}]"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ── Setup ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: Union[int, str, None] = None,
) -> logging.Handler:
    """
    Install a single formatted handler on the root logger.

    Args:
        env: "production" selects JSON on stdout; anything else selects
             the dev formatter on stderr. Defaults to $ORGGUARD_ENV.
        level: Level number or name. Defaults to $ORGGUARD_LOG_LEVEL,
               then INFO.

    Returns:
        The installed handler.
    """
    env = (env or os.environ.get("ORGGUARD_ENV", "development")).lower().strip()
    level = level or os.environ.get("ORGGUARD_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        name = level.upper().strip()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    if env == "production":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(DevFormatter())
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler
