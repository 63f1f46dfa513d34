"""
Structured logging for the relay hub and device nodes.

Two renderings of the same records:
    • JSON lines when ENVIRONMENT=production (one object per record)
    • Coloured console lines otherwise, with an alert tag when present:

        14:02:11 WARNING  saferoute.app.mesh.engine: SOS ... received  ⟨sos-17…|hop 1|relay_hub⟩

Context comes from two places:
    • request scope — set by RequestLoggingMiddleware via set_request_context()
    • record extras — logger.info("...", extra={"alert_id": ..., "hop_count": ...})

Usage:
    from saferoute.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from saferoute.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

# Record attributes lifted into structured output
EXTRA_FIELDS = (
    "alert_id", "hop_count", "channel", "device_id", "clients",
    "duration_ms", "status_code", "endpoint", "synced",
)

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets")


def set_request_context(**kwargs: Any) -> None:
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """The EXTRA_FIELDS actually present on ``record``."""
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        entry.update(record_extras(record))

        request = get_request_context()
        if request:
            entry["request"] = request

        if record.exc_info and record.exc_info[1] is not None:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Console output for operators watching a hub or a node."""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _alert_tag(extras: Dict[str, Any]) -> str:
        parts = []
        if "alert_id" in extras:
            parts.append(str(extras["alert_id"])[:24])
        if "hop_count" in extras:
            parts.append(f"hop {extras['hop_count']}")
        if "channel" in extras:
            parts.append(str(extras["channel"]))
        return f"  ⟨{'|'.join(parts)}⟩" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        request_id = get_request_context().get("request_id")
        prefix = f" [{request_id[:8]}]" if request_id else ""

        line = (
            f"{colour}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}"
            f"{self._alert_tag(record_extras(record))}"
        )
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            line += f"\n    {type(exc).__name__}: {exc}"
        return line


def setup_logging(level: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.handlers[:] = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
