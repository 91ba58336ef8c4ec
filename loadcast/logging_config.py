from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from loadcast.config import Settings, get_settings

PACKAGE_LOGGER = "loadcast"
CONTEXT_PREFIX = "ctx_"


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``ctx_`` extras land under ``context``."""

    def __init__(self, static_fields: dict | None = None):
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **self.static_fields,
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        context = {
            k[len(CONTEXT_PREFIX):]: v for k, v in sorted(record.__dict__.items()) if k.startswith(CONTEXT_PREFIX)
        }
        if context:
            entry["context"] = context
        return json.dumps(entry, default=str)


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """Attach the JSON stdout handler to the package logger once."""
    settings = settings or get_settings()
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if any(getattr(h, "loadcast_handler", False) for h in logger.handlers):
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.loadcast_handler = True
    handler.setFormatter(JSONFormatter({"app_env": settings.app_env, "policy_version": settings.policy_version}))
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger for a module."""
    return logging.getLogger(name)


def log_context(**values) -> dict:
    """Prefix keyword values so JSONFormatter groups them under ``context``."""
    return {f"{CONTEXT_PREFIX}{k}": v for k, v in values.items()}
