from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Any

from stockgate.core.config import get_settings


_EXTRA_FIELDS = ("request_id", "tenant_id", "tier", "path")

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    # Render records as single-line JSON so log shippers can parse them.
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    # Install a single stdout handler; safe to call repeatedly from app factories and scripts.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        if getattr(handler, "_stockgate", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._stockgate = True  # type: ignore[attr-defined]
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
