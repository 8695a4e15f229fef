from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from chainmind.logging_context import CONTEXT_FIELDS, get_logging_context
from chainmind.security.redaction import redact_data


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        for field in CONTEXT_FIELDS:
            if field in context or field not in payload:
                payload[field] = context.get(field)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _resolve_log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level

    candidate = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    resolved = logging.getLevelName(str(candidate).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _resolve_named_level_from_env(env_name: str, default_level: int) -> int:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default_level
    resolved = logging.getLevelName(raw.strip().upper())
    return resolved if isinstance(resolved, int) else default_level


def setup_logging(level: str | int | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    resolved_level = _resolve_log_level(level)
    root.setLevel(resolved_level)

    # httpx logs every request line at INFO
    if resolved_level <= logging.DEBUG:
        default_httpx_level = logging.DEBUG
        default_httpcore_level = logging.DEBUG
    else:
        default_httpx_level = logging.WARNING
        default_httpcore_level = logging.WARNING

    httpx_level = _resolve_named_level_from_env("HTTPX_LOG_LEVEL", default_httpx_level)
    httpcore_level = _resolve_named_level_from_env("HTTPCORE_LOG_LEVEL", default_httpcore_level)

    logging.getLogger("httpx").setLevel(httpx_level)
    logging.getLogger("httpcore").setLevel(httpcore_level)
    logging.getLogger("web3").setLevel(max(resolved_level, logging.INFO))
