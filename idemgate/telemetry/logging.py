"""JSON log lines for idemgate.

Event fields travel on the record as ``extra=`` attributes; the formatter
lifts every attribute a plain LogRecord does not carry to a top-level key.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any, Dict, FrozenSet, Mapping

# Attributes every LogRecord already has; ``makeRecord`` refuses these as extras.
_RESERVED: FrozenSet[str] = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

EXTRA_PREFIX = "ctx_"

_HEADER_KEYS = ("ts", "level", "logger", "message")


def event_extra(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, renaming fields that collide with LogRecord."""
    return {(EXTRA_PREFIX + k if k in _RESERVED else k): v for k, v in fields.items()}


def _utc_stamp(created: float) -> str:
    whole = int(created)
    millis = int((created - whole) * 1000)
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(whole)) + f".{millis:03d}Z"


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, then event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k in _RESERVED or k.startswith("_") or k in _HEADER_KEYS:
                continue
            payload[k] = _jsonable(v)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_configured = False


def configure_root_logging(level: int | str = "INFO") -> None:
    """Send root logs to stdout as JSON. Only the first call has any effect."""
    global _configured
    if _configured:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    _configured = True
