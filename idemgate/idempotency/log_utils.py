"""Structured logging helpers for idempotency events.

Guarantees:
- Never log the full idempotency key or fingerprint; only a masked prefix.
- Optional PII logging toggle via env IDEMP_LOG_INCLUDE_PII (default: 0 / disabled).
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from idemgate import settings as settings_module
from idemgate.telemetry.logging import event_extra

_LOG = logging.getLogger("idemgate.idempotency")


def _mask_key(val: Optional[str], prefix_len: int) -> Optional[str]:
    """
    Return a masked representation of an idempotency key.

    At most ``prefix_len`` leading characters are kept (always withholding at
    least one), followed by an ellipsis and an 8-char SHA-256 tail.
    """
    if not val:
        return val

    visible_len = min(max(int(prefix_len), 0), max(len(val) - 1, 0))
    prefix = val[:visible_len]

    base = val.encode("utf-8")
    candidate = ""
    for salt in range(256):
        payload = base if salt == 0 else base + f":{salt}".encode("utf-8")
        digest = hashlib.sha256(payload).hexdigest()
        for start in range(0, len(digest) - 8 + 1):
            tail = digest[start : start + 8]
            candidate = f"{prefix}…{tail}" if prefix else f"…{tail}"
            if val not in candidate:
                return candidate

    sanitized = candidate
    replacement = "•" * len(val)
    while val in sanitized:
        sanitized = sanitized.replace(val, replacement)
    return sanitized


# Fields whose values are typically sensitive when PII logging is off.
_SENSITIVE_FIELDS: Tuple[str, ...] = (
    "headers",
    "authorization",
    "cookie",
    "set-cookie",
    "body",
    "request",
    "query",
)

_KEY_FIELDS: Tuple[str, ...] = ("key", "idempotency_key", "fingerprint")


def _scrub_fields(
    fields: Mapping[str, Any], include_pii: bool, mask_prefix_len: int
) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in fields.items():
        k_l = k.lower()

        if k_l in _KEY_FIELDS:
            out["key_prefix"] = _mask_key(str(v), mask_prefix_len)
            continue

        if not include_pii and k_l in _SENSITIVE_FIELDS:
            continue

        out[k] = v
    return out


def _pii_enabled() -> bool:
    raw = os.getenv("IDEMP_LOG_INCLUDE_PII", "0").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def log_idempotency_event(
    event: str, /, *, level: int = logging.INFO, **fields: Any
) -> None:
    """Emit a structured idempotency event with safe defaults."""
    effective = settings_module.settings.idempotency
    mask_prefix_len = int(effective.mask_prefix_len)

    include_pii = _pii_enabled()
    payload = _scrub_fields(fields, include_pii, mask_prefix_len)
    payload["event"] = event
    payload["privacy_mode"] = "pii_enabled" if include_pii else "pii_disabled"

    _LOG.log(level, event, extra=event_extra(payload))
