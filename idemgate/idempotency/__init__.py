"""Idempotency package exports."""

from __future__ import annotations

from .errors import IdempotencyError, InvalidRequestError, RequestInProgressError
from .fingerprint import KeyFunc, RequestInfo, fingerprint_request
from .memory_store import MemoryIdemStore
from .redis_store import RedisIdemStore
from .store import CachedResponse, IdemStore, Release

__all__ = [
    "CachedResponse",
    "IdemStore",
    "Release",
    "MemoryIdemStore",
    "RedisIdemStore",
    "IdempotencyError",
    "InvalidRequestError",
    "RequestInProgressError",
    "KeyFunc",
    "RequestInfo",
    "fingerprint_request",
]
