"""Redis-backed idempotency store using native TTLs and SET NX locks."""

from __future__ import annotations

import asyncio
import base64
import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

from redis.asyncio import Redis

from idemgate.idempotency.errors import RequestInProgressError
from idemgate.idempotency.log_utils import log_idempotency_event
from idemgate.idempotency.store import CachedResponse, IdemStore, Release, once
from idemgate.metrics import IDEMP_EVICTIONS, IDEMP_LOCK_WAIT

DEFAULT_LOCK_TTL_S = 30.0
LOCK_PREFIX = "lock:"
_LOCK_SENTINEL = "1"
_MIN_BACKOFF_S = 0.01


def _ms(seconds: float) -> int:
    return max(int(seconds * 1000), 1)


def encode_response(resp: CachedResponse) -> str:
    value = {
        "status": int(resp.status),
        "headers": [[k, v] for k, v in resp.headers],
        "body_b64": base64.b64encode(resp.body).decode("ascii"),
        "stored_at": float(resp.stored_at),
    }
    return json.dumps(value, separators=(",", ":"))


def decode_response(raw: Any) -> CachedResponse:
    data: Dict[str, Any] = json.loads(raw)
    headers: List[Tuple[str, str]] = [(str(k), str(v)) for k, v in data.get("headers", [])]
    return CachedResponse(
        status=int(data["status"]),
        headers=headers,
        body=base64.b64decode(data.get("body_b64", "")),
        stored_at=float(data.get("stored_at", 0.0)),
    )


class RedisIdemStore(IdemStore):
    """
    Shares cached responses and locks across processes through Redis.

    Responses live at ``<prefix><key>``; locks at ``<prefix>lock:<key>`` with
    their own TTL so a crashed holder cannot wedge a key forever.
    """

    def __init__(
        self,
        redis: Redis,
        prefix: str = "",
        lock_ttl_s: float = DEFAULT_LOCK_TTL_S,
        lock_wait_s: float = 0.0,
        jitter_s: float = 0.05,
    ) -> None:
        self.r = redis
        self.prefix = prefix
        self.lock_ttl_s = float(lock_ttl_s)
        self.lock_wait_s = max(float(lock_wait_s), 0.0)
        self.jitter_s = max(float(jitter_s), 0.0)

    def _value_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}{LOCK_PREFIX}{key}"

    async def get(self, key: str) -> Optional[CachedResponse]:
        raw = await self.r.get(self._value_key(key))
        if raw is None:
            return None
        return decode_response(raw)

    async def set(self, key: str, response: CachedResponse, ttl_s: float) -> None:
        await self.r.set(self._value_key(key), encode_response(response), px=_ms(ttl_s))

    async def _try_lock(self, lock_key: str) -> bool:
        ok = await self.r.set(lock_key, _LOCK_SENTINEL, nx=True, px=_ms(self.lock_ttl_s))
        return bool(ok)

    async def lock(self, key: str) -> Release:
        lock_key = self._lock_key(key)
        start = time.perf_counter()
        deadline = start + self.lock_wait_s
        acquired = await self._try_lock(lock_key)
        backoff = _MIN_BACKOFF_S
        while not acquired:
            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                IDEMP_LOCK_WAIT.labels(backend="redis").observe(time.perf_counter() - start)
                raise RequestInProgressError(key)
            delay = min(backoff + random.uniform(0.0, self.jitter_s), remaining)
            await asyncio.sleep(delay)
            backoff = min(backoff * 2, 0.5)
            acquired = await self._try_lock(lock_key)
        IDEMP_LOCK_WAIT.labels(backend="redis").observe(time.perf_counter() - start)

        async def _release() -> None:
            await self.r.delete(lock_key)

        return once(_release)

    async def delete(self, key: str) -> bool:
        res = await self.r.delete(self._value_key(key))
        if res:
            IDEMP_EVICTIONS.labels(backend="redis").inc()
            log_idempotency_event("evict", key=key)
        return bool(res)

    async def lock_ttl_remaining(self, key: str) -> Optional[float]:
        """Seconds until the lock for ``key`` self-expires, or None if unlocked."""
        pttl = await self.r.pttl(self._lock_key(key))
        if pttl is None or int(pttl) < 0:
            return None
        return int(pttl) / 1000.0
