"""In-memory idempotency store; NOT shared across processes."""
from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Dict, Optional, Tuple

from idemgate.idempotency.errors import RequestInProgressError
from idemgate.idempotency.log_utils import log_idempotency_event
from idemgate.idempotency.store import CachedResponse, IdemStore, Release, once
from idemgate.metrics import IDEMP_EVICTIONS, IDEMP_LOCK_WAIT, IDEMP_MEMORY_ENTRIES

DEFAULT_LOCK_TIMEOUT_S = 0.1
DEFAULT_SWEEP_INTERVAL_S = 60.0


class MemoryIdemStore(IdemStore):
    """
    Responses live in one map and per-key locks in another, each behind its
    own guard. Expiry is checked inline on ``get``; a background sweep only
    reclaims memory.
    """

    def __init__(
        self,
        lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S,
        sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
        name: str = "default",
    ) -> None:
        self.name = name
        self.lock_timeout_s = float(lock_timeout_s)
        self.sweep_interval_s = float(sweep_interval_s)

        # Values are (CachedResponse, expiry_epoch_seconds)
        self._values: Dict[str, Tuple[CachedResponse, float]] = {}
        self._mu = asyncio.Lock()
        # Per-key locks are created lazily and never evicted.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_mu = threading.Lock()

        self._entries_gauge = IDEMP_MEMORY_ENTRIES.labels(store=name)
        self._sweeper: Optional[asyncio.Task[None]] = None

    def _now(self) -> float:
        return time.time()

    def _ensure_sweeper(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = self._sweeper
        if task is not None and not task.done() and task.get_loop() is loop:
            return
        self._sweeper = loop.create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            await self.sweep()

    async def get(self, key: str) -> Optional[CachedResponse]:
        self._ensure_sweeper()
        async with self._mu:
            tup = self._values.get(key)
            if tup is None:
                return None
            resp, exp = tup
            if self._now() >= exp:
                return None
            return resp

    async def set(self, key: str, response: CachedResponse, ttl_s: float) -> None:
        self._ensure_sweeper()
        async with self._mu:
            self._values[key] = (response, self._now() + float(ttl_s))
            self._entries_gauge.set(len(self._values))

    def _lock_for(self, key: str) -> asyncio.Lock:
        mu = self._locks.get(key)
        if mu is not None:
            return mu
        with self._locks_mu:
            mu = self._locks.get(key)
            if mu is None:
                mu = asyncio.Lock()
                self._locks[key] = mu
            return mu

    async def lock(self, key: str) -> Release:
        mu = self._lock_for(key)
        start = time.perf_counter()
        try:
            await asyncio.wait_for(mu.acquire(), timeout=self.lock_timeout_s)
        except asyncio.TimeoutError:
            raise RequestInProgressError(key) from None
        finally:
            IDEMP_LOCK_WAIT.labels(backend="memory").observe(time.perf_counter() - start)

        async def _release() -> None:
            mu.release()

        return once(_release)

    async def delete(self, key: str) -> bool:
        async with self._mu:
            removed = self._values.pop(key, None) is not None
            self._entries_gauge.set(len(self._values))
        if removed:
            IDEMP_EVICTIONS.labels(backend="memory").inc()
        return removed

    async def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        async with self._mu:
            now = self._now()
            expired = [k for k, (_, exp) in self._values.items() if now >= exp]
            for k in expired:
                del self._values[k]
            self._entries_gauge.set(len(self._values))
        if expired:
            IDEMP_EVICTIONS.labels(backend="memory").inc(len(expired))
            log_idempotency_event("sweep", removed=len(expired))
        return len(expired)

    def size(self) -> int:
        return len(self._values)

    def lock_count(self) -> int:
        return len(self._locks)

    async def close(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        if task.get_loop() is not asyncio.get_running_loop():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task
