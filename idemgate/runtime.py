from __future__ import annotations

from typing import Optional

from redis.asyncio import Redis, from_url as redis_from_url

from idemgate import settings as settings_module
from idemgate.idempotency.memory_store import MemoryIdemStore
from idemgate.idempotency.redis_store import RedisIdemStore
from idemgate.idempotency.store import IdemStore

# Lazily initialized singletons for process lifetime.
_redis: Optional[Redis] = None
_store: Optional[IdemStore] = None


def redis_client() -> Redis:
    """Return a Redis client built from IDEMPOTENCY_REDIS_URL."""
    global _redis
    if _redis is None:
        url = settings_module.settings.idempotency.redis_url
        _redis = redis_from_url(url, decode_responses=False)
    return _redis


def idem_store() -> IdemStore:
    """
    Factory for the process-wide idempotency store.
    Chooses Redis vs memory based on IDEMPOTENCY_STORE_BACKEND.
    """
    global _store
    if _store is not None:
        return _store

    cfg = settings_module.settings.idempotency
    if cfg.store_backend == "redis":
        _store = RedisIdemStore(
            redis_client(),
            prefix=cfg.redis_prefix,
            lock_ttl_s=cfg.redis_lock_ttl_s,
            lock_wait_s=cfg.redis_lock_wait_ms / 1000.0,
            jitter_s=cfg.jitter_ms / 1000.0,
        )
    else:
        _store = MemoryIdemStore(
            lock_timeout_s=cfg.memory_lock_timeout_ms / 1000.0,
            sweep_interval_s=cfg.memory_sweep_interval_s,
        )
    return _store


def reset() -> None:
    """Forget cached singletons (tests, settings reload)."""
    global _redis, _store
    _redis = None
    _store = None
