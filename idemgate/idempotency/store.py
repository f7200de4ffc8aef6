"""Idempotency store interface and cached response container."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, runtime_checkable

# Releases a lock obtained from ``IdemStore.lock``; safe to await more than once.
Release = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class CachedResponse:
    status: int
    headers: List[Tuple[str, str]]
    body: bytes
    stored_at: float = field(default_factory=time.time)

    def header_values(self, name: str) -> List[str]:
        lname = name.lower()
        return [v for k, v in self.headers if k.lower() == lname]


@runtime_checkable
class IdemStore(Protocol):
    async def get(self, key: str) -> Optional[CachedResponse]:
        """Return the cached response for ``key``, or None if absent or expired."""
        ...

    async def set(self, key: str, response: CachedResponse, ttl_s: float) -> None:
        """Store ``response`` under ``key``, replacing any prior value."""
        ...

    async def lock(self, key: str) -> Release:
        """
        Acquire exclusive ownership of ``key`` within a bounded wait.
        Raises RequestInProgressError when the key stays held past the bound.
        """
        ...


def once(release: Callable[[], Awaitable[None]]) -> Release:
    """Wrap ``release`` so only the first call has an effect."""
    done = False

    async def _release() -> None:
        nonlocal done
        if done:
            return
        done = True
        await release()

    return _release
