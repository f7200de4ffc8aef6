"""Idempotency middleware: fingerprint, lock, replay or execute-and-cache."""
from __future__ import annotations

import json
import logging
from fnmatch import fnmatch
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from idemgate import settings as settings_module
from idemgate.idempotency.errors import InvalidRequestError, RequestInProgressError
from idemgate.idempotency.fingerprint import (
    KeyFunc,
    RequestInfo,
    fingerprint_request,
    read_body,
    replay_receive,
)
from idemgate.idempotency.log_utils import log_idempotency_event
from idemgate.idempotency.store import CachedResponse, IdemStore, Release
from idemgate.metrics import (
    IDEMP_CONFLICTS,
    IDEMP_ERRORS,
    IDEMP_HITS,
    IDEMP_MISSES,
    IDEMP_PASSTHROUGH,
)

CACHED_HEADER = "X-Idempotency-Cached"
_CACHED_HEADER_RAW = CACHED_HEADER.lower().encode("latin-1")


def _decode_headers(raw: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[str, str]]:
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in raw]


class _ResponseTee:
    """Forwards every ASGI send message unchanged while keeping a copy."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.status = 200
        self.headers: List[Tuple[str, str]] = []
        self._chunks: List[bytes] = []

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status = int(message["status"])
            self.headers = _decode_headers(message.get("headers", []))
        elif message["type"] == "http.response.body":
            chunk = message.get("body", b"") or b""
            if chunk:
                self._chunks.append(chunk)
        await self._send(message)

    def response(self) -> CachedResponse:
        return CachedResponse(
            status=self.status,
            headers=list(self.headers),
            body=b"".join(self._chunks),
        )


class IdempotencyMiddleware:
    def __init__(
        self,
        app: ASGIApp | Callable[..., Any],
        store: IdemStore,
        header_name: Optional[str] = None,
        ttl_s: Optional[float] = None,
        methods: Optional[Iterable[str]] = None,
        exclude_paths: Optional[Iterable[str]] = None,
        key_func: Optional[KeyFunc] = None,
    ) -> None:
        effective = settings_module.settings.idempotency
        self.app = app
        self.store = store
        self.header_name = (header_name or effective.header_name).lower()
        self.ttl_s = float(ttl_s) if ttl_s is not None else float(effective.ttl_s)
        base_methods: Iterable[str] = (
            methods if methods is not None else tuple(sorted(effective.methods))
        )
        self.methods = tuple(m.upper() for m in base_methods)
        self.exclude_paths = tuple(
            exclude_paths if exclude_paths is not None else effective.exclude_paths
        )
        self.key_func: KeyFunc = key_func or fingerprint_request

    def _is_excluded(self, path: str) -> bool:
        return any(fnmatch(path, pattern) for pattern in self.exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)  # type: ignore[misc]
            return

        method = scope["method"].upper()
        if method not in self.methods:
            IDEMP_PASSTHROUGH.labels(reason="method").inc()
            await self.app(scope, receive, send)  # type: ignore[misc]
            return

        path = scope.get("path", "")
        if self._is_excluded(path):
            IDEMP_PASSTHROUGH.labels(reason="excluded").inc()
            await self.app(scope, receive, send)  # type: ignore[misc]
            return

        headers: Dict[str, str] = {}
        for k, v in _decode_headers(scope.get("headers", [])):
            headers.setdefault(k.lower(), v)
        key = headers.get(self.header_name, "")
        if not key.strip():
            IDEMP_PASSTHROUGH.labels(reason="no_key").inc()
            await self.app(scope, receive, send)  # type: ignore[misc]
            return

        try:
            body = await read_body(receive)
            fingerprint = self.key_func(RequestInfo(method, path, body, headers), key)
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="fingerprint").inc()
            log_idempotency_event(
                "invalid_request",
                level=logging.WARNING,
                key=key,
                method=method,
                error=repr(exc),
            )
            await self._send_error(send, 400, "invalid idempotency request")
            return

        try:
            release = await self.store.lock(fingerprint)
        except RequestInProgressError:
            IDEMP_CONFLICTS.labels(method=method).inc()
            log_idempotency_event("in_progress", key=key, method=method)
            await self._send_error(send, 409, "request already in progress")
            return
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="lock").inc()
            log_idempotency_event(
                "lock_failed", level=logging.ERROR, key=key, error=repr(exc)
            )
            await self._send_error(send, 500, "internal server error")
            return

        try:
            cached = await self._lookup(fingerprint, key)
            if cached is not None:
                await self._release(release, key)
                IDEMP_HITS.labels(method=method).inc()
                log_idempotency_event("replay", key=key, method=method, status=cached.status)
                await self._send_cached(send, cached)
                return

            IDEMP_MISSES.labels(method=method).inc()
            tee = _ResponseTee(send)
            await self.app(scope, replay_receive(body, receive), tee)  # type: ignore[misc]
            await self._persist(fingerprint, tee.response(), key)
        finally:
            await self._release(release, key)

    async def _lookup(self, fingerprint: str, key: str) -> Optional[CachedResponse]:
        try:
            return await self.store.get(fingerprint)
        except Exception as exc:
            # Treated as a miss; the lock still prevents concurrent execution.
            IDEMP_ERRORS.labels(phase="get").inc()
            log_idempotency_event("get_failed", level=logging.WARNING, key=key, error=repr(exc))
            return None

    async def _persist(self, fingerprint: str, resp: CachedResponse, key: str) -> None:
        try:
            await self.store.set(fingerprint, resp, self.ttl_s)
        except Exception as exc:
            # The caller already has the response; never retry or surface.
            IDEMP_ERRORS.labels(phase="set").inc()
            log_idempotency_event("persist_failed", level=logging.ERROR, key=key, error=repr(exc))
            return
        log_idempotency_event("stored", key=key, status=resp.status, size_bytes=len(resp.body))

    async def _release(self, release: Release, key: str) -> None:
        try:
            await release()
        except Exception as exc:
            IDEMP_ERRORS.labels(phase="release").inc()
            log_idempotency_event("release_failed", level=logging.ERROR, key=key, error=repr(exc))

    async def _send_cached(self, send: Send, cached: CachedResponse) -> None:
        raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in cached.headers
            if k.lower().encode("latin-1") != _CACHED_HEADER_RAW
        ]
        raw_headers.append((_CACHED_HEADER_RAW, b"true"))
        await send(
            {"type": "http.response.start", "status": cached.status, "headers": raw_headers}
        )
        await send({"type": "http.response.body", "body": cached.body, "more_body": False})

    async def _send_error(self, send: Send, status: int, detail: str) -> None:
        payload = json.dumps({"detail": detail}).encode("utf-8")
        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(payload)).encode("ascii")),
                ],
            }
        )
        await send({"type": "http.response.body", "body": payload, "more_body": False})
