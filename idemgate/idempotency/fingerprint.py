"""Request fingerprinting and body buffering."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from starlette.types import Message, Receive

from idemgate.idempotency.errors import InvalidRequestError


@dataclass(frozen=True)
class RequestInfo:
    method: str
    path: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


# (request, idempotency key) -> cache key
KeyFunc = Callable[[RequestInfo, str], str]


def fingerprint_request(request: RequestInfo, idempotency_key: str) -> str:
    """
    Combine the caller key with a SHA-256 digest of method, path and body.

    Two requests sharing a key but differing in any of those produce
    different fingerprints.
    """
    h = hashlib.sha256()
    for part in (request.method.encode("utf-8"), request.path.encode("utf-8"), request.body):
        # length prefix keeps field boundaries unambiguous
        h.update(len(part).to_bytes(8, "big"))
        h.update(part)
    return f"{idempotency_key}:{h.hexdigest()}"


async def read_body(receive: Receive) -> bytes:
    """Drain the ASGI request body; a disconnect before the last chunk is invalid."""
    chunks: List[bytes] = []
    more_body = True
    while more_body:
        msg = await receive()
        if msg["type"] == "http.disconnect":
            raise InvalidRequestError("request body truncated by client disconnect")
        if msg["type"] != "http.request":
            continue
        chunk = msg.get("body", b"") or b""
        if chunk:
            chunks.append(chunk)
        more_body = bool(msg.get("more_body"))
    return b"".join(chunks)


def replay_receive(body: bytes, receive: Receive) -> Receive:
    """Return a ``receive`` that yields ``body`` once, then defers to the original."""
    sent = False

    async def _receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive
