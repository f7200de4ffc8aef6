"""Error taxonomy for the idempotency layer."""

from __future__ import annotations


class IdempotencyError(Exception):
    """Base class for idempotency failures."""


class RequestInProgressError(IdempotencyError):
    """Another execution currently holds the lock for this fingerprint."""

    def __init__(self, key: str = "") -> None:
        super().__init__("request with this idempotency key is already in progress")
        self.key = key


class InvalidRequestError(IdempotencyError):
    """The request could not be fingerprinted (e.g. truncated body)."""
