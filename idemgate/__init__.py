"""Request deduplication middleware keyed on caller idempotency keys."""

__version__ = "0.1.0"
