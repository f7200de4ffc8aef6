"""Wire the idempotency middleware into a Starlette/FastAPI application."""
from __future__ import annotations

from typing import Any, Optional

from starlette.applications import Starlette

from idemgate import runtime
from idemgate import settings as settings_module
from idemgate.idempotency.store import IdemStore
from idemgate.middleware.idempotency import IdempotencyMiddleware
from idemgate.telemetry.logging import configure_root_logging


def install_idempotency(
    app: Starlette,
    store: Optional[IdemStore] = None,
    *,
    configure_logging: bool = True,
    **options: Any,
) -> bool:
    """
    Add ``IdempotencyMiddleware`` to ``app`` unless IDEMP_ENABLED is off.

    ``store`` defaults to the process-wide store from ``runtime.idem_store()``;
    remaining keyword options are passed to the middleware. Returns whether
    the middleware was installed.
    """
    if configure_logging:
        configure_root_logging(settings_module.LOG_LEVEL)
    if not settings_module.IDEMP_ENABLED:
        return False
    app.add_middleware(
        IdempotencyMiddleware,
        store=store if store is not None else runtime.idem_store(),
        **options,
    )
    return True
