from __future__ import annotations

import pytest
from pydantic import ValidationError

from idemgate import settings as settings_module
from idemgate.idempotency.memory_store import MemoryIdemStore
from idemgate.middleware.idempotency import IdempotencyMiddleware
from idemgate.settings import IdempotencySettings

_VARS = (
    "IDEMPOTENCY_HEADER_NAME",
    "IDEMPOTENCY_TTL_S",
    "IDEMPOTENCY_METHODS",
    "IDEMPOTENCY_EXCLUDE_PATHS",
    "IDEMPOTENCY_STORE_BACKEND",
    "IDEMPOTENCY_MEMORY_LOCK_TIMEOUT_MS",
    "IDEMPOTENCY_REDIS_LOCK_TTL_S",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    cfg = IdempotencySettings()
    assert cfg.header_name == "Idempotency-Key"
    assert cfg.ttl_s == 24 * 60 * 60
    assert cfg.methods == {"POST", "PUT", "PATCH"}
    assert cfg.exclude_paths == []
    assert cfg.store_backend == "memory"
    assert cfg.memory_lock_timeout_ms == 100
    assert cfg.memory_sweep_interval_s == 60
    assert cfg.redis_lock_ttl_s == 30
    assert cfg.redis_lock_wait_ms == 0


def test_env_csv_and_json_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDEMPOTENCY_METHODS", "post, put")
    monkeypatch.setenv("IDEMPOTENCY_EXCLUDE_PATHS", '["/health", "/metrics"]')
    monkeypatch.setenv("IDEMPOTENCY_TTL_S", "7")
    monkeypatch.setenv("IDEMPOTENCY_STORE_BACKEND", "redis")
    cfg = IdempotencySettings()
    assert cfg.methods == {"POST", "PUT"}
    assert cfg.exclude_paths == ["/health", "/metrics"]
    assert cfg.ttl_s == 7
    assert cfg.store_backend == "redis"


def test_rejects_out_of_range(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDEMPOTENCY_TTL_S", "0")
    with pytest.raises(ValidationError):
        IdempotencySettings()


def test_middleware_reads_settings_when_not_overridden(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDEMPOTENCY_HEADER_NAME", "X-Op-Id")
    monkeypatch.setenv("IDEMPOTENCY_METHODS", "post")
    monkeypatch.setenv("IDEMPOTENCY_TTL_S", "42")
    monkeypatch.setattr(settings_module, "settings", settings_module.get_settings())

    mw = IdempotencyMiddleware(app=lambda *a: None, store=MemoryIdemStore())
    assert mw.header_name == "x-op-id"
    assert mw.methods == ("POST",)
    assert mw.ttl_s == 42.0

    override = IdempotencyMiddleware(
        app=lambda *a: None, store=MemoryIdemStore(), ttl_s=5, methods=("put",)
    )
    assert override.ttl_s == 5.0
    assert override.methods == ("PUT",)


def test_env_source_tolerates_plain_csv(monkeypatch: pytest.MonkeyPatch) -> None:
    from pydantic_settings import EnvSettingsSource

    monkeypatch.setenv("IDEMPOTENCY_EXCLUDE_PATHS", "/health,/admin/*")
    sources = IdempotencySettings.settings_customise_sources(
        IdempotencySettings,
        init_settings=EnvSettingsSource(IdempotencySettings),
        env_settings=EnvSettingsSource(IdempotencySettings),
        dotenv_settings=EnvSettingsSource(IdempotencySettings),
        file_secret_settings=EnvSettingsSource(IdempotencySettings),
    )
    assert type(sources[1]).__name__ == "_CsvFriendlyEnvSettingsSource"
    assert IdempotencySettings().exclude_paths == ["/health", "/admin/*"]
