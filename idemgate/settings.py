"""Runtime settings for the idempotency layer.

Values come from the environment (see the ``IDEMPOTENCY_*`` aliases below);
middleware constructor arguments take precedence over anything loaded here.
"""

import json
import os
from typing import TYPE_CHECKING, Any, List, Literal, Set

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

StoreBackend = Literal["memory", "redis"]

_DEFAULT_HEADER_NAME = "Idempotency-Key"
_DEFAULT_TTL_S = 24 * 60 * 60
_DEFAULT_METHODS = ("POST", "PUT", "PATCH")
_DEFAULT_MEMORY_LOCK_TIMEOUT_MS = 100
_DEFAULT_MEMORY_SWEEP_INTERVAL_S = 60
_DEFAULT_REDIS_LOCK_TTL_S = 30
_DEFAULT_REDIS_LOCK_WAIT_MS = 0
_DEFAULT_JITTER_MS = 50
_DEFAULT_MASK_PREFIX_LEN = 8
_DEFAULT_STORE_BACKEND: StoreBackend = "memory"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    text = raw.strip().lower()
    if text in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


IDEMP_ENABLED: bool = _env_bool("IDEMP_ENABLED", True)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"


def _csv_to_list(value: str) -> List[str]:
    items = [part.strip() for part in value.split(",")]
    return [item for item in items if item]


def _json_or_csv_to_list(value: str) -> List[str]:
    text = value.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except (json.JSONDecodeError, TypeError, ValueError):
            return _csv_to_list(text)
        if isinstance(decoded, str):
            return _csv_to_list(decoded)
        if isinstance(decoded, (list, tuple, set)):
            result: List[str] = []
            for item in decoded:
                piece = str(item).strip()
                if piece:
                    result.append(piece)
            return result
        return []
    return _csv_to_list(text)


class _CsvFriendlyEnvSettingsSource(EnvSettingsSource):
    def decode_complex_value(self, field_name: str, field: Any, value: Any) -> Any:
        try:
            return super().decode_complex_value(field_name, field, value)
        except ValueError:
            return value


class IdempotencySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        if isinstance(env_settings, EnvSettingsSource):
            env_settings = _CsvFriendlyEnvSettingsSource(
                settings_cls,
                case_sensitive=env_settings.case_sensitive,
                env_prefix=env_settings.env_prefix,
                env_nested_delimiter=env_settings.env_nested_delimiter,
                env_ignore_empty=env_settings.env_ignore_empty,
                env_parse_none_str=env_settings.env_parse_none_str,
                env_parse_enums=env_settings.env_parse_enums,
            )
        return init_settings, env_settings, dotenv_settings, file_secret_settings

    header_name: str = Field(
        _DEFAULT_HEADER_NAME,
        min_length=1,
        validation_alias=AliasChoices("IDEMPOTENCY_HEADER_NAME"),
    )
    ttl_s: float = Field(
        _DEFAULT_TTL_S,
        gt=0,
        validation_alias=AliasChoices("IDEMPOTENCY_TTL_S"),
    )
    methods: Set[str] = Field(
        default_factory=lambda: set(_DEFAULT_METHODS),
        validation_alias=AliasChoices("IDEMPOTENCY_METHODS"),
    )
    exclude_paths: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("IDEMPOTENCY_EXCLUDE_PATHS"),
    )
    store_backend: StoreBackend = Field(
        _DEFAULT_STORE_BACKEND,
        validation_alias=AliasChoices("IDEMPOTENCY_STORE_BACKEND"),
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_URL"),
    )
    redis_prefix: str = Field(
        "",
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_PREFIX"),
    )
    memory_lock_timeout_ms: int = Field(
        _DEFAULT_MEMORY_LOCK_TIMEOUT_MS,
        ge=0,
        le=60000,
        validation_alias=AliasChoices("IDEMPOTENCY_MEMORY_LOCK_TIMEOUT_MS"),
    )
    memory_sweep_interval_s: float = Field(
        _DEFAULT_MEMORY_SWEEP_INTERVAL_S,
        gt=0,
        validation_alias=AliasChoices("IDEMPOTENCY_MEMORY_SWEEP_INTERVAL_S"),
    )
    redis_lock_ttl_s: float = Field(
        _DEFAULT_REDIS_LOCK_TTL_S,
        gt=0,
        le=3600,
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_LOCK_TTL_S"),
    )
    redis_lock_wait_ms: int = Field(
        _DEFAULT_REDIS_LOCK_WAIT_MS,
        ge=0,
        le=30000,
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_LOCK_WAIT_MS"),
    )
    jitter_ms: int = Field(
        _DEFAULT_JITTER_MS,
        ge=0,
        le=1000,
        validation_alias=AliasChoices("IDEMPOTENCY_JITTER_MS"),
    )
    mask_prefix_len: int = Field(
        _DEFAULT_MASK_PREFIX_LEN,
        ge=4,
        le=16,
        validation_alias=AliasChoices("IDEMPOTENCY_MASK_PREFIX_LEN"),
    )

    @field_validator("methods", mode="before")
    @classmethod
    def _parse_methods_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return {item.upper() for item in _json_or_csv_to_list(value)}
        if isinstance(value, (list, set, tuple)):
            return {str(item).strip().upper() for item in value if str(item).strip()}
        return value

    @field_validator("exclude_paths", mode="before")
    @classmethod
    def _parse_paths_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return _json_or_csv_to_list(value)
        if isinstance(value, (list, set, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value


if TYPE_CHECKING:

    def _load_idempotency_from_env() -> IdempotencySettings: ...
else:

    def _load_idempotency_from_env() -> IdempotencySettings:
        return IdempotencySettings()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    idempotency: IdempotencySettings = Field(
        default_factory=_load_idempotency_from_env,
    )


def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """Re-read the environment into the module-level ``settings``."""
    global settings
    settings = get_settings()
    return settings
