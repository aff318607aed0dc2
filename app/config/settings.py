from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from typing import Self

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .api import ApiConfig
from .metadata import MetadataConfig
from .sync import OutboxConfig, ReconciliationConfig

logger = logging.getLogger(__name__)


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    use_loguru: bool = Field(default=True, validation_alias="LOG_USE_LOGURU")
    remote_db_path: str = Field(default="/data/links.db", validation_alias="REMOTE_DB_PATH")
    local_cache_path: str = Field(
        default="/data/device-cache.db", validation_alias="LOCAL_CACHE_PATH"
    )
    device_id: str = Field(default="default", validation_alias="DEVICE_ID")

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        log_level = str(value or "INFO").upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if log_level not in valid_levels:
            msg = f"Invalid log level: {value}. Must be one of {valid_levels}"
            raise ValueError(msg)
        return log_level

    @field_validator("log_file", mode="before")
    @classmethod
    def _validate_log_file(cls, value: Any) -> str | None:
        if value is None:
            return None
        trimmed = str(value).strip()
        if not trimmed:
            return None
        if "\x00" in trimmed:
            msg = "Log file path contains invalid characters"
            raise ValueError(msg)
        return trimmed

    @field_validator("device_id", mode="before")
    @classmethod
    def _validate_device_id(cls, value: Any) -> str:
        raw = str(value or "default").strip()
        if not raw or len(raw) > 100:
            msg = "Device ID must be between 1 and 100 characters"
            raise ValueError(msg)
        if not all(c.isalnum() or c in "-_." for c in raw):
            msg = "Device ID may only contain letters, digits, '-', '_' and '.'"
            raise ValueError(msg)
        return raw


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    metadata: MetadataConfig
    outbox: OutboxConfig
    reconciliation: ReconciliationConfig
    api: ApiConfig


class Settings(BaseSettings):
    """Application settings loaded automatically from environment variables.

    Uses pydantic-settings for automatic environment variable loading.
    Nested models are populated by matching validation_alias on each field.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @model_validator(mode="before")
    @classmethod
    def _build_nested_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Build nested config objects from flat environment variables.

        Constructor arguments take precedence over ``os.environ``.
        """
        if not isinstance(data, dict):
            return data

        result = dict(data)
        merged_source = {**dict(os.environ), **data}

        for field_name, field_info in cls.model_fields.items():
            annotation = field_info.annotation
            if not isinstance(annotation, type) or not issubclass(annotation, BaseModel):
                continue
            if isinstance(result.get(field_name), BaseModel):
                continue

            nested_data: dict[str, Any] = {}
            for nested_field_name, nested_field in annotation.model_fields.items():
                env_value = cls._resolve_env_value(merged_source, nested_field)
                if env_value is not None:
                    nested_data[nested_field_name] = env_value

            if nested_data:
                if field_name in result and isinstance(result[field_name], dict):
                    result[field_name] = {**nested_data, **result[field_name]}
                else:
                    result[field_name] = nested_data

        return result

    @staticmethod
    def _resolve_env_value(data: dict[str, Any], field: Any) -> Any | None:
        """Resolve environment variable value for a field using its aliases."""
        aliases: list[str] = []
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            aliases.extend(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            aliases.append(alias)
        if field.alias:
            aliases.append(field.alias)

        for name in aliases:
            if name in data:
                return data[name]
        return None

    @model_validator(mode="after")
    def _check_timeouts(self) -> Self:
        if self.outbox.attempt_timeout_sec and self.outbox.attempt_timeout_sec < 1:
            logger.warning(
                "outbox_attempt_timeout_very_short",
                extra={"attempt_timeout_sec": self.outbox.attempt_timeout_sec},
            )
        if self.reconciliation.rearm_offset_sec < self.metadata.retry_cooldown_sec:
            logger.warning(
                "rearm_offset_shorter_than_cooldown",
                extra={
                    "rearm_offset_sec": self.reconciliation.rearm_offset_sec,
                    "retry_cooldown_sec": self.metadata.retry_cooldown_sec,
                },
            )
        return self

    def as_app_config(self) -> AppConfig:
        return AppConfig(
            runtime=self.runtime,
            metadata=self.metadata,
            outbox=self.outbox,
            reconciliation=self.reconciliation,
            api=self.api,
        )


def load_config(**overrides: Any) -> AppConfig:
    """Load application configuration from environment variables.

    Sources, highest precedence first: keyword overrides (section name to a
    dict of field values), environment variables, a ``.env`` file.

    Raises:
        RuntimeError: If configuration validation fails.
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        msg = f"Configuration validation failed: {exc}"
        raise RuntimeError(msg) from exc
    return settings.as_app_config()
