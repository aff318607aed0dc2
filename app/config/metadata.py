from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; AnchorBot/1.0; +https://anchor.app)"

_INT_BOUNDS: dict[str, tuple[int, int]] = {
    "max_fetch_attempts": (1, 10),
    "retry_cooldown_sec": (0, 86400),
    "retry_batch_size": (1, 100),
    "client_attempts": (1, 5),
    "max_body_bytes": (1024, 50_000_000),
}


class MetadataConfig(BaseModel):
    """Metadata extraction service and enrichment retry configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    service_url: str = Field(
        default="http://127.0.0.1:8000/v1/metadata",
        validation_alias="METADATA_SERVICE_URL",
        description="Endpoint clients call to extract metadata",
    )
    service_key: str = Field(
        default="",
        validation_alias="METADATA_SERVICE_KEY",
        description="Bearer credential shared by the service and its clients",
    )
    timeout_sec: float = Field(
        default=10.0,
        validation_alias="METADATA_TIMEOUT_SEC",
        description="Hard limit for one extraction, on both sides of the call",
    )
    user_agent: str = Field(default=DEFAULT_USER_AGENT, validation_alias="METADATA_USER_AGENT")
    max_body_bytes: int = Field(
        default=2_000_000,
        validation_alias="METADATA_MAX_BODY_BYTES",
        description="Pages larger than this are parsed only up to the limit",
    )
    client_attempts: int = Field(
        default=1,
        validation_alias="METADATA_CLIENT_ATTEMPTS",
        description="Calls a client makes to the extraction service per enrichment",
    )
    max_fetch_attempts: int = Field(
        default=3,
        validation_alias="METADATA_MAX_FETCH_ATTEMPTS",
        description="Enrichment attempts per link before it is left incomplete",
    )
    retry_cooldown_sec: int = Field(
        default=60,
        validation_alias="METADATA_RETRY_COOLDOWN_SEC",
        description="Minimum gap between two enrichment attempts of the same link",
    )
    retry_batch_size: int = Field(default=10, validation_alias="METADATA_RETRY_BATCH_SIZE")
    retry_debounce_sec: float = Field(
        default=1.0,
        validation_alias="METADATA_RETRY_DEBOUNCE_SEC",
        description="Calls to retry incomplete metadata closer together than this are ignored",
    )

    @field_validator("timeout_sec", "retry_debounce_sec", mode="before")
    @classmethod
    def _validate_seconds(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = float(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid number"
            raise ValueError(msg) from exc
        if parsed < 0 or parsed > 300:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must be between 0 and 300"
            raise ValueError(msg)
        if info.field_name == "timeout_sec" and parsed == 0:
            msg = "Metadata timeout must be positive"
            raise ValueError(msg)
        return parsed

    @field_validator(*_INT_BOUNDS, mode="before")
    @classmethod
    def _validate_bounded_int(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = int(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid integer"
            raise ValueError(msg) from exc
        low, high = _INT_BOUNDS[info.field_name]
        if parsed < low or parsed > high:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must be between {low} and {high}"
            raise ValueError(msg)
        return parsed

    @field_validator("service_key", mode="before")
    @classmethod
    def _validate_service_key(cls, value: Any) -> str:
        if value in (None, ""):
            return ""
        key = str(value).strip()
        if len(key) < 16:
            logger.warning("metadata_service_key_short", extra={"length": len(key)})
        return key

    @field_validator("user_agent", mode="before")
    @classmethod
    def _validate_user_agent(cls, value: Any) -> str:
        agent = str(value or DEFAULT_USER_AGENT).strip()
        if any(ch in agent for ch in "\r\n"):
            msg = "Metadata user agent cannot contain line breaks"
            raise ValueError(msg)
        return agent
