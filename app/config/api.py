from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ApiConfig(BaseModel):
    """HTTP surface of the metadata extraction service."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    port: int = Field(default=8000, validation_alias="API_PORT")
    allowed_origins: tuple[str, ...] = Field(default=("*",), validation_alias="ALLOWED_ORIGINS")

    @field_validator("port", mode="before")
    @classmethod
    def _validate_port(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 8000))
        except ValueError as exc:
            msg = "API port must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 1 or parsed > 65535:
            msg = "API port must be between 1 and 65535"
            raise ValueError(msg)
        return parsed

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> tuple[str, ...]:
        if value in (None, ""):
            return ("*",)
        if isinstance(value, str):
            return tuple(origin.strip() for origin in value.split(",") if origin.strip())
        return tuple(value)
