"""
Pydantic models for API request validation.
"""

from pydantic import BaseModel, Field, field_validator


class MetadataRequest(BaseModel):
    """Request body for ``POST /v1/metadata``."""

    url: str | None = Field(default=None, max_length=2048)

    @field_validator("url", mode="before")
    @classmethod
    def _strip_url(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value
