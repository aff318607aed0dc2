"""
Pydantic models for API responses.
"""

from pydantic import BaseModel, ConfigDict, Field

from app.domain.models.link import Metadata


class MetadataResponse(BaseModel):
    """Successful extraction, serialised with the field names clients expect."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str | None = None
    thumbnail_url: str | None = Field(default=None, serialization_alias="thumbnailUrl")
    domain: str

    @classmethod
    def from_metadata(cls, metadata: Metadata) -> "MetadataResponse":
        return cls(
            title=metadata.title,
            description=metadata.description,
            thumbnail_url=metadata.thumbnail_url,
            domain=metadata.domain,
        )


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
