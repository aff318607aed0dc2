"""API dependencies for FastAPI dependency injection."""

import hmac

from fastapi import Depends, Request

from app.adapters.metadata.extractor import MetadataExtractor
from app.api.exceptions import AuthenticationError
from app.config import AppConfig


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_extractor(request: Request) -> MetadataExtractor:
    return request.app.state.extractor


async def require_service_key(request: Request, config: AppConfig = Depends(get_config)) -> None:
    """Check the bearer credential when the service is configured with one."""
    expected = config.metadata.service_key
    if not expected:
        return
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise AuthenticationError()
