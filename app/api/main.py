"""
FastAPI application for the metadata extraction service.

Usage:
    uvicorn app.api.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.adapters.metadata.extractor import MetadataExtractor
from app.api.error_handlers import (
    api_exception_handler,
    global_exception_handler,
    validation_exception_handler,
)
from app.api.exceptions import APIException
from app.api.middleware import correlation_id_middleware
from app.api.routers import health, metadata
from app.config import AppConfig, load_config
from app.core.logging_utils import get_logger

logger = get_logger(__name__)


def create_app(
    config: AppConfig | None = None, *, extractor: MetadataExtractor | None = None
) -> FastAPI:
    """Build the service; tests pass their own config and extractor."""
    cfg = config or load_config()
    page_extractor = extractor or MetadataExtractor(cfg.metadata)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(
            "metadata_service_started",
            extra={"auth_required": bool(cfg.metadata.service_key)},
        )
        try:
            yield
        finally:
            await page_extractor.aclose()
            logger.info("metadata_service_stopped")

    app = FastAPI(
        title="Link Metadata Service",
        description="Extracts title, description and thumbnail for saved links",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.extractor = page_extractor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.api.allowed_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        max_age=3600,
    )
    app.middleware("http")(correlation_id_middleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(metadata.router, prefix="/v1", tags=["Metadata"])

    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _cfg = app.state.config
    uvicorn.run(
        "app.api.main:app",
        # nosec B104 - intentional for container deployments
        host=_cfg.api.host,
        port=_cfg.api.port,
        log_level=_cfg.runtime.log_level.lower(),
    )
