"""Liveness endpoint."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Request

from app.api.models.responses import HealthResponse
from app.core.time_utils import UTC

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        version=request.app.version,
    )
