"""Metadata extraction endpoint.

Stateless: one page fetch per request, nothing stored. Clients treat every
non-2xx answer as "use the domain as the title".
"""

from fastapi import APIRouter, Depends, Request

from app.adapters.metadata.extractor import MetadataExtractor
from app.api.dependencies import get_extractor, require_service_key
from app.api.exceptions import UpstreamError, UpstreamTimeoutError, ValidationError
from app.api.models.requests import MetadataRequest
from app.api.models.responses import MetadataResponse
from app.core.logging_utils import get_logger
from app.domain.exceptions.domain_exceptions import ExtractionError, InvalidUrlError

logger = get_logger(__name__)
router = APIRouter()


@router.post(
    "/metadata",
    response_model=MetadataResponse,
    response_model_by_alias=True,
    dependencies=[Depends(require_service_key)],
)
async def fetch_metadata(
    body: MetadataRequest,
    request: Request,
    extractor: MetadataExtractor = Depends(get_extractor),
) -> MetadataResponse:
    """Fetch a page and return its title, description, thumbnail and domain."""
    if not body.url:
        raise ValidationError("URL is required")

    try:
        metadata = await extractor.extract(body.url)
    except InvalidUrlError as exc:
        raise ValidationError("Invalid URL", details={"reason": exc.message}) from exc
    except ExtractionError as exc:
        logger.info(
            "metadata_request_failed",
            extra={
                "correlation_id": getattr(request.state, "correlation_id", None),
                "reason": exc.reason,
                "error": exc.message,
            },
        )
        if exc.reason == "timeout":
            raise UpstreamTimeoutError() from exc
        raise UpstreamError(exc.message, upstream_status=exc.status_code) from exc

    return MetadataResponse.from_metadata(metadata)
