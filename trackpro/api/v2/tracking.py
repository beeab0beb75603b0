"""
Public Tracking API
Customer-facing tracking page data, keyed by tracking code (no auth)
"""

from fastapi import APIRouter, Path

from trackpro.api.deps import IngestService
from trackpro.exceptions import NotFoundError
from trackpro.schemas.errors import READ_ERROR_RESPONSES
from trackpro.schemas.tracking import PublicTrackingInfo

router = APIRouter()


@router.get("/{tracking_code}", response_model=PublicTrackingInfo, responses=READ_ERROR_RESPONSES)
async def get_public_tracking(
    service: IngestService,
    tracking_code: str = Path(..., description="Public tracking code"),
):
    """Get tracking info for the customer tracking page"""
    info = await service.get_public_tracking_info(tracking_code)
    if not info:
        raise NotFoundError("Tracking code", tracking_code)
    return info
