"""
Usage API endpoints
Display and repair the current period's design usage
"""

from fastapi import APIRouter, Depends
import logging

from turbomerch.api.errors import error_response
from turbomerch.middleware.auth import get_current_user
from turbomerch.models.user import User
from turbomerch.services.exceptions import UsageMeteringError
from turbomerch.services.usage_meter import UsageMeter, get_usage_meter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/summary")
async def get_usage_summary(
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """
    Get current usage for the logged-in user
    """
    try:
        return await meter.get_usage_summary(user.id)
    except UsageMeteringError as e:
        return error_response(e)


@router.post("/fix")
async def fix_usage(
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """Recalculate overage on the current usage record from its totals"""
    try:
        return await meter.repair_usage(user.id)
    except UsageMeteringError as e:
        return error_response(e)
