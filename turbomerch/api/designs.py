"""
Design quota API endpoints
Quota checks before a generation and usage tracking after it
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from turbomerch.api.errors import error_response
from turbomerch.middleware.auth import get_current_user
from turbomerch.models.user import User
from turbomerch.services.exceptions import QuotaExceededError, UsageMeteringError
from turbomerch.services.overage import usage_snapshot_from_record
from turbomerch.services.usage_meter import UsageMeter, get_usage_meter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/designs", tags=["designs"])


# Pydantic models
class CheckQuotaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    design_count: int = Field(1, alias="designCount")


class TrackDesignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    design_count: int = Field(1, alias="designCount")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey")


@router.post("/check-quota")
async def check_quota(
    request: CheckQuotaRequest,
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """
    Check whether the user can generate `designCount` designs.

    Returns 403 with the usage snapshot when blocked, so the UI can show the
    upgrade prompt.
    """
    try:
        decision = await meter.can_generate(user.id, request.design_count)
    except UsageMeteringError as e:
        return error_response(e)

    if not decision.allowed:
        blocked = QuotaExceededError(
            decision.reason,
            usage=decision.usage_snapshot(),
            hard_cap_reached=decision.hard_cap_reached,
        )
        return error_response(blocked)

    response = {
        "allowed": True,
        "usage": decision.usage_snapshot(),
    }
    if decision.in_overage:
        response["overage"] = {
            "count": decision.overage_count,
            "charge": float(decision.overage_charge),
        }
    if decision.warning:
        response["warning"] = decision.warning
    return response


@router.post("/track")
async def track_designs(
    request: TrackDesignRequest,
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """Record a completed generation"""
    key = request.idempotency_key or f"{user.id}:{uuid.uuid4()}"

    try:
        result = await meter.record_generation(user.id, request.design_count, key)
    except UsageMeteringError as e:
        return error_response(e)

    usage = usage_snapshot_from_record(result.record) if result.record is not None else None

    if result.duplicate:
        return JSONResponse(
            status_code=409,
            content={
                "error": "duplicate",
                "message": "This generation has already been recorded",
                "idempotencyKey": key,
                "usage": usage,
            },
        )

    response = {
        "success": True,
        "idempotencyKey": key,
        "usage": usage,
    }
    if result.warning:
        response["warning"] = result.warning
    return response
