"""
Billing API endpoints
Overage handling around plan upgrades and period invoices
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import logging

from turbomerch.api.errors import error_response
from turbomerch.middleware.auth import get_current_user, require_admin
from turbomerch.models.user import User
from turbomerch.services.exceptions import UnknownTierError, UsageMeteringError
from turbomerch.services.usage_meter import UsageMeter, get_usage_meter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing"])


# Pydantic models
class UpgradePreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_tier: str = Field(..., alias="newTier")


class OverageDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision: str
    new_tier: Optional[str] = Field(None, alias="newTier")


class ClosePeriodRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    usage_record_id: Optional[str] = Field(None, alias="usageRecordId")


@router.post("/check-upgrade-overages")
async def check_upgrade_overages(
    request: UpgradePreviewRequest,
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """Show pending overage before an upgrade so the UI can offer credits or payment"""
    try:
        return await meter.preview_upgrade(user.id, request.new_tier)
    except UnknownTierError:
        raise HTTPException(status_code=400, detail="Invalid tier specified")
    except UsageMeteringError as e:
        return error_response(e)


@router.post("/apply-overage-decision")
async def apply_overage_decision(
    request: OverageDecisionRequest,
    user: User = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """
    Apply the user's choice for overage during an upgrade:
    - credits: deduct the overage from the next period's allowance
    - pay: charge the overage now
    """
    try:
        result = await meter.reconcile_overage_on_upgrade(user.id, request.decision)
    except UsageMeteringError as e:
        return error_response(e)

    logger.info(f"Overage decision applied: user={user.id}, decision={result.decision}, status={result.status}")
    return result.to_dict()


@router.post("/close-period")
async def close_period(
    request: ClosePeriodRequest,
    admin: User = Depends(require_admin),
    meter: UsageMeter = Depends(get_usage_meter)
):
    """Create the billing record for a user's finished period (admin only)"""
    try:
        entry = await meter.close_billing_period(request.user_id, request.usage_record_id)
    except UsageMeteringError as e:
        return error_response(e)

    return {
        "id": str(entry.id),
        "userId": str(entry.user_id),
        "periodStart": entry.period_start.isoformat(),
        "periodEnd": entry.period_end.isoformat(),
        "tier": entry.tier,
        "designsIncluded": entry.designs_included,
        "designsUsed": entry.designs_used,
        "overageDesigns": entry.overage_designs,
        "subscriptionFee": float(entry.subscription_fee),
        "overageFee": float(entry.overage_fee),
        "totalAmount": float(entry.total_amount),
        "paymentStatus": entry.payment_status,
    }
