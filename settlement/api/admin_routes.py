"""
Admin API routes for platform operators.

Protected by the identity-provider JWT; every route requires the admin role.
Operators confirm or reject purchases awaiting confirmation when the seller
cannot (or will not) act on a bank-transfer deposit.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from settlement.api.dependencies import get_state_machine, require_admin
from settlement.api.routes import settlement_http_error
from settlement.exceptions import SettlementError
from settlement.models.api import DecisionResponse
from settlement.models.domain import CallerIdentity
from settlement.observability.logging import get_logger
from settlement.services.purchase_state_machine import PurchaseStateMachine

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================================
# Request/Response Models
# ============================================================================


class AdminRejectRequest(BaseModel):
    """Admin reject request body."""

    reason: str | None = Field(None, max_length=500)


# ============================================================================
# Purchase Confirmation
# ============================================================================


@router.post("/purchases/{purchase_id}/confirm", response_model=DecisionResponse)
async def admin_confirm_purchase(
    purchase_id: UUID,
    operator: CallerIdentity = Depends(require_admin),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> DecisionResponse:
    """Confirm a purchase awaiting confirmation on the seller's behalf."""
    try:
        purchase = await machine.platform_approve(operator, purchase_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    logger.info(
        "admin_purchase_confirmed",
        purchase_id=str(purchase_id),
        operator_id=str(operator.user_id),
    )
    return DecisionResponse(
        success=True,
        message="Purchase confirmed by platform",
        purchase_id=purchase.purchase_id,
        status=purchase.status,
    )


@router.post("/purchases/{purchase_id}/reject", response_model=DecisionResponse)
async def admin_reject_purchase(
    purchase_id: UUID,
    request: AdminRejectRequest,
    operator: CallerIdentity = Depends(require_admin),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> DecisionResponse:
    """Reject a purchase awaiting confirmation."""
    try:
        purchase = await machine.platform_reject(operator, purchase_id, request.reason)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    logger.info(
        "admin_purchase_rejected",
        purchase_id=str(purchase_id),
        operator_id=str(operator.user_id),
    )
    return DecisionResponse(
        success=True,
        message="Purchase rejected by platform",
        purchase_id=purchase.purchase_id,
        status=purchase.status,
    )
