"""
API Routes - Settlement endpoints for buyers, sellers and gateway webhooks.

Domain errors are translated to HTTP errors here; every error body is
{"code": ..., "message": ...}.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.api.dependencies import (
    get_balance_aggregator,
    get_caller,
    get_state_machine,
)
from settlement.config import Settings, get_settings
from settlement.db.session import get_read_db
from settlement.exceptions import GatewayTransientError, SettlementError
from settlement.models.api import (
    BalanceResponse,
    BuyerCancelRequest,
    CancelResponse,
    ConfirmCardPaymentRequest,
    ConfirmCardPaymentResponse,
    CreatePurchaseIntentRequest,
    DecisionResponse,
    HealthResponse,
    PayoutSummary,
    PendingPurchaseResponse,
    PortOneWebhookRequest,
    PurchaseIntentResponse,
    PurchaseSummary,
    RefundRequest,
    RefundResponse,
    SellerApproveRequest,
    SellerRejectRequest,
    TossWebhookRequest,
    VerifyUnifiedPaymentRequest,
    VerifyUnifiedPaymentResponse,
    VirtualAccountResponse,
    WebhookAck,
)
from settlement.models.domain import CallerIdentity, PayoutData, PurchaseData, VerificationResult
from settlement.observability.logging import get_logger
from settlement.services.balance import BalanceAggregator
from settlement.services.purchase_state_machine import PurchaseStateMachine
from settlement.services.toss_gateway import verify_toss_signature

logger = get_logger(__name__)
router = APIRouter()


def settlement_http_error(exc: SettlementError) -> HTTPException:
    """Map a domain error to an HTTP error without leaking internals."""
    headers = {"Retry-After": "5"} if isinstance(exc, GatewayTransientError) else None
    if exc.status_code >= 500:
        logger.error("settlement_request_failed", error_type=type(exc).__name__, code=exc.code)
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
        headers=headers,
    )


def purchase_summary(purchase: PurchaseData) -> PurchaseSummary:
    return PurchaseSummary(
        purchase_id=purchase.purchase_id,
        content_id=purchase.content_id,
        status=purchase.status,
        amount=purchase.amount,
        payment_method=purchase.payment_method,
        order_number=purchase.order_number,
        payment_id=purchase.payment_id,
        created_at=purchase.created_at,
    )


def _virtual_account(result: VerificationResult) -> VirtualAccountResponse | None:
    account = result.virtual_account
    if account is None:
        return None
    return VirtualAccountResponse(
        bank_code=account.bank_code,
        account_number=account.account_number,
        account_holder=account.account_holder,
        expires_at=account.expires_at,
    )


def _payout_summary(payout: PayoutData) -> PayoutSummary:
    return PayoutSummary(
        payout_id=payout.payout_id,
        amount=payout.amount,
        status=payout.status,
        requested_at=payout.requested_at,
        processed_at=payout.processed_at,
    )


# =============================================================================
# Buyer Endpoints
# =============================================================================


@router.post(
    "/v1/purchases",
    response_model=PurchaseIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase_intent(
    request: CreatePurchaseIntentRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> PurchaseIntentResponse:
    """
    Start buying a content item.

    Paid content returns a pending purchase and the next client step
    (card redirect or bank-transfer instructions). Free content is claimed
    immediately and returned as completed.
    """
    try:
        result = await machine.create_intent(
            caller,
            request.content_id,
            request.payment_method,
            request.card_provider,
            request.buyer_note,
        )
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    purchase = result.purchase
    return PurchaseIntentResponse(
        purchase_id=purchase.purchase_id,
        status=purchase.status,
        next_step=result.next_step,
        amount=purchase.amount,
        order_number=purchase.order_number,
        payment_id=purchase.payment_id,
        reused=result.reused,
        already_claimed=result.already_claimed,
    )


@router.get("/v1/purchases/pending", response_model=PendingPurchaseResponse)
async def get_pending_purchase(
    content_id: UUID = Query(...),
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> PendingPurchaseResponse:
    """Check whether the caller has an in-flight purchase for a content item."""
    purchase = await machine.pending_purchase(caller, content_id)
    if purchase is None:
        return PendingPurchaseResponse(has_pending=False)
    return PendingPurchaseResponse(has_pending=True, purchase=purchase_summary(purchase))


@router.post("/v1/purchases/cancel", response_model=CancelResponse)
async def cancel_purchase(
    request: BuyerCancelRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> CancelResponse:
    """Cancel the caller's pending purchase for a content item."""
    try:
        purchase = await machine.buyer_cancel(caller, request.content_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return CancelResponse(success=True, purchase_id=purchase.purchase_id)


@router.post("/v1/purchases/refund", response_model=RefundResponse)
async def refund_purchase(
    request: RefundRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> RefundResponse:
    """Refund a completed purchase within the refund window."""
    try:
        purchase = await machine.refund(caller, request.purchase_id, request.reason)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return RefundResponse(
        success=True,
        purchase_id=purchase.purchase_id,
        refunded_amount=purchase.amount,
    )


# =============================================================================
# Payment Verification
# =============================================================================


@router.post("/v1/payments/card/confirm", response_model=ConfirmCardPaymentResponse)
async def confirm_card_payment(
    request: ConfirmCardPaymentRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> ConfirmCardPaymentResponse:
    """Confirm a card payment after the gateway redirect."""
    try:
        result = await machine.confirm_card_payment(
            caller, request.payment_ref, request.order_ref, request.amount
        )
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return ConfirmCardPaymentResponse(
        success=True,
        purchase_id=result.purchase.purchase_id,
        status=result.outcome,
        receipt_url=result.receipt_url,
        virtual_account=_virtual_account(result),
    )


@router.post("/v1/payments/verify", response_model=VerifyUnifiedPaymentResponse)
async def verify_unified_payment(
    request: VerifyUnifiedPaymentRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> VerifyUnifiedPaymentResponse:
    """
    Verify a unified-gateway payment.

    Returns status=awaiting_deposit with account details when a virtual
    account was issued; the purchase stays pending until the deposit lands.
    """
    try:
        result = await machine.verify_unified_payment(caller, request.payment_ref, request.amount)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return VerifyUnifiedPaymentResponse(
        success=True,
        purchase_id=result.purchase.purchase_id,
        status=result.outcome,
        receipt_url=result.receipt_url,
        virtual_account=_virtual_account(result),
    )


@router.post("/v1/webhooks/portone", response_model=WebhookAck)
async def portone_webhook(
    request: PortOneWebhookRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> WebhookAck:
    """
    Receive PortOne transaction webhooks.

    Always acknowledged. The payment is re-read from PortOne before any
    transition, so the webhook body itself is never trusted.
    """
    logger.info(
        "portone_webhook_received",
        event=request.type,
        payment_id=request.data.payment_id,
    )
    try:
        await machine.reconcile_gateway_event(request.data.payment_id, request.type)
    except SettlementError as exc:
        logger.error(
            "portone_webhook_failed",
            event=request.type,
            payment_id=request.data.payment_id,
            error_type=type(exc).__name__,
        )
    return WebhookAck()


@router.post("/v1/webhooks/toss", response_model=WebhookAck)
async def toss_webhook(
    http_request: Request,
    machine: PurchaseStateMachine = Depends(get_state_machine),
    config: Settings = Depends(get_settings),
) -> WebhookAck:
    """
    Receive TossPayments webhooks (card confirm, virtual-account deposit).

    When a webhook secret is configured the `toss-signature` header must be
    a valid HMAC of the raw body. Verified deliveries are always
    acknowledged; the payment is read back from Toss before any transition.
    """
    raw_body = await http_request.body()
    if config.toss_webhook_secret and not verify_toss_signature(
        raw_body, http_request.headers.get("toss-signature", ""), config.toss_webhook_secret
    ):
        logger.warning("toss_webhook_signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "invalid_signature", "message": "Invalid signature"},
        )

    try:
        payload = TossWebhookRequest.model_validate_json(raw_body)
    except PydanticValidationError:
        logger.warning("toss_webhook_payload_invalid")
        return WebhookAck()

    logger.info(
        "toss_webhook_received",
        event=payload.event_type,
        order_id=payload.data.order_id,
    )
    try:
        await machine.reconcile_toss_event(
            payload.data.payment_key, payload.data.order_id, payload.event_type
        )
    except SettlementError as exc:
        logger.error(
            "toss_webhook_failed",
            event=payload.event_type,
            order_id=payload.data.order_id,
            error_type=type(exc).__name__,
        )
    return WebhookAck()


# =============================================================================
# Seller Endpoints
# =============================================================================


@router.post("/v1/seller/purchases/approve", response_model=DecisionResponse)
async def seller_approve(
    request: SellerApproveRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> DecisionResponse:
    """Seller confirms a bank-transfer deposit arrived."""
    try:
        purchase = await machine.seller_approve(caller, request.purchase_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return DecisionResponse(
        success=True,
        message="Purchase approved",
        purchase_id=purchase.purchase_id,
        status=purchase.status,
    )


@router.post("/v1/seller/purchases/reject", response_model=DecisionResponse)
async def seller_reject(
    request: SellerRejectRequest,
    caller: CallerIdentity = Depends(get_caller),
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> DecisionResponse:
    """Seller reports a bank-transfer deposit never arrived."""
    try:
        purchase = await machine.seller_reject(caller, request.purchase_id, request.reason)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return DecisionResponse(
        success=True,
        message="Purchase rejected",
        purchase_id=purchase.purchase_id,
        status=purchase.status,
    )


@router.get("/v1/creator/balance", response_model=BalanceResponse)
async def get_creator_balance(
    caller: CallerIdentity = Depends(get_caller),
    balances: BalanceAggregator = Depends(get_balance_aggregator),
    config: Settings = Depends(get_settings),
) -> BalanceResponse:
    """Get the caller's creator balance with recent and open payouts."""
    view = await balances.read(caller.user_id)
    balance = view.balance
    return BalanceResponse(
        available_balance=balance.available_balance,
        pending_balance=balance.pending_balance,
        total_earned=balance.total_earned,
        total_paid_out=balance.total_paid_out,
        recent_payouts=[_payout_summary(p) for p in view.recent_payouts],
        pending_payouts=[_payout_summary(p) for p in view.pending_payouts],
        platform_fee_rate=config.platform_fee_rate,
        payout_minimum_amount=config.payout_minimum_amount,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_database_unreachable", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
