"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PurchaseStatus(str, Enum):
    """Purchase lifecycle status. Closed set, see domain.ALLOWED_TRANSITIONS."""

    PENDING_PAYMENT = "pending_payment"
    PENDING_CONFIRM = "pending_confirm"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """How the buyer pays for a purchase."""

    CARD = "card"
    TRANSFER = "transfer"
    FREE = "free"


class CardProvider(str, Enum):
    """Gateway that captures a card payment."""

    TOSS = "toss"
    PORTONE = "portone"


class NextStep(str, Enum):
    """What the client has to do after creating a purchase intent."""

    CARD_REDIRECT = "card_redirect"
    TRANSFER_INSTRUCTIONS = "transfer_instructions"
    NONE = "none"


class VerificationOutcome(str, Enum):
    """Result of a successful unified payment verification."""

    COMPLETED = "completed"
    AWAITING_DEPOSIT = "awaiting_deposit"


class NotificationType(str, Enum):
    """Notification category, used by clients for filtering."""

    PURCHASE = "purchase"
    PAYOUT = "payout"
    SYSTEM = "system"


class PayoutStatus(str, Enum):
    """Payout request status (owned by the payout service)."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


# ============================================================================
# Purchase Intent Models
# ============================================================================


class CreatePurchaseIntentRequest(BaseModel):
    """POST /v1/purchases request body."""

    content_id: UUID
    payment_method: PaymentMethod = Field(
        PaymentMethod.CARD,
        description="card or transfer; ignored for free content",
    )
    card_provider: CardProvider = Field(
        CardProvider.PORTONE,
        description="Gateway used to capture card payments",
    )
    buyer_note: str | None = Field(
        None,
        max_length=200,
        description="Remittance name used to match a bank transfer",
    )

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: PaymentMethod) -> PaymentMethod:
        """Free claims are decided by the content price, not by the client."""
        if v == PaymentMethod.FREE:
            raise ValueError("payment_method must be 'card' or 'transfer'")
        return v


class PurchaseIntentResponse(BaseModel):
    """POST /v1/purchases response."""

    purchase_id: UUID
    status: PurchaseStatus
    next_step: NextStep
    amount: int
    order_number: str | None = None
    payment_id: str | None = None
    reused: bool = Field(False, description="An existing pending purchase was returned")
    already_claimed: bool = Field(False, description="Free content was claimed before")


class PurchaseSummary(BaseModel):
    """Purchase as seen by its buyer."""

    purchase_id: UUID
    content_id: UUID
    status: PurchaseStatus
    amount: int
    payment_method: PaymentMethod
    order_number: str | None = None
    payment_id: str | None = None
    created_at: datetime


class PendingPurchaseResponse(BaseModel):
    """GET /v1/purchases/pending response."""

    has_pending: bool
    purchase: PurchaseSummary | None = None


# ============================================================================
# Payment Verification Models
# ============================================================================


class ConfirmCardPaymentRequest(BaseModel):
    """POST /v1/payments/card/confirm request body."""

    payment_ref: str = Field(..., min_length=1, max_length=200, description="Toss paymentKey")
    order_ref: str = Field(..., min_length=1, max_length=64, description="Order number")
    amount: int = Field(..., ge=0)


class VirtualAccountResponse(BaseModel):
    """Deposit instructions for an issued virtual account."""

    bank_code: str
    account_number: str
    account_holder: str | None = None
    expires_at: datetime | None = None


class ConfirmCardPaymentResponse(BaseModel):
    """POST /v1/payments/card/confirm response."""

    success: bool
    purchase_id: UUID
    status: VerificationOutcome
    receipt_url: str | None = None
    virtual_account: VirtualAccountResponse | None = None


class VerifyUnifiedPaymentRequest(BaseModel):
    """POST /v1/payments/verify request body."""

    payment_ref: str = Field(..., min_length=1, max_length=64, description="PortOne paymentId")
    amount: int = Field(..., ge=0)


class VerifyUnifiedPaymentResponse(BaseModel):
    """POST /v1/payments/verify response."""

    success: bool
    purchase_id: UUID
    status: VerificationOutcome
    receipt_url: str | None = None
    virtual_account: VirtualAccountResponse | None = None


# ============================================================================
# Seller / Buyer Transition Models
# ============================================================================


class SellerApproveRequest(BaseModel):
    """POST /v1/seller/purchases/approve request body."""

    purchase_id: UUID


class SellerRejectRequest(BaseModel):
    """POST /v1/seller/purchases/reject request body."""

    purchase_id: UUID
    reason: str | None = Field(None, max_length=500)


class DecisionResponse(BaseModel):
    """Response for approve/reject transitions."""

    success: bool
    message: str
    purchase_id: UUID
    status: PurchaseStatus


class BuyerCancelRequest(BaseModel):
    """POST /v1/purchases/cancel request body."""

    content_id: UUID


class CancelResponse(BaseModel):
    """POST /v1/purchases/cancel response."""

    success: bool
    purchase_id: UUID


class RefundRequest(BaseModel):
    """POST /v1/purchases/refund request body."""

    purchase_id: UUID
    reason: str | None = Field(None, max_length=500)


class RefundResponse(BaseModel):
    """POST /v1/purchases/refund response."""

    success: bool
    purchase_id: UUID
    refunded_amount: int


# ============================================================================
# Balance Models
# ============================================================================


class PayoutSummary(BaseModel):
    """Payout request as listed in the balance view."""

    payout_id: UUID
    amount: int
    status: PayoutStatus
    requested_at: datetime
    processed_at: datetime | None = None


class BalanceResponse(BaseModel):
    """GET /v1/creator/balance response."""

    available_balance: int
    pending_balance: int
    total_earned: int
    total_paid_out: int
    recent_payouts: list[PayoutSummary]
    pending_payouts: list[PayoutSummary]
    platform_fee_rate: float
    payout_minimum_amount: int


# ============================================================================
# Webhook Models
# ============================================================================


class PortOneWebhookData(BaseModel):
    """Payload of a PortOne transaction webhook."""

    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(..., alias="paymentId", min_length=1)
    transaction_id: str | None = Field(None, alias="transactionId")
    store_id: str | None = Field(None, alias="storeId")


class PortOneWebhookRequest(BaseModel):
    """POST /v1/webhooks/portone request body."""

    type: str
    timestamp: str | None = None
    data: PortOneWebhookData


class TossWebhookData(BaseModel):
    """Payload of a TossPayments webhook. Only the references are used."""

    model_config = ConfigDict(populate_by_name=True)

    payment_key: str = Field(..., alias="paymentKey", min_length=1)
    order_id: str = Field(..., alias="orderId", min_length=1)
    status: str | None = None


class TossWebhookRequest(BaseModel):
    """POST /v1/webhooks/toss request body."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(..., alias="eventType")
    created_at: str | None = Field(None, alias="createdAt")
    data: TossWebhookData


class WebhookAck(BaseModel):
    """Webhooks are always acknowledged so the provider stops retrying."""

    received: bool = True


# ============================================================================
# Health / Error Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


class ErrorResponse(BaseModel):
    """Error body returned for every settlement failure."""

    code: str
    message: str
