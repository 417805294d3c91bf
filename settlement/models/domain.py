"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from settlement.models.api import (
    CardProvider,
    NextStep,
    PaymentMethod,
    PayoutStatus,
    PurchaseStatus,
    VerificationOutcome,
)

# ============================================================================
# Purchase State Machine
# ============================================================================

PENDING_STATUSES: frozenset[PurchaseStatus] = frozenset(
    {PurchaseStatus.PENDING_PAYMENT, PurchaseStatus.PENDING_CONFIRM}
)

TERMINAL_STATUSES: frozenset[PurchaseStatus] = frozenset(
    {
        PurchaseStatus.FAILED,
        PurchaseStatus.CANCELLED,
        PurchaseStatus.REJECTED,
        PurchaseStatus.REFUNDED,
    }
)

# Legal source -> target moves. completed only leaves through a refund.
ALLOWED_TRANSITIONS: dict[PurchaseStatus, frozenset[PurchaseStatus]] = {
    PurchaseStatus.PENDING_PAYMENT: frozenset(
        {
            PurchaseStatus.COMPLETED,
            PurchaseStatus.FAILED,
            PurchaseStatus.CANCELLED,
            PurchaseStatus.REJECTED,
        }
    ),
    PurchaseStatus.PENDING_CONFIRM: frozenset(
        {
            PurchaseStatus.COMPLETED,
            PurchaseStatus.REJECTED,
            PurchaseStatus.CANCELLED,
        }
    ),
    PurchaseStatus.COMPLETED: frozenset({PurchaseStatus.REFUNDED}),
    PurchaseStatus.REJECTED: frozenset(),
    PurchaseStatus.CANCELLED: frozenset(),
    PurchaseStatus.REFUNDED: frozenset(),
    PurchaseStatus.FAILED: frozenset(),
}


def source_statuses_for(target: PurchaseStatus) -> frozenset[PurchaseStatus]:
    """All statuses from which `target` can be reached."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def can_transition(source: PurchaseStatus, target: PurchaseStatus) -> bool:
    """Check a single move against the transition table."""
    return target in ALLOWED_TRANSITIONS[source]


# ============================================================================
# Revenue Split
# ============================================================================


@dataclass(frozen=True)
class RevenueSplit:
    """How a completed purchase amount is divided between creator and platform."""

    amount: int
    platform_fee: int
    creator_revenue: int

    def __post_init__(self) -> None:
        """Validate split reconstructs the amount."""
        if self.amount < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount}")
        if self.platform_fee < 0 or self.creator_revenue < 0:
            raise ValueError("Split parts cannot be negative")
        if self.platform_fee + self.creator_revenue != self.amount:
            raise ValueError(
                f"Split {self.platform_fee}+{self.creator_revenue} != amount {self.amount}"
            )


def compute_revenue_split(amount: int, fee_rate: float) -> RevenueSplit:
    """
    Split an amount using the platform fee rate.

    platform_fee = floor(amount * fee_rate), creator_revenue gets the remainder,
    so rounding always favors the creator. Decimal keeps the floor exact for
    rates like 0.2 that have no exact binary representation.
    """
    if amount == 0:
        return RevenueSplit(amount=0, platform_fee=0, creator_revenue=0)

    product = Decimal(amount) * Decimal(str(fee_rate))
    platform_fee = int(product.to_integral_value(rounding=ROUND_FLOOR))
    return RevenueSplit(
        amount=amount,
        platform_fee=platform_fee,
        creator_revenue=amount - platform_fee,
    )


# ============================================================================
# Catalogue / Identity
# ============================================================================


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller as asserted by the identity provider."""

    user_id: UUID
    email: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class ContentData:
    """Purchasable content, read from the external catalogue."""

    content_id: UUID
    creator_id: UUID
    title: str
    price: int
    is_published: bool

    def __post_init__(self) -> None:
        """Validate content constraints."""
        if self.price < 0:
            raise ValueError(f"Price cannot be negative: {self.price}")


# ============================================================================
# Purchase
# ============================================================================


@dataclass(frozen=True)
class PurchaseData:
    """Immutable view of a purchase record."""

    purchase_id: UUID
    content_id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: int
    creator_revenue: int
    platform_fee: int
    status: PurchaseStatus
    payment_method: PaymentMethod
    card_provider: CardProvider | None
    payment_id: str | None
    order_number: str | None
    payment_key: str | None
    buyer_note: str | None
    rejection_reason: str | None
    refund_reason: str | None
    created_at: datetime
    payment_confirmed_at: datetime | None
    seller_confirmed_at: datetime | None
    platform_confirmed_at: datetime | None
    completed_at: datetime | None
    refunded_at: datetime | None

    def __post_init__(self) -> None:
        """Validate money invariants."""
        if self.amount < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount}")
        split_total = self.creator_revenue + self.platform_fee
        if split_total not in (0, self.amount):
            raise ValueError(
                f"Revenue split {split_total} does not reconstruct amount {self.amount}"
            )

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class IntentResult:
    """Outcome of creating (or reusing) a purchase intent."""

    purchase: PurchaseData
    next_step: NextStep
    reused: bool = False
    already_claimed: bool = False


@dataclass(frozen=True)
class VirtualAccount:
    """Bank account issued by the gateway for a deposit-based payment."""

    bank_code: str
    account_number: str
    account_holder: str | None
    expires_at: datetime | None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a gateway verification that did not fail."""

    purchase: PurchaseData
    outcome: VerificationOutcome
    receipt_url: str | None = None
    virtual_account: VirtualAccount | None = None


# ============================================================================
# Creator Balance
# ============================================================================


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    Creator balance at a point in time.

    Accounting identity: available + pending + total_paid_out == total_earned.
    """

    available_balance: int
    pending_balance: int
    total_earned: int
    total_paid_out: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        for name in ("available_balance", "pending_balance", "total_earned", "total_paid_out"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative: {getattr(self, name)}")
        if (
            self.available_balance + self.pending_balance + self.total_paid_out
            != self.total_earned
        ):
            raise ValueError("Balance accounting identity violated")

    @classmethod
    def empty(cls) -> "BalanceSnapshot":
        return cls(available_balance=0, pending_balance=0, total_earned=0, total_paid_out=0)

    def credited(self, amount: int) -> "BalanceSnapshot":
        """Revenue lands in pending until the payout cycle matures it."""
        if amount < 0:
            raise ValueError(f"Credit amount cannot be negative: {amount}")
        return replace(
            self,
            pending_balance=self.pending_balance + amount,
            total_earned=self.total_earned + amount,
        )

    def debited(self, amount: int) -> tuple["BalanceSnapshot", int]:
        """
        Claw back revenue, pending first, then available, floored at zero.

        Returns the new snapshot and the amount actually recovered. Money
        already paid out is not recoverable here.
        """
        if amount < 0:
            raise ValueError(f"Debit amount cannot be negative: {amount}")
        from_pending = min(self.pending_balance, amount)
        from_available = min(self.available_balance, amount - from_pending)
        recovered = from_pending + from_available
        return (
            replace(
                self,
                pending_balance=self.pending_balance - from_pending,
                available_balance=self.available_balance - from_available,
                total_earned=self.total_earned - recovered,
            ),
            recovered,
        )


@dataclass(frozen=True)
class PayoutData:
    """Payout request, read from the payout service's table."""

    payout_id: UUID
    amount: int
    status: PayoutStatus
    requested_at: datetime
    processed_at: datetime | None


@dataclass(frozen=True)
class CreatorBalanceView:
    """Balance plus payout history, as shown to the creator."""

    creator_id: UUID
    balance: BalanceSnapshot
    recent_payouts: tuple[PayoutData, ...]
    pending_payouts: tuple[PayoutData, ...]


@dataclass(frozen=True)
class NewPurchase:
    """Purchase before persistence - immutable insert intent."""

    content_id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: int
    status: PurchaseStatus
    payment_method: PaymentMethod
    created_at: datetime
    card_provider: CardProvider | None = None
    payment_id: str | None = None
    order_number: str | None = None
    buyer_note: str | None = None
    payment_confirmed_at: datetime | None = None
    seller_confirmed_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        """Only pending purchases or free claims are ever inserted."""
        if self.amount < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount}")
        if self.status == PurchaseStatus.COMPLETED:
            if self.amount != 0 or self.payment_method != PaymentMethod.FREE:
                raise ValueError("Only free claims are inserted as completed")
        elif self.status not in PENDING_STATUSES:
            raise ValueError(f"Cannot insert a purchase as {self.status.value}")
        if self.payment_id is not None and len(self.payment_id) > 40:
            raise ValueError("payment_id is limited to 40 characters")
