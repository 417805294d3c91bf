"""
Purchase State Machine - Settlement transitions and their side effects.

NO DICTIONARIES - All operations use strongly typed domain models.

    [created] --card intent-----------> pending_payment
    [created] --transfer intent-------> pending_confirm
    [created] --free claim------------> completed

    pending_payment --gateway paid----> completed
    pending_payment --gateway failed--> failed
    pending_*       --seller approve--> completed
    pending_*       --seller reject---> rejected
    pending_*       --buyer cancel----> cancelled
    completed       --buyer refund----> refunded

Every transition:
1. Loads the purchase and checks the actor (errors before any mutation)
2. Writes the new status through LedgerStore.transition, guarded by the
   expected source statuses (the only authoritative step)
3. Applies balance and notification side effects. These run once, only
   for the request that won the guarded write, and their failures are
   logged rather than raised.
"""

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from uuid import UUID, uuid4

from settlement.exceptions import (
    AlreadyProcessedError,
    AlreadyPurchasedError,
    AmountMismatchError,
    AuthorizationDeniedError,
    ContentNotFoundError,
    ContentUnavailableError,
    GatewayTransientError,
    InvalidStateError,
    NotCancellableError,
    PaymentFailedError,
    PurchaseNotFoundError,
    RefundWindowExpiredError,
    SelfPurchaseError,
    ValidationError,
    WriteVerificationError,
)
from settlement.models.api import (
    CardProvider,
    NextStep,
    PaymentMethod,
    PurchaseStatus,
    VerificationOutcome,
)
from settlement.models.domain import (
    PENDING_STATUSES,
    CallerIdentity,
    IntentResult,
    NewPurchase,
    PurchaseData,
    VerificationResult,
    compute_revenue_split,
    source_statuses_for,
)
from settlement.observability.logging import get_logger
from settlement.observability.metrics import metrics
from settlement.observability.tracing import trace_operation
from settlement.services.balance import BalanceAggregator
from settlement.services.ledger import LedgerStore
from settlement.services.notifications import NotificationDispatcher
from settlement.services.payment_gateway import GatewayOutcome, PaymentGateway

logger = get_logger(__name__)

DEFAULT_REJECTION_REASON = "deposit not found"
DEFAULT_REFUND_REASON = "requested by buyer"

_SECONDS_PER_DAY = 86400.0
_AWAITING_CONFIRMATION = frozenset(
    {PurchaseStatus.PENDING_CONFIRM, PurchaseStatus.PENDING_PAYMENT}
)
_AWAITING_PAYMENT = frozenset({PurchaseStatus.PENDING_PAYMENT})

# Webhook events that report a provider-side cancellation
_CANCELLATION_EVENTS = frozenset({"Transaction.Cancelled", "CANCEL_PAYMENT"})


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_payment_id() -> str:
    """Payment ID handed to the gateway SDK (<= 40 chars)."""
    return f"pay_{uuid4().hex}"


def generate_order_number(now: datetime) -> str:
    """Human-readable order number, e.g. ORD-20260119-3FA85F64."""
    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


def days_since(start: datetime, now: datetime) -> float:
    """Wall-clock days between two instants, as a float."""
    return (now - start).total_seconds() / _SECONDS_PER_DAY


def next_step_for(purchase: PurchaseData) -> NextStep:
    """What the client must do next for a purchase in its current status."""
    if purchase.status == PurchaseStatus.PENDING_PAYMENT:
        return NextStep.CARD_REDIRECT
    if purchase.status == PurchaseStatus.PENDING_CONFIRM:
        return NextStep.TRANSFER_INSTRUCTIONS
    return NextStep.NONE


class PurchaseStateMachine:
    """
    Decides legal purchase transitions and triggers their side effects.

    Collaborators are injected per request; the state machine keeps no
    state of its own between calls.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        balances: BalanceAggregator,
        notifier: NotificationDispatcher,
        gateways: Mapping[CardProvider, PaymentGateway],
        fee_rate: float,
        refund_window_days: float,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ledger = ledger
        self.balances = balances
        self.notifier = notifier
        self.gateways = gateways
        self.fee_rate = fee_rate
        self.refund_window_days = refund_window_days
        self.clock = clock

    # ========================================================================
    # Intent
    # ========================================================================

    async def create_intent(
        self,
        caller: CallerIdentity,
        content_id: UUID,
        payment_method: PaymentMethod,
        card_provider: CardProvider = CardProvider.PORTONE,
        buyer_note: str | None = None,
    ) -> IntentResult:
        """
        Create a purchase intent, or return the one already in flight.

        Free content is claimed immediately: the row is inserted already
        completed, so no pending state is ever visible.

        Raises:
            ContentNotFoundError: Unknown content
            SelfPurchaseError: Caller is the content's creator
            ContentUnavailableError: Content is not published
            AlreadyPurchasedError: Caller already owns the paid content
        """
        content = await self.ledger.get_content(content_id)
        if content is None:
            raise ContentNotFoundError(content_id)
        if content.creator_id == caller.user_id:
            raise SelfPurchaseError()
        if not content.is_published:
            raise ContentUnavailableError(content_id)

        if content.price == 0:
            return await self._claim_free(caller, content_id, content.creator_id)

        if await self.ledger.find_completed(content_id, caller.user_id) is not None:
            raise AlreadyPurchasedError(content_id)

        existing = await self.ledger.find_pending(content_id, caller.user_id)
        if existing is not None:
            logger.info(
                "purchase_intent_reused",
                purchase_id=str(existing.purchase_id),
                status=existing.status.value,
            )
            return IntentResult(existing, next_step_for(existing), reused=True)

        now = self.clock()
        is_card = payment_method == PaymentMethod.CARD
        new = NewPurchase(
            content_id=content_id,
            buyer_id=caller.user_id,
            seller_id=content.creator_id,
            amount=content.price,
            status=PurchaseStatus.PENDING_PAYMENT if is_card else PurchaseStatus.PENDING_CONFIRM,
            payment_method=payment_method,
            created_at=now,
            card_provider=card_provider if is_card else None,
            payment_id=generate_payment_id() if is_card else None,
            order_number=generate_order_number(now),
            buyer_note=None if is_card else buyer_note,
        )

        purchase = await self.ledger.insert_purchase(new)
        if purchase is None:
            existing = await self.ledger.find_pending(content_id, caller.user_id)
            if existing is None:
                raise WriteVerificationError("Purchase intent lost to a concurrent request")
            return IntentResult(existing, next_step_for(existing), reused=True)

        metrics.record_transition(f"intent_{payment_method.value}", "success")
        if not is_card:
            await self.notifier.transfer_requested(purchase)

        return IntentResult(purchase, next_step_for(purchase))

    async def _claim_free(
        self, caller: CallerIdentity, content_id: UUID, creator_id: UUID
    ) -> IntentResult:
        claimed = await self.ledger.find_completed(content_id, caller.user_id)
        if claimed is not None:
            return IntentResult(claimed, NextStep.NONE, already_claimed=True)

        now = self.clock()
        purchase = await self.ledger.insert_purchase(
            NewPurchase(
                content_id=content_id,
                buyer_id=caller.user_id,
                seller_id=creator_id,
                amount=0,
                status=PurchaseStatus.COMPLETED,
                payment_method=PaymentMethod.FREE,
                created_at=now,
                payment_confirmed_at=now,
                seller_confirmed_at=now,
                completed_at=now,
            )
        )
        if purchase is None:
            claimed = await self.ledger.find_completed(content_id, caller.user_id)
            if claimed is None:
                raise WriteVerificationError("Free claim lost to a concurrent request")
            return IntentResult(claimed, NextStep.NONE, already_claimed=True)

        metrics.record_transition("free_claim", "success", 0)
        await self._settle(purchase, notify_buyer=False)
        return IntentResult(purchase, NextStep.NONE)

    async def pending_purchase(
        self, caller: CallerIdentity, content_id: UUID
    ) -> PurchaseData | None:
        """Get the caller's in-flight purchase for a content item."""
        return await self.ledger.find_pending(content_id, caller.user_id)

    # ========================================================================
    # Gateway verification
    # ========================================================================

    async def confirm_card_payment(
        self,
        caller: CallerIdentity,
        payment_ref: str,
        order_ref: str,
        declared_amount: int,
    ) -> VerificationResult:
        """
        Confirm a Toss card payment for the caller's purchase.

        Raises:
            PurchaseNotFoundError: Unknown order or not the caller's
            AlreadyProcessedError: Purchase is no longer awaiting payment
            AmountMismatchError: Declared amount differs from the stored amount
            PaymentFailedError: Gateway declined; purchase is now failed
            GatewayTransientError: Gateway unreachable; purchase unchanged
        """
        purchase = await self.ledger.find_by_order_number(order_ref)
        purchase = self._check_payable(purchase, caller, CardProvider.TOSS, declared_amount)

        with trace_operation(
            "purchase.confirm_card_payment", purchase_id=str(purchase.purchase_id)
        ):
            return await self._verify_with_gateway(purchase, payment_ref, order_ref)

    async def verify_unified_payment(
        self,
        caller: CallerIdentity,
        payment_ref: str,
        declared_amount: int,
    ) -> VerificationResult:
        """
        Verify a PortOne payment (card or virtual account) for the caller's purchase.

        Raises:
            Same as confirm_card_payment.
        """
        purchase = await self.ledger.find_by_payment_id(payment_ref)
        purchase = self._check_payable(purchase, caller, CardProvider.PORTONE, declared_amount)

        with trace_operation(
            "purchase.verify_unified_payment", purchase_id=str(purchase.purchase_id)
        ):
            return await self._verify_with_gateway(purchase, payment_ref, purchase.order_number)

    async def reconcile_gateway_event(
        self, payment_ref: str, event_type: str
    ) -> PurchaseData | None:
        """
        Apply a PortOne webhook by re-verifying the payment with the gateway.

        The webhook body is only a hint; the gateway lookup decides. Never
        raises for stale, duplicate or unknown events.
        """
        purchase = await self.ledger.find_by_payment_id(payment_ref)
        return await self._reconcile(purchase, CardProvider.PORTONE, payment_ref, event_type)

    async def reconcile_toss_event(
        self, payment_key: str, order_ref: str, event_type: str
    ) -> PurchaseData | None:
        """
        Apply a TossPayments webhook (card confirm, virtual-account deposit).

        The purchase is found by its order number and the payment is read
        back from Toss by its paymentKey; the lookup checks that both belong
        to the same order.
        """
        purchase = await self.ledger.find_by_order_number(order_ref)
        return await self._reconcile(purchase, CardProvider.TOSS, payment_key, event_type)

    async def _reconcile(
        self,
        purchase: PurchaseData | None,
        provider: CardProvider,
        payment_ref: str,
        event_type: str,
    ) -> PurchaseData | None:
        if purchase is None or purchase.card_provider != provider:
            logger.warning(
                "webhook_purchase_not_found",
                provider=provider.value,
                payment_ref=payment_ref,
                event=event_type,
            )
            return None

        if event_type in _CANCELLATION_EVENTS:
            # Refunds are driven by the buyer refund transition only
            logger.info(
                "webhook_cancellation_ignored",
                purchase_id=str(purchase.purchase_id),
                status=purchase.status.value,
            )
            return purchase

        if purchase.status != PurchaseStatus.PENDING_PAYMENT:
            logger.info(
                "webhook_already_processed",
                purchase_id=str(purchase.purchase_id),
                status=purchase.status.value,
                event=event_type,
            )
            return purchase

        try:
            result = await self._verify_with_gateway(
                purchase, payment_ref, purchase.order_number, lookup_only=True
            )
        except (PaymentFailedError, GatewayTransientError, AlreadyProcessedError) as exc:
            logger.info(
                "webhook_verification_not_completed",
                purchase_id=str(purchase.purchase_id),
                event=event_type,
                reason=type(exc).__name__,
            )
            return None
        return result.purchase

    def _check_payable(
        self,
        purchase: PurchaseData | None,
        caller: CallerIdentity,
        provider: CardProvider,
        declared_amount: int,
    ) -> PurchaseData:
        if purchase is None or purchase.buyer_id != caller.user_id:
            raise PurchaseNotFoundError("payment")
        if purchase.card_provider != provider:
            raise ValidationError(f"Purchase is not a {provider.value} payment")
        if purchase.status != PurchaseStatus.PENDING_PAYMENT:
            raise AlreadyProcessedError(purchase.purchase_id, purchase.status.value)
        if purchase.amount != declared_amount:
            logger.warning(
                "payment_amount_mismatch",
                purchase_id=str(purchase.purchase_id),
                expected=purchase.amount,
                declared=declared_amount,
            )
            metrics.record_transition("gateway_verify", "amount_mismatch")
            raise AmountMismatchError(purchase.amount, declared_amount)
        return purchase

    async def _verify_with_gateway(
        self,
        purchase: PurchaseData,
        payment_ref: str,
        order_ref: str | None,
        lookup_only: bool = False,
    ) -> VerificationResult:
        provider = purchase.card_provider
        gateway = self.gateways.get(provider) if provider else None
        if gateway is None:
            raise ValidationError("Payment provider is not configured")

        try:
            verify = gateway.lookup if lookup_only else gateway.confirm_or_verify
            verification = await verify(payment_ref, purchase.amount, order_ref)
        except PaymentFailedError as exc:
            await self._transition(
                purchase,
                _AWAITING_PAYMENT,
                PurchaseStatus.FAILED,
                transition="gateway_verify",
            )
            logger.info(
                "purchase_payment_failed",
                purchase_id=str(purchase.purchase_id),
                provider=exc.provider,
                provider_code=exc.provider_code,
            )
            raise
        except GatewayTransientError:
            metrics.record_transition("gateway_verify", "transient")
            raise

        if verification.outcome == GatewayOutcome.AWAITING_DEPOSIT:
            logger.info(
                "purchase_awaiting_deposit",
                purchase_id=str(purchase.purchase_id),
                provider=gateway.provider.value,
            )
            metrics.record_transition("gateway_verify", "awaiting_deposit")
            return VerificationResult(
                purchase=purchase,
                outcome=VerificationOutcome.AWAITING_DEPOSIT,
                virtual_account=verification.virtual_account,
            )

        now = self.clock()
        completed = await self._complete(
            purchase,
            _AWAITING_PAYMENT,
            transition="gateway_verify",
            payment_key=verification.payment_key,
            payment_confirmed_at=verification.paid_at or now,
            completed_at=now,
        )
        return VerificationResult(
            purchase=completed,
            outcome=VerificationOutcome.COMPLETED,
            receipt_url=verification.receipt_url,
        )

    # ========================================================================
    # Seller / platform confirmation
    # ========================================================================

    async def seller_approve(self, caller: CallerIdentity, purchase_id: UUID) -> PurchaseData:
        """
        Seller confirms the bank-transfer deposit arrived.

        Raises:
            PurchaseNotFoundError: Unknown purchase
            AuthorizationDeniedError: Caller is not the seller
            AlreadyProcessedError: Purchase is not awaiting confirmation
        """
        purchase = await self._load(purchase_id)
        if purchase.seller_id != caller.user_id:
            raise AuthorizationDeniedError("approve this purchase")

        now = self.clock()
        return await self._complete(
            purchase,
            _AWAITING_CONFIRMATION,
            transition="seller_approve",
            seller_confirmed_at=now,
            completed_at=now,
        )

    async def seller_reject(
        self, caller: CallerIdentity, purchase_id: UUID, reason: str | None = None
    ) -> PurchaseData:
        """Seller reports the deposit never arrived. Balances are untouched."""
        purchase = await self._load(purchase_id)
        if purchase.seller_id != caller.user_id:
            raise AuthorizationDeniedError("reject this purchase")
        return await self._reject(purchase, reason, transition="seller_reject")

    async def platform_approve(self, caller: CallerIdentity, purchase_id: UUID) -> PurchaseData:
        """Platform operator confirms a purchase on the seller's behalf."""
        purchase = await self._load(purchase_id)
        logger.info(
            "platform_approve_requested",
            purchase_id=str(purchase_id),
            operator_id=str(caller.user_id),
        )
        now = self.clock()
        return await self._complete(
            purchase,
            _AWAITING_CONFIRMATION,
            transition="platform_approve",
            platform_confirmed_at=now,
            completed_at=now,
        )

    async def platform_reject(
        self, caller: CallerIdentity, purchase_id: UUID, reason: str | None = None
    ) -> PurchaseData:
        """Platform operator rejects a purchase awaiting confirmation."""
        purchase = await self._load(purchase_id)
        logger.info(
            "platform_reject_requested",
            purchase_id=str(purchase_id),
            operator_id=str(caller.user_id),
        )
        return await self._reject(purchase, reason, transition="platform_reject")

    async def _reject(
        self, purchase: PurchaseData, reason: str | None, transition: str
    ) -> PurchaseData:
        rejection_reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        rejected = await self._transition(
            purchase,
            _AWAITING_CONFIRMATION,
            PurchaseStatus.REJECTED,
            transition=transition,
            rejection_reason=rejection_reason,
        )
        await self.notifier.purchase_rejected(rejected, rejection_reason)
        return rejected

    # ========================================================================
    # Buyer cancel / refund
    # ========================================================================

    async def buyer_cancel(self, caller: CallerIdentity, content_id: UUID) -> PurchaseData:
        """
        Buyer abandons their in-flight purchase for a content item.

        Raises:
            PurchaseNotFoundError: No pending purchase for this content
            NotCancellableError: It left the pending state concurrently
        """
        purchase = await self.ledger.find_pending(content_id, caller.user_id)
        if purchase is None:
            raise PurchaseNotFoundError(content_id)

        try:
            return await self._transition(
                purchase,
                PENDING_STATUSES,
                PurchaseStatus.CANCELLED,
                transition="buyer_cancel",
            )
        except AlreadyProcessedError as exc:
            raise NotCancellableError(exc.current_status) from exc

    async def refund(
        self, caller: CallerIdentity, purchase_id: UUID, reason: str | None = None
    ) -> PurchaseData:
        """
        Refund a completed purchase within the refund window.

        Card purchases the gateway captured are cancelled with it first; the
        ledger only moves to refunded once the gateway agreed. Purchases that
        were completed by a seller or operator confirmation never reached the
        gateway and are refunded in the ledger only.

        Raises:
            PurchaseNotFoundError: Unknown purchase
            AuthorizationDeniedError: Caller is not the buyer
            InvalidStateError: Purchase is not completed
            RefundWindowExpiredError: More than the window has elapsed
            GatewayTransientError: Gateway unreachable; purchase unchanged
            PaymentFailedError: Gateway refused the cancellation
        """
        purchase = await self._load(purchase_id)
        if purchase.buyer_id != caller.user_id:
            raise AuthorizationDeniedError("refund this purchase")
        if purchase.status != PurchaseStatus.COMPLETED:
            raise InvalidStateError(
                "Only completed purchases can be refunded", purchase.status.value
            )

        now = self.clock()
        if days_since(purchase.created_at, now) > self.refund_window_days:
            metrics.record_transition("refund", "window_expired")
            raise RefundWindowExpiredError(self.refund_window_days)

        refund_reason = (reason or "").strip() or DEFAULT_REFUND_REASON

        with trace_operation("purchase.refund", purchase_id=str(purchase_id)):
            await self._cancel_with_gateway(purchase, refund_reason)
            refunded = await self._transition(
                purchase,
                frozenset({PurchaseStatus.COMPLETED}),
                PurchaseStatus.REFUNDED,
                transition="refund",
                refund_reason=refund_reason,
                refunded_at=now,
            )

        try:
            await self.balances.debit(refunded.seller_id, refunded.creator_revenue)
        except Exception as exc:
            logger.warning(
                "refund_balance_debit_failed",
                purchase_id=str(purchase_id),
                seller_id=str(refunded.seller_id),
                amount=refunded.creator_revenue,
                error=str(exc),
            )

        await self.notifier.refund_confirmed(refunded)
        await self.notifier.sale_recorded(refunded, -refunded.amount)
        return refunded

    async def _cancel_with_gateway(self, purchase: PurchaseData, reason: str) -> None:
        if purchase.payment_method != PaymentMethod.CARD or purchase.card_provider is None:
            return
        if purchase.payment_confirmed_at is None:
            # Completed by seller or operator confirmation; nothing was captured
            logger.info(
                "refund_without_gateway_capture",
                purchase_id=str(purchase.purchase_id),
                provider=purchase.card_provider.value,
            )
            return

        gateway = self.gateways.get(purchase.card_provider)
        payment_ref = (
            purchase.payment_key
            if purchase.card_provider == CardProvider.TOSS
            else purchase.payment_id
        )
        if gateway is None or not payment_ref:
            raise ValidationError("Payment cannot be cancelled with the provider")

        await gateway.cancel(payment_ref, reason)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load(self, purchase_id: UUID) -> PurchaseData:
        purchase = await self.ledger.get_purchase(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    async def _complete(
        self,
        purchase: PurchaseData,
        expected: frozenset[PurchaseStatus],
        transition: str,
        payment_key: str | None = None,
        payment_confirmed_at: datetime | None = None,
        seller_confirmed_at: datetime | None = None,
        platform_confirmed_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> PurchaseData:
        split = compute_revenue_split(purchase.amount, self.fee_rate)
        completed = await self._transition(
            purchase,
            expected,
            PurchaseStatus.COMPLETED,
            transition=transition,
            creator_revenue=split.creator_revenue,
            platform_fee=split.platform_fee,
            payment_key=payment_key,
            payment_confirmed_at=payment_confirmed_at,
            seller_confirmed_at=seller_confirmed_at,
            platform_confirmed_at=platform_confirmed_at,
            completed_at=completed_at,
        )
        await self._settle(completed)
        return completed

    async def _settle(self, purchase: PurchaseData, notify_buyer: bool = True) -> None:
        """Credit the creator and notify. Runs once per completed purchase."""
        try:
            await self.balances.credit(purchase.seller_id, purchase.creator_revenue)
        except Exception as exc:
            logger.warning(
                "settlement_balance_credit_failed",
                purchase_id=str(purchase.purchase_id),
                seller_id=str(purchase.seller_id),
                amount=purchase.creator_revenue,
                error=str(exc),
            )

        if notify_buyer:
            await self.notifier.purchase_completed(purchase)
        await self.notifier.sale_recorded(purchase, purchase.amount)

    async def _transition(
        self,
        purchase: PurchaseData,
        expected: frozenset[PurchaseStatus],
        target: PurchaseStatus,
        transition: str,
        **fields: object,
    ) -> PurchaseData:
        # Fail fast on a stale read; the guarded write below is what enforces it
        if purchase.status not in expected or purchase.status not in source_statuses_for(
            target
        ):
            metrics.record_transition(transition, "rejected")
            raise AlreadyProcessedError(purchase.purchase_id, purchase.status.value)

        try:
            updated = await self.ledger.transition(
                purchase.purchase_id,
                expected,
                target,
                **fields,  # type: ignore[arg-type]
            )
        except AlreadyProcessedError:
            metrics.record_transition(transition, "lost_race")
            logger.info(
                "purchase_transition_lost_race",
                purchase_id=str(purchase.purchase_id),
                transition=transition,
            )
            raise

        metrics.record_transition(
            transition,
            "success",
            updated.amount if target == PurchaseStatus.COMPLETED else None,
        )
        logger.info(
            "purchase_transitioned",
            purchase_id=str(updated.purchase_id),
            transition=transition,
            from_status=purchase.status.value,
            to_status=updated.status.value,
            amount=updated.amount,
        )
        return updated
