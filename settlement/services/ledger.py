"""
Ledger Store - Persisted purchase records.

NO DICTIONARIES - Reads and writes go through typed domain models.

Every status change is a conditional UPDATE guarded by the expected source
statuses. A write that matches zero rows lost a race (or targeted a purchase
that already moved on) and is reported as AlreadyProcessedError, never
retried.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.models import Content, ContentPurchase, utc_now
from settlement.exceptions import AlreadyProcessedError, DatabaseError, WriteVerificationError
from settlement.models.api import CardProvider, PaymentMethod, PurchaseStatus
from settlement.models.domain import (
    PENDING_STATUSES,
    ContentData,
    NewPurchase,
    PurchaseData,
)
from settlement.observability.logging import get_logger

logger = get_logger(__name__)


class LedgerStore:
    """
    Purchase persistence with write verification.

    Inserts follow the pattern:
    1. Execute write
    2. Flush to database
    3. Read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger store with database session."""
        self.session = session

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_content(self, content_id: UUID) -> ContentData | None:
        """Look up purchasable content in the catalogue."""
        content = await self.session.get(Content, content_id)
        if content is None:
            return None
        return ContentData(
            content_id=content.id,
            creator_id=content.creator_id,
            title=content.title,
            price=content.price,
            is_published=content.is_published,
        )

    async def get_purchase(self, purchase_id: UUID) -> PurchaseData | None:
        """Get a purchase by ID."""
        stmt = select(ContentPurchase).where(ContentPurchase.id == purchase_id)
        return await self._one_or_none(stmt)

    async def find_by_payment_id(self, payment_id: str) -> PurchaseData | None:
        """Get a purchase by the payment ID issued at intent time."""
        stmt = select(ContentPurchase).where(ContentPurchase.payment_id == payment_id)
        return await self._one_or_none(stmt)

    async def find_by_order_number(self, order_number: str) -> PurchaseData | None:
        """Get a purchase by its order number."""
        stmt = select(ContentPurchase).where(ContentPurchase.order_number == order_number)
        return await self._one_or_none(stmt)

    async def find_pending(self, content_id: UUID, buyer_id: UUID) -> PurchaseData | None:
        """Get the buyer's non-terminal purchase for a content item (at most one exists)."""
        stmt = select(ContentPurchase).where(
            ContentPurchase.content_id == content_id,
            ContentPurchase.buyer_id == buyer_id,
            ContentPurchase.status.in_([s.value for s in PENDING_STATUSES]),
        )
        return await self._one_or_none(stmt)

    async def find_completed(self, content_id: UUID, buyer_id: UUID) -> PurchaseData | None:
        """Get the buyer's completed purchase for a content item (at most one exists)."""
        stmt = select(ContentPurchase).where(
            ContentPurchase.content_id == content_id,
            ContentPurchase.buyer_id == buyer_id,
            ContentPurchase.status == PurchaseStatus.COMPLETED.value,
        )
        return await self._one_or_none(stmt)

    # ========================================================================
    # Writes
    # ========================================================================

    async def insert_purchase(self, new: NewPurchase) -> PurchaseData | None:
        """
        Insert a purchase in its initial status.

        Returns:
            The stored purchase, or None when a concurrent request already
            holds the (content, buyer) slot. The caller re-reads in that case.

        Raises:
            WriteVerificationError: Row not readable after insert
        """
        row = ContentPurchase(
            content_id=new.content_id,
            buyer_id=new.buyer_id,
            seller_id=new.seller_id,
            amount=new.amount,
            creator_revenue=0,
            platform_fee=0,
            status=new.status.value,
            payment_method=new.payment_method.value,
            card_provider=new.card_provider.value if new.card_provider else None,
            payment_id=new.payment_id,
            order_number=new.order_number,
            buyer_note=new.buyer_note,
            created_at=new.created_at,
            payment_confirmed_at=new.payment_confirmed_at,
            seller_confirmed_at=new.seller_confirmed_at,
            completed_at=new.completed_at,
        )
        self.session.add(row)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - another request inserted for the same pair
            await self.session.rollback()
            logger.info(
                "purchase_insert_conflict",
                content_id=str(new.content_id),
                buyer_id=str(new.buyer_id),
                status=new.status.value,
            )
            return None

        verified = await self.session.get(ContentPurchase, row.id)
        if verified is None:
            raise WriteVerificationError(f"Purchase {row.id} not found after insert")

        await self.session.commit()

        logger.info(
            "purchase_created",
            purchase_id=str(verified.id),
            content_id=str(verified.content_id),
            status=verified.status,
            amount=verified.amount,
        )
        return self._to_domain(verified)

    async def transition(
        self,
        purchase_id: UUID,
        expected: frozenset[PurchaseStatus],
        target: PurchaseStatus,
        *,
        creator_revenue: int | None = None,
        platform_fee: int | None = None,
        payment_key: str | None = None,
        rejection_reason: str | None = None,
        refund_reason: str | None = None,
        payment_confirmed_at: datetime | None = None,
        seller_confirmed_at: datetime | None = None,
        platform_confirmed_at: datetime | None = None,
        completed_at: datetime | None = None,
        refunded_at: datetime | None = None,
    ) -> PurchaseData:
        """
        Move a purchase to `target` if and only if it is still in `expected`.

        Status and its associated fields are written in one statement and
        committed together.

        Raises:
            AlreadyProcessedError: Zero rows matched the guard
            DatabaseError: The update could not be executed
        """
        values: dict[str, Any] = {"status": target.value, "updated_at": utc_now()}
        optional = {
            "creator_revenue": creator_revenue,
            "platform_fee": platform_fee,
            "payment_key": payment_key,
            "rejection_reason": rejection_reason,
            "refund_reason": refund_reason,
            "payment_confirmed_at": payment_confirmed_at,
            "seller_confirmed_at": seller_confirmed_at,
            "platform_confirmed_at": platform_confirmed_at,
            "completed_at": completed_at,
            "refunded_at": refunded_at,
        }
        values.update({key: value for key, value in optional.items() if value is not None})

        stmt = (
            update(ContentPurchase)
            .where(
                ContentPurchase.id == purchase_id,
                ContentPurchase.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .returning(ContentPurchase)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                await self.session.rollback()
                raise AlreadyProcessedError(purchase_id)
            purchase = self._to_domain(row)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "purchase_transition_write_failed",
                purchase_id=str(purchase_id),
                target=target.value,
                error=str(exc),
            )
            raise DatabaseError(str(exc)) from exc

        return purchase

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _one_or_none(self, stmt: Any) -> PurchaseData | None:
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row is not None else None

    def _to_domain(self, row: ContentPurchase) -> PurchaseData:
        """Convert ORM purchase to domain model."""
        return PurchaseData(
            purchase_id=row.id,
            content_id=row.content_id,
            buyer_id=row.buyer_id,
            seller_id=row.seller_id,
            amount=row.amount,
            creator_revenue=row.creator_revenue,
            platform_fee=row.platform_fee,
            status=PurchaseStatus(row.status),
            payment_method=PaymentMethod(row.payment_method),
            card_provider=CardProvider(row.card_provider) if row.card_provider else None,
            payment_id=row.payment_id,
            order_number=row.order_number,
            payment_key=row.payment_key,
            buyer_note=row.buyer_note,
            rejection_reason=row.rejection_reason,
            refund_reason=row.refund_reason,
            created_at=row.created_at,
            payment_confirmed_at=row.payment_confirmed_at,
            seller_confirmed_at=row.seller_confirmed_at,
            platform_confirmed_at=row.platform_confirmed_at,
            completed_at=row.completed_at,
            refunded_at=row.refunded_at,
        )
