"""
Notification Dispatcher - Fire-and-forget buyer/seller notices.

Notifications are recorded in the notifications table for the delivery
transport. A failure here is logged and counted, never raised: the
settlement transition that triggered it has already been committed.
"""

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.models import Notification
from settlement.models.api import NotificationType
from settlement.models.domain import PurchaseData
from settlement.observability.logging import get_logger
from settlement.observability.metrics import metrics

logger = get_logger(__name__)


class NotificationDispatcher:
    """Records settlement notifications. Every public method is failure-tolerant."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def notify(
        self,
        user_id: UUID,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record one notification. Swallows and logs any failure."""
        try:
            self.session.add(
                Notification(
                    user_id=user_id,
                    type=notification_type.value,
                    title=title,
                    message=message,
                    link=link,
                    metadata_=metadata,
                )
            )
            await self.session.commit()
        except Exception as exc:
            metrics.notification_failures_total.inc()
            logger.warning(
                "notification_dispatch_failed",
                user_id=str(user_id),
                title=title,
                error=str(exc),
            )
            try:
                await self.session.rollback()
            except Exception as rollback_exc:
                logger.warning("notification_rollback_failed", error=str(rollback_exc))

    # ========================================================================
    # Settlement notices
    # ========================================================================

    async def purchase_completed(self, purchase: PurchaseData) -> None:
        """Tell the buyer the content is now theirs."""
        await self.notify(
            purchase.buyer_id,
            NotificationType.PURCHASE,
            "Purchase complete",
            "Your purchase is complete. The content is now available in your library.",
            link=f"/content/{purchase.content_id}",
            metadata={"purchase_id": str(purchase.purchase_id)},
        )

    async def sale_recorded(self, purchase: PurchaseData, amount: int) -> None:
        """Tell the seller about a sale (negative amount for a reversal)."""
        if amount < 0:
            title, message = "Sale refunded", f"A purchase was refunded ({amount:,})."
        elif amount == 0:
            title, message = "New claim", "Your free content was claimed."
        else:
            title, message = "New sale", f"Your content was purchased ({amount:,})."
        await self.notify(
            purchase.seller_id,
            NotificationType.PURCHASE,
            title,
            message,
            link=f"/content/{purchase.content_id}",
            metadata={
                "purchase_id": str(purchase.purchase_id),
                "content_id": str(purchase.content_id),
                "amount": amount,
            },
        )

    async def transfer_requested(self, purchase: PurchaseData) -> None:
        """Ask the seller to confirm a bank-transfer deposit."""
        note = f" Depositor: {purchase.buyer_note}." if purchase.buyer_note else ""
        await self.notify(
            purchase.seller_id,
            NotificationType.PURCHASE,
            "Deposit confirmation requested",
            f"A buyer reported a bank transfer of {purchase.amount:,}.{note} "
            "Please confirm once the deposit arrives.",
            link="/creator/purchases",
            metadata={"purchase_id": str(purchase.purchase_id)},
        )

    async def purchase_rejected(self, purchase: PurchaseData, reason: str) -> None:
        """Tell the buyer their purchase was rejected."""
        await self.notify(
            purchase.buyer_id,
            NotificationType.PURCHASE,
            "Purchase rejected",
            f"Your purchase was rejected: {reason}",
            link=f"/content/{purchase.content_id}",
            metadata={"purchase_id": str(purchase.purchase_id), "reason": reason},
        )

    async def refund_confirmed(self, purchase: PurchaseData) -> None:
        """Tell the buyer their refund went through."""
        await self.notify(
            purchase.buyer_id,
            NotificationType.PURCHASE,
            "Refund complete",
            f"Your refund of {purchase.amount:,} has been processed.",
            metadata={"purchase_id": str(purchase.purchase_id), "amount": purchase.amount},
        )
