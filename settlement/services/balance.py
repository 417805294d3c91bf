"""
Balance Aggregator - Creator balance projection.

NO DICTIONARIES - All operations use strongly typed domain models.

credit() and debit() are the only mutators. Revenue is credited to
pending_balance on completion; the payout cycle (outside this service)
promotes pending to available and moves available to total_paid_out.
Refunds claw back from pending first, then available, floored at zero.
"""

from collections.abc import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.db.models import CreatorBalance, PayoutRequest
from settlement.exceptions import WriteVerificationError
from settlement.models.api import PayoutStatus
from settlement.models.domain import BalanceSnapshot, CreatorBalanceView, PayoutData
from settlement.observability.logging import get_logger
from settlement.observability.metrics import metrics

logger = get_logger(__name__)

_OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value)


class BalanceAggregator:
    """
    Creator balance service with write verification.

    Each mutation runs as read (SELECT FOR UPDATE), branch on presence,
    write, verify, commit. A missing row is created; if a concurrent request
    creates it first, the insert fails on the primary key and the mutation
    is re-applied to the row that won.
    """

    def __init__(self, session: AsyncSession, recent_payouts_limit: int = 10) -> None:
        """Initialize balance aggregator with database session."""
        self.session = session
        self.recent_payouts_limit = recent_payouts_limit

    async def credit(self, creator_id: UUID, amount: int) -> BalanceSnapshot:
        """
        Credit completed-purchase revenue to the creator.

        Raises:
            WriteVerificationError: Balance row not consistent after write
        """
        if amount == 0:
            logger.debug("balance_credit_skipped_zero", creator_id=str(creator_id))
            return await self._current_snapshot(creator_id)

        try:
            snapshot = await self._apply(creator_id, lambda current: current.credited(amount))
        except Exception:
            await self.session.rollback()
            metrics.record_balance_mutation("credit", False)
            raise

        metrics.record_balance_mutation("credit", True)
        logger.info(
            "balance_credited",
            creator_id=str(creator_id),
            amount=amount,
            pending_balance=snapshot.pending_balance,
        )
        return snapshot

    async def debit(self, creator_id: UUID, amount: int) -> int:
        """
        Claw back refunded revenue from the creator.

        Returns:
            Amount actually recovered (may be less than `amount` when the
            revenue was already paid out)
        """
        if amount == 0:
            return 0

        try:
            row = await self._lock_balance_for_update(creator_id)
            if row is None:
                await self.session.rollback()
                logger.warning(
                    "balance_debit_no_balance", creator_id=str(creator_id), amount=amount
                )
                metrics.record_balance_mutation("debit", False)
                return 0

            updated, recovered = self._to_snapshot(row).debited(amount)
            await self._write(row, updated)
        except Exception:
            await self.session.rollback()
            metrics.record_balance_mutation("debit", False)
            raise

        metrics.record_balance_mutation("debit", True)

        if recovered < amount:
            logger.warning(
                "balance_debit_shortfall",
                creator_id=str(creator_id),
                requested=amount,
                recovered=recovered,
            )
        else:
            logger.info("balance_debited", creator_id=str(creator_id), amount=amount)
        return recovered

    async def read(self, creator_id: UUID) -> CreatorBalanceView:
        """Get the creator's balances with recent and open payout requests."""
        snapshot = await self._current_snapshot(creator_id)

        recent_stmt = (
            select(PayoutRequest)
            .where(PayoutRequest.creator_id == creator_id)
            .order_by(PayoutRequest.requested_at.desc())
            .limit(self.recent_payouts_limit)
        )
        recent = (await self.session.execute(recent_stmt)).scalars().all()

        pending_stmt = (
            select(PayoutRequest)
            .where(
                PayoutRequest.creator_id == creator_id,
                PayoutRequest.status.in_(_OPEN_PAYOUT_STATUSES),
            )
            .order_by(PayoutRequest.requested_at.desc())
        )
        pending = (await self.session.execute(pending_stmt)).scalars().all()

        return CreatorBalanceView(
            creator_id=creator_id,
            balance=snapshot,
            recent_payouts=tuple(self._payout_to_domain(p) for p in recent),
            pending_payouts=tuple(self._payout_to_domain(p) for p in pending),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply(
        self, creator_id: UUID, change: Callable[[BalanceSnapshot], BalanceSnapshot]
    ) -> BalanceSnapshot:
        row = await self._lock_balance_for_update(creator_id)
        if row is not None:
            updated = change(self._to_snapshot(row))
            await self._write(row, updated)
            return updated

        updated = change(BalanceSnapshot.empty())
        new_row = CreatorBalance(
            creator_id=creator_id,
            available_balance=updated.available_balance,
            pending_balance=updated.pending_balance,
            total_earned=updated.total_earned,
            total_paid_out=updated.total_paid_out,
        )
        self.session.add(new_row)
        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - balance row created by another request
            await self.session.rollback()
            row = await self._lock_balance_for_update(creator_id)
            if row is None:
                raise WriteVerificationError(
                    f"Balance for creator {creator_id} missing after insert conflict"
                )
            updated = change(self._to_snapshot(row))
            await self._write(row, updated)
            return updated

        await self._verify_and_commit(creator_id, updated)
        return updated

    async def _write(self, row: CreatorBalance, updated: BalanceSnapshot) -> None:
        row.available_balance = updated.available_balance
        row.pending_balance = updated.pending_balance
        row.total_earned = updated.total_earned
        row.total_paid_out = updated.total_paid_out
        await self.session.flush()
        await self._verify_and_commit(row.creator_id, updated)

    async def _verify_and_commit(self, creator_id: UUID, expected: BalanceSnapshot) -> None:
        verified = await self.session.get(CreatorBalance, creator_id)
        if verified is None:
            raise WriteVerificationError(f"Balance for creator {creator_id} not found after write")
        if self._to_snapshot(verified) != expected:
            raise WriteVerificationError(f"Balance for creator {creator_id} mismatch after write")
        await self.session.commit()

    async def _current_snapshot(self, creator_id: UUID) -> BalanceSnapshot:
        row = await self.session.get(CreatorBalance, creator_id)
        return self._to_snapshot(row) if row is not None else BalanceSnapshot.empty()

    async def _lock_balance_for_update(self, creator_id: UUID) -> CreatorBalance | None:
        """Lock balance row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(CreatorBalance)
            .where(CreatorBalance.creator_id == creator_id)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _to_snapshot(self, row: CreatorBalance) -> BalanceSnapshot:
        return BalanceSnapshot(
            available_balance=row.available_balance,
            pending_balance=row.pending_balance,
            total_earned=row.total_earned,
            total_paid_out=row.total_paid_out,
        )

    def _payout_to_domain(self, payout: PayoutRequest) -> PayoutData:
        return PayoutData(
            payout_id=payout.id,
            amount=payout.amount,
            status=PayoutStatus(payout.status),
            requested_at=payout.requested_at,
            processed_at=payout.processed_at,
        )
