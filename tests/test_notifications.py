"""Tests for NotificationDispatcher."""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import BUYER_ID, SELLER_ID, completed, create_purchase
from settlement.db.models import Notification
from settlement.services.notifications import NotificationDispatcher


def added_notification(db_session: AsyncMock) -> Notification:
    return db_session.add.call_args.args[0]


class TestNotify:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_records_and_commits(self, db_session: AsyncMock):
        await NotificationDispatcher(db_session).purchase_completed(completed(create_purchase()))

        notification = added_notification(db_session)
        assert isinstance(notification, Notification)
        assert notification.user_id == BUYER_ID
        assert notification.type == "purchase"
        assert notification.title == "Purchase complete"
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_commit_failure_is_swallowed(self, db_session: AsyncMock):
        """A failed notice never propagates; it is counted instead."""
        db_session.commit.side_effect = RuntimeError("connection reset")

        with patch("settlement.services.notifications.metrics") as mock_metrics:
            await NotificationDispatcher(db_session).refund_confirmed(completed(create_purchase()))

        mock_metrics.notification_failures_total.inc.assert_called_once()
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rollback_failure_is_swallowed(self, db_session: AsyncMock):
        db_session.commit.side_effect = RuntimeError("connection reset")
        db_session.rollback.side_effect = RuntimeError("connection closed")

        await NotificationDispatcher(db_session).purchase_completed(create_purchase())


class TestSettlementNotices:
    """Tests for the notice wording."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("amount", "title"),
        [(10000, "New sale"), (0, "New claim"), (-10000, "Sale refunded")],
    )
    async def test_sale_recorded_titles(self, db_session: AsyncMock, amount: int, title: str):
        await NotificationDispatcher(db_session).sale_recorded(create_purchase(), amount)

        notification = added_notification(db_session)
        assert notification.user_id == SELLER_ID
        assert notification.title == title
        assert notification.metadata_["amount"] == amount

    @pytest.mark.asyncio
    async def test_transfer_request_names_depositor(self, db_session: AsyncMock):
        purchase = create_purchase(buyer_note="KIM MINSU")

        await NotificationDispatcher(db_session).transfer_requested(purchase)

        notification = added_notification(db_session)
        assert notification.user_id == SELLER_ID
        assert "KIM MINSU" in notification.message
        assert "10,000" in notification.message

    @pytest.mark.asyncio
    async def test_rejection_carries_reason(self, db_session: AsyncMock):
        await NotificationDispatcher(db_session).purchase_rejected(
            create_purchase(), "deposit not found"
        )

        notification = added_notification(db_session)
        assert notification.user_id == BUYER_ID
        assert notification.message.endswith("deposit not found")
        assert notification.metadata_["reason"] == "deposit not found"
