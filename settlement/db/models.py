"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Owned tables: content_purchases, creator_balances, notifications.
Read-only tables: contents (catalogue) and payout_requests (payout service).
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from settlement.models.api import PurchaseStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in PurchaseStatus)
_PENDING_PREDICATE = "status IN ('pending_payment', 'pending_confirm')"


class Content(Base):
    """
    ORM model for contents table (catalogue service).

    Only the columns settlement needs. Never written here.
    """

    __tablename__ = "contents"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    creator_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<Content(id={self.id}, price={self.price}, published={self.is_published})>"


class ContentPurchase(Base):
    """
    ORM model for content_purchases table.

    One row per buyer purchase attempt. Rows are never deleted; terminal
    statuses are kept as the audit trail. status is only written through
    LedgerStore.transition.
    """

    __tablename__ = "content_purchases"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Parties
    content_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("contents.id"), nullable=False
    )
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    seller_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    # Money (smallest currency unit)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_revenue: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    card_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Payment linkage - set once
    payment_id: Mapped[str | None] = mapped_column(String(40), nullable=True, unique=True)
    order_number: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    payment_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Auxiliary
    buyer_note: Mapped[str | None] = mapped_column(String(200), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle timestamps - each written only by the transition producing it
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    seller_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    platform_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_purchase_amount_non_negative"),
        CheckConstraint(
            "creator_revenue >= 0 AND platform_fee >= 0",
            name="ck_purchase_split_non_negative",
        ),
        CheckConstraint(
            "creator_revenue + platform_fee = 0 OR creator_revenue + platform_fee = amount",
            name="ck_purchase_split_matches_amount",
        ),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_purchase_status_valid"),
        CheckConstraint(
            "payment_method IN ('card', 'transfer', 'free')",
            name="ck_purchase_payment_method_valid",
        ),
        Index(
            "uq_purchase_one_pending_per_buyer",
            "content_id",
            "buyer_id",
            unique=True,
            postgresql_where=text(_PENDING_PREDICATE),
        ),
        Index(
            "uq_purchase_one_completed_per_buyer",
            "content_id",
            "buyer_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
        ),
        Index("idx_purchases_buyer_content", "buyer_id", "content_id"),
        Index("idx_purchases_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ContentPurchase(id={self.id}, status={self.status}, amount={self.amount})>"


class CreatorBalance(Base):
    """
    ORM model for creator_balances table.

    Derived projection of completed and refunded purchases. May be rebuilt
    from content_purchases at any time.
    """

    __tablename__ = "creator_balances"

    creator_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    available_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_paid_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_available_balance_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_pending_balance_non_negative"),
        CheckConstraint("total_earned >= 0", name="ck_total_earned_non_negative"),
        CheckConstraint("total_paid_out >= 0", name="ck_total_paid_out_non_negative"),
        CheckConstraint(
            "available_balance + pending_balance + total_paid_out = total_earned",
            name="ck_balance_accounting_identity",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CreatorBalance(creator_id={self.creator_id}, "
            f"available={self.available_balance}, pending={self.pending_balance})>"
        )


class PayoutRequest(Base):
    """ORM model for payout_requests table (payout service). Never written here."""

    __tablename__ = "payout_requests"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    creator_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_payout_requests_creator", "creator_id", "requested_at"),)

    def __repr__(self) -> str:
        return f"<PayoutRequest(id={self.id}, amount={self.amount}, status={self.status})>"


class Notification(Base):
    """
    ORM model for notifications table.

    Rows are picked up by the external delivery transport.
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('purchase', 'payout', 'system')", name="ck_notification_type_valid"
        ),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"
