"""Tests for the settlement error hierarchy."""

from uuid import uuid4

import pytest

from settlement.exceptions import (
    AlreadyProcessedError,
    AlreadyPurchasedError,
    AmountMismatchError,
    AuthenticationRequiredError,
    AuthorizationDeniedError,
    ContentNotFoundError,
    ContentUnavailableError,
    DatabaseError,
    GatewayTransientError,
    InvalidStateError,
    NotCancellableError,
    PaymentFailedError,
    PurchaseNotFoundError,
    RefundWindowExpiredError,
    SelfPurchaseError,
    SettlementError,
    ValidationError,
    WriteVerificationError,
)


class TestStatusCodes:
    """Every error maps to one HTTP status and code."""

    @pytest.mark.parametrize(
        ("error", "status_code", "code"),
        [
            (AuthenticationRequiredError(), 401, "authentication_required"),
            (AuthorizationDeniedError("refund this purchase"), 403, "authorization_denied"),
            (PurchaseNotFoundError(uuid4()), 404, "purchase_not_found"),
            (ContentNotFoundError(uuid4()), 404, "content_not_found"),
            (AlreadyProcessedError(uuid4(), "completed"), 400, "already_processed"),
            (AlreadyPurchasedError(uuid4()), 400, "already_purchased"),
            (NotCancellableError("completed"), 400, "not_cancellable"),
            (AmountMismatchError(10000, 100), 400, "amount_mismatch"),
            (SelfPurchaseError(), 400, "self_purchase"),
            (ContentUnavailableError(uuid4()), 400, "content_unavailable"),
            (RefundWindowExpiredError(7.0), 400, "refund_window_expired"),
            (PaymentFailedError("toss", "declined", "REJECT_CARD_COMPANY"), 400, "payment_failed"),
            (GatewayTransientError("portone", "timeout"), 503, "gateway_unavailable"),
            (DatabaseError("boom"), 500, "internal_error"),
            (WriteVerificationError("mismatch"), 500, "internal_error"),
        ],
    )
    def test_mapping(self, error: SettlementError, status_code: int, code: str):
        assert isinstance(error, SettlementError)
        assert error.status_code == status_code
        assert error.code == code

    def test_already_processed_is_invalid_state(self):
        """Lost races are a kind of illegal transition."""
        assert issubclass(AlreadyProcessedError, InvalidStateError)

    def test_amount_mismatch_is_validation(self):
        assert issubclass(AmountMismatchError, ValidationError)


class TestMessages:
    """Messages are safe to show to end users."""

    def test_internal_errors_hide_detail(self):
        error = DatabaseError('relation "content_purchases" does not exist')

        assert error.message == "Internal error"
        assert "content_purchases" in error.detail

    def test_transient_error_hides_reason(self):
        error = GatewayTransientError("toss", "credentials rejected")

        assert "credentials" not in error.message
        assert error.reason == "credentials rejected"

    def test_refund_window_message(self):
        assert RefundWindowExpiredError(7.0).message == (
            "Refunds are only available within 7 days of purchase"
        )

    def test_payment_failed_keeps_provider_code(self):
        error = PaymentFailedError("toss", "card expired", "INVALID_CARD_EXPIRATION")

        assert error.provider == "toss"
        assert error.provider_code == "INVALID_CARD_EXPIRATION"
        assert error.message == "Payment failed: card expired"

    def test_not_cancellable_keeps_status(self):
        error = NotCancellableError("completed")
        assert isinstance(error, InvalidStateError)
        assert error.current_status == "completed"
