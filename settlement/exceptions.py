"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every settlement error carries the HTTP status it maps to and a short
machine-checkable code. Messages are safe to show to end users.
"""

from uuid import UUID


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Identity
# ============================================================================


class AuthenticationRequiredError(SettlementError):
    """Raised when the caller presents no valid identity."""

    status_code = 401
    code = "authentication_required"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class AuthorizationDeniedError(SettlementError):
    """Raised when the caller is not the actor allowed to perform a transition."""

    status_code = 403
    code = "authorization_denied"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Not allowed to {action}")


# ============================================================================
# Lookup
# ============================================================================


class NotFoundError(SettlementError):
    """Raised when a referenced record doesn't exist."""

    status_code = 404
    code = "not_found"


class PurchaseNotFoundError(NotFoundError):
    """Raised when a purchase doesn't exist or isn't visible to the caller."""

    code = "purchase_not_found"

    def __init__(self, reference: UUID | str) -> None:
        self.reference = reference
        super().__init__("Purchase not found")


class ContentNotFoundError(NotFoundError):
    """Raised when the content being purchased doesn't exist."""

    code = "content_not_found"

    def __init__(self, content_id: UUID) -> None:
        self.content_id = content_id
        super().__init__("Content not found")


# ============================================================================
# State
# ============================================================================


class InvalidStateError(SettlementError):
    """Raised when a transition is illegal from the purchase's current status."""

    status_code = 400
    code = "invalid_state"

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class AlreadyProcessedError(InvalidStateError):
    """Raised when a purchase has already left the expected source state."""

    code = "already_processed"

    def __init__(self, purchase_id: UUID, current_status: str | None = None) -> None:
        self.purchase_id = purchase_id
        super().__init__("Purchase already processed", current_status)


class NotCancellableError(InvalidStateError):
    """Raised when no pending purchase exists that could be cancelled."""

    code = "not_cancellable"

    def __init__(self, current_status: str | None = None) -> None:
        super().__init__("Purchase cannot be cancelled", current_status)


class AlreadyPurchasedError(InvalidStateError):
    """Raised when the buyer already owns the content."""

    code = "already_purchased"

    def __init__(self, content_id: UUID) -> None:
        self.content_id = content_id
        super().__init__("Content already purchased", "completed")


# ============================================================================
# Validation
# ============================================================================


class ValidationError(SettlementError):
    """Raised when input is missing, malformed or inconsistent with the record."""

    status_code = 400
    code = "validation_error"


class AmountMismatchError(ValidationError):
    """Raised when the client-declared amount differs from the stored amount."""

    code = "amount_mismatch"

    def __init__(self, expected: int, declared: int) -> None:
        self.expected = expected
        self.declared = declared
        super().__init__("Payment amount mismatch")


class SelfPurchaseError(ValidationError):
    """Raised when a creator tries to buy their own content."""

    code = "self_purchase"

    def __init__(self) -> None:
        super().__init__("Cannot purchase your own content")


class ContentUnavailableError(ValidationError):
    """Raised when the content is not published."""

    code = "content_unavailable"

    def __init__(self, content_id: UUID) -> None:
        self.content_id = content_id
        super().__init__("Content is not available for purchase")


class RefundWindowExpiredError(ValidationError):
    """Raised when a refund is requested after the refund window closed."""

    code = "refund_window_expired"

    def __init__(self, window_days: float) -> None:
        self.window_days = window_days
        super().__init__(f"Refunds are only available within {window_days:g} days of purchase")


# ============================================================================
# Payment Gateway
# ============================================================================


class GatewayError(SettlementError):
    """Base class for payment gateway failures."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(message)


class GatewayTransientError(GatewayError):
    """Raised when the provider can't be reached or has not settled yet. Retryable."""

    status_code = 503
    code = "gateway_unavailable"

    def __init__(self, provider: str, reason: str) -> None:
        self.reason = reason
        super().__init__(provider, "Payment provider is unavailable, please retry")


class PaymentFailedError(GatewayError):
    """Raised when the provider definitively declined or failed the payment."""

    status_code = 400
    code = "payment_failed"

    def __init__(
        self, provider: str, reason: str, provider_code: str | None = None
    ) -> None:
        self.reason = reason
        self.provider_code = provider_code
        super().__init__(provider, f"Payment failed: {reason}")


# ============================================================================
# Persistence
# ============================================================================


class DatabaseError(SettlementError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.detail = message
        super().__init__("Internal error")


class WriteVerificationError(SettlementError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.detail = message
        super().__init__("Internal error")
