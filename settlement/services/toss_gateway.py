"""
TossPayments Gateway - Card payment confirm/cancel.

Implements PaymentGateway for the redirect-and-confirm card flow:
the client returns with paymentKey/orderId/amount and the server confirms
the charge with a single round trip.
"""

import base64
import hashlib
import hmac
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from settlement.exceptions import GatewayTransientError, PaymentFailedError
from settlement.models.api import CardProvider
from settlement.models.domain import VirtualAccount
from settlement.observability.logging import get_logger
from settlement.services.payment_gateway import (
    GatewayCancellation,
    GatewayOutcome,
    GatewayVerification,
    HTTPPaymentGateway,
    parse_provider_timestamp,
)

logger = get_logger(__name__)

# Provider statuses
_PAID = "DONE"
_AWAITING_DEPOSIT = "WAITING_FOR_DEPOSIT"
_NOT_SETTLED = frozenset({"READY", "IN_PROGRESS"})

# Returned when a confirm is retried after the first call went through
_ALREADY_PROCESSED = "ALREADY_PROCESSED_PAYMENT"

# Returned when a cancel is retried after the first call went through
_ALREADY_CANCELLED = "ALREADY_CANCELED_PAYMENT"


def verify_toss_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Check a webhook `toss-signature` header (hex HMAC-SHA256 of the raw body)."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class TossPaymentsGateway(HTTPPaymentGateway):
    """TossPayments card gateway using secret-key basic auth."""

    provider = CardProvider.TOSS

    def __init__(
        self,
        secret_key: str,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout, transport)
        self.secret_key = secret_key

    def _auth_headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        return {"Authorization": f"Basic {token}"}

    async def confirm_or_verify(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """Confirm a card payment (POST /v1/payments/confirm)."""
        if not order_ref:
            raise PaymentFailedError(self.provider.value, "order reference is required")

        try:
            payment = await self._request(
                "POST",
                "/v1/payments/confirm",
                operation="confirm",
                json={"paymentKey": payment_ref, "orderId": order_ref, "amount": declared_amount},
            )
        except PaymentFailedError as exc:
            if exc.provider_code != _ALREADY_PROCESSED:
                raise
            payment = await self._get_payment(payment_ref)

        return self._checked_verification(payment, declared_amount, order_ref)

    async def lookup(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """Read a payment (GET /v1/payments/{paymentKey}) without confirming it."""
        if not order_ref:
            raise PaymentFailedError(self.provider.value, "order reference is required")

        payment = await self._get_payment(payment_ref)
        return self._checked_verification(payment, declared_amount, order_ref)

    async def cancel(
        self,
        payment_ref: str,
        reason: str,
        amount: int | None = None,
    ) -> GatewayCancellation:
        """Cancel a captured payment (POST /v1/payments/{paymentKey}/cancel)."""
        body: dict[str, Any] = {"cancelReason": reason}
        if amount is not None:
            body["cancelAmount"] = amount

        try:
            payment = await self._request(
                "POST",
                f"/v1/payments/{quote(payment_ref, safe='')}/cancel",
                operation="cancel",
                json=body,
            )
        except PaymentFailedError as exc:
            if exc.provider_code != _ALREADY_CANCELLED:
                raise
            logger.info("toss_payment_already_cancelled", payment_key=payment_ref)
            payment = await self._get_payment(payment_ref)

        cancels = payment.get("cancels") or []
        latest = cancels[-1] if cancels else {}
        cancelled_at = parse_provider_timestamp(latest.get("canceledAt")) or datetime.now(UTC)

        logger.info("toss_payment_cancelled", payment_key=payment_ref, amount=amount)
        return GatewayCancellation(
            payment_ref=payment_ref,
            cancelled_amount=latest.get("cancelAmount", amount),
            cancelled_at=cancelled_at,
        )

    async def _get_payment(self, payment_ref: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/v1/payments/{quote(payment_ref, safe='')}", operation="lookup"
        )

    def _checked_verification(
        self, payment: dict[str, Any], declared_amount: int, order_ref: str
    ) -> GatewayVerification:
        if payment.get("orderId") not in (None, order_ref):
            raise PaymentFailedError(self.provider.value, "order reference mismatch")
        return self._to_verification(payment, declared_amount)

    def _to_verification(
        self, payment: dict[str, Any], declared_amount: int
    ) -> GatewayVerification:
        status = str(payment.get("status", ""))
        total = int(payment.get("totalAmount") or 0)
        receipt = payment.get("receipt") or {}

        if status in _NOT_SETTLED:
            raise GatewayTransientError(self.provider.value, f"payment {status.lower()}")

        if status not in (_PAID, _AWAITING_DEPOSIT):
            failure = payment.get("failure") or {}
            raise PaymentFailedError(
                self.provider.value,
                str(failure.get("message") or f"payment {status.lower() or 'unknown'}"),
                failure.get("code"),
            )

        if total != declared_amount:
            logger.warning(
                "toss_amount_mismatch", expected=declared_amount, captured=total
            )
            raise PaymentFailedError(self.provider.value, "captured amount mismatch")

        if status == _AWAITING_DEPOSIT:
            account = payment.get("virtualAccount") or {}
            return GatewayVerification(
                verified=False,
                outcome=GatewayOutcome.AWAITING_DEPOSIT,
                provider_status=status,
                amount=total,
                payment_key=payment.get("paymentKey"),
                virtual_account=VirtualAccount(
                    bank_code=str(account.get("bankCode") or account.get("bank") or ""),
                    account_number=str(account.get("accountNumber", "")),
                    account_holder=account.get("customerName"),
                    expires_at=parse_provider_timestamp(account.get("dueDate")),
                ),
            )

        return GatewayVerification(
            verified=True,
            outcome=GatewayOutcome.PAID,
            provider_status=status,
            amount=total,
            payment_key=payment.get("paymentKey"),
            paid_at=parse_provider_timestamp(payment.get("approvedAt")),
            receipt_url=receipt.get("url"),
        )
