"""
PortOne Gateway - Unified payment verify/cancel (PortOne V2 API).

The client pays through the PortOne SDK with a server-issued paymentId;
the server then looks the payment up and trusts only what PortOne reports.
Supports card payments and virtual-account (deposit) payments.
"""

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

_PAID = "PAID"
_VIRTUAL_ACCOUNT_ISSUED = "VIRTUAL_ACCOUNT_ISSUED"
_FAILED = frozenset({"FAILED", "CANCELLED", "PARTIAL_CANCELLED"})

# Returned when a cancel is retried after the first call went through
_ALREADY_CANCELLED = "PAYMENT_ALREADY_CANCELLED"


class PortOneGateway(HTTPPaymentGateway):
    """PortOne V2 gateway using API-secret auth."""

    provider = CardProvider.PORTONE

    def __init__(
        self,
        api_secret: str,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout, transport)
        self.api_secret = api_secret

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"PortOne {self.api_secret}"}

    async def confirm_or_verify(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """Look up a payment (GET /payments/{paymentId}) and check status and amount."""
        payment = await self._get_payment(payment_ref, operation="verify")
        status = str(payment.get("status", ""))
        amount = payment.get("amount") or {}
        total = int(amount.get("total") or 0)

        if status in _FAILED:
            raise PaymentFailedError(self.provider.value, f"payment {status.lower()}")

        if status not in (_PAID, _VIRTUAL_ACCOUNT_ISSUED):
            # PENDING / READY: the buyer has not finished paying yet
            raise GatewayTransientError(self.provider.value, f"payment {status.lower()}")

        if total != declared_amount:
            logger.warning(
                "portone_amount_mismatch",
                payment_id=payment_ref,
                expected=declared_amount,
                captured=total,
            )
            raise PaymentFailedError(self.provider.value, "captured amount mismatch")

        if status == _VIRTUAL_ACCOUNT_ISSUED:
            method = payment.get("method") or {}
            account = method.get("virtualAccount") or {}
            return GatewayVerification(
                verified=False,
                outcome=GatewayOutcome.AWAITING_DEPOSIT,
                provider_status=status,
                amount=total,
                virtual_account=VirtualAccount(
                    bank_code=str(account.get("bankCode", "")),
                    account_number=str(account.get("accountNumber", "")),
                    account_holder=account.get("accountHolder"),
                    expires_at=parse_provider_timestamp(account.get("expiresAt")),
                ),
            )

        return GatewayVerification(
            verified=True,
            outcome=GatewayOutcome.PAID,
            provider_status=status,
            amount=total,
            payment_key=payment.get("transactionId"),
            paid_at=parse_provider_timestamp(payment.get("paidAt")),
            receipt_url=payment.get("receiptUrl"),
        )

    async def lookup(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """PortOne verification is already a read-only lookup."""
        return await self.confirm_or_verify(payment_ref, declared_amount, order_ref)

    async def cancel(
        self,
        payment_ref: str,
        reason: str,
        amount: int | None = None,
    ) -> GatewayCancellation:
        """Cancel a payment (POST /payments/{paymentId}/cancel)."""
        body: dict[str, Any] = {"reason": reason}
        if amount is not None:
            body["amount"] = amount

        try:
            result = await self._request(
                "POST",
                f"/payments/{quote(payment_ref, safe='')}/cancel",
                operation="cancel",
                json=body,
            )
        except PaymentFailedError as exc:
            if exc.provider_code != _ALREADY_CANCELLED:
                raise
            logger.info("portone_payment_already_cancelled", payment_id=payment_ref)
            payment = await self._get_payment(payment_ref, operation="lookup")
            return GatewayCancellation(
                payment_ref=payment_ref,
                cancelled_amount=amount,
                cancelled_at=parse_provider_timestamp(payment.get("cancelledAt"))
                or datetime.now(UTC),
            )

        cancellation = result.get("cancellation") or {}
        cancelled_at = parse_provider_timestamp(cancellation.get("cancelledAt")) or datetime.now(
            UTC
        )

        logger.info("portone_payment_cancelled", payment_id=payment_ref, amount=amount)
        return GatewayCancellation(
            payment_ref=payment_ref,
            cancelled_amount=cancellation.get("totalAmount", amount),
            cancelled_at=cancelled_at,
        )

    async def _get_payment(self, payment_ref: str, operation: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"/payments/{quote(payment_ref, safe='')}", operation=operation
        )
