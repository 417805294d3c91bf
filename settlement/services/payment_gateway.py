"""
Payment Gateway Protocol - Provider-agnostic verification interface.

NO DICTIONARIES - All data uses strongly typed models.

Adapters raise exactly two kinds of errors:
- PaymentFailedError: the provider definitively failed the payment.
- GatewayTransientError: the provider could not be reached or has not
  settled yet. The purchase must stay pending and the call is retryable.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from settlement.exceptions import GatewayTransientError, PaymentFailedError
from settlement.models.api import CardProvider
from settlement.models.domain import VirtualAccount
from settlement.observability.logging import get_logger
from settlement.observability.metrics import metrics

logger = get_logger(__name__)


class GatewayOutcome(str, Enum):
    """Non-failure outcomes of a gateway verification."""

    PAID = "paid"
    AWAITING_DEPOSIT = "awaiting_deposit"


@dataclass(frozen=True)
class GatewayVerification:
    """
    Normalized confirm/verify response.

    verified is True only when the provider reports the money as captured.
    """

    verified: bool
    outcome: GatewayOutcome
    provider_status: str
    amount: int
    payment_key: str | None = None
    paid_at: datetime | None = None
    receipt_url: str | None = None
    virtual_account: VirtualAccount | None = None


@dataclass(frozen=True)
class GatewayCancellation:
    """Normalized cancel response."""

    payment_ref: str
    cancelled_amount: int | None
    cancelled_at: datetime


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Card confirm (Toss) and unified verify (PortOne) adapters both implement
    this so the state machine never sees provider-specific payloads.
    """

    provider: CardProvider

    async def confirm_or_verify(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """
        Confirm or look up a payment with the provider.

        Args:
            payment_ref: Provider payment reference (Toss paymentKey, PortOne paymentId)
            declared_amount: Amount the purchase expects to be captured
            order_ref: Merchant order number, required by confirm-style providers

        Returns:
            Normalized verification (paid or awaiting deposit)

        Raises:
            PaymentFailedError: Provider failed or declined the payment
            GatewayTransientError: Provider unreachable or payment not settled
        """
        ...

    async def lookup(
        self,
        payment_ref: str,
        declared_amount: int,
        order_ref: str | None = None,
    ) -> GatewayVerification:
        """
        Read a payment's current state without confirming it.

        Used when a webhook reports a change: the provider's record decides.
        Outcomes and errors are the same as confirm_or_verify.
        """
        ...

    async def cancel(
        self,
        payment_ref: str,
        reason: str,
        amount: int | None = None,
    ) -> GatewayCancellation:
        """
        Cancel (refund) a captured payment.

        Cancelling a payment the provider already cancelled succeeds, so a
        refund can be retried after the ledger write failed.

        Args:
            payment_ref: Provider payment reference
            reason: Cancellation reason shown on the provider receipt
            amount: Partial amount (None = full cancel)

        Raises:
            PaymentFailedError: Provider refused the cancellation
            GatewayTransientError: Provider unreachable
        """
        ...


def parse_provider_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 timestamp from a provider payload."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("gateway_timestamp_unparseable", value=value)
        return None


class HTTPPaymentGateway(ABC):
    """
    Shared HTTP plumbing for gateway adapters.

    Status mapping:
    - timeout / connection error / 5xx / 429 -> GatewayTransientError
    - 401 / 403 (our credentials) -> GatewayTransientError, logged as error
    - other 4xx -> PaymentFailedError with the provider's code and message
    """

    provider: CardProvider

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        """Provider authorization header."""

    def _error_code(self, body: dict[str, Any]) -> str | None:
        value = body.get("code") or body.get("type")
        return str(value) if value else None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request and map failures to typed errors."""
        provider = self.provider.value
        headers = {**self._auth_headers(), "Content-Type": "application/json"}
        start = time.perf_counter()

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            metrics.record_gateway_request(
                provider, operation, "timeout", time.perf_counter() - start
            )
            logger.warning("gateway_timeout", provider=provider, operation=operation)
            raise GatewayTransientError(provider, "timeout") from exc
        except httpx.TransportError as exc:
            metrics.record_gateway_request(
                provider, operation, "unreachable", time.perf_counter() - start
            )
            logger.warning(
                "gateway_unreachable", provider=provider, operation=operation, error=str(exc)
            )
            raise GatewayTransientError(provider, "unreachable") from exc

        duration = time.perf_counter() - start

        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 500 or response.status_code == 429:
            metrics.record_gateway_request(provider, operation, "unavailable", duration)
            logger.warning(
                "gateway_unavailable",
                provider=provider,
                operation=operation,
                status=response.status_code,
            )
            raise GatewayTransientError(provider, f"http {response.status_code}")

        if response.status_code in (401, 403):
            metrics.record_gateway_request(provider, operation, "auth_error", duration)
            logger.error(
                "gateway_credentials_rejected",
                provider=provider,
                operation=operation,
                status=response.status_code,
            )
            raise GatewayTransientError(provider, "credentials rejected")

        if response.status_code >= 400:
            metrics.record_gateway_request(provider, operation, "declined", duration)
            provider_code = self._error_code(body)
            reason = str(body.get("message") or f"http {response.status_code}")
            logger.info(
                "gateway_declined",
                provider=provider,
                operation=operation,
                status=response.status_code,
                provider_code=provider_code,
            )
            raise PaymentFailedError(provider, reason, provider_code)

        if not body:
            metrics.record_gateway_request(provider, operation, "malformed", duration)
            logger.error("gateway_malformed_response", provider=provider, operation=operation)
            raise GatewayTransientError(provider, "malformed response")

        metrics.record_gateway_request(provider, operation, "ok", duration)
        return body
