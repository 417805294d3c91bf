"""
Tests for the TossPayments and PortOne adapters.

HTTP is served by httpx.MockTransport; no network access.
"""

import base64
import hashlib
import hmac
import json
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest

from settlement.exceptions import GatewayTransientError, PaymentFailedError
from settlement.services.payment_gateway import (
    GatewayOutcome,
    HTTPPaymentGateway,
    parse_provider_timestamp,
)
from settlement.services.portone_gateway import PortOneGateway
from settlement.services.toss_gateway import TossPaymentsGateway, verify_toss_signature

ORDER = "ORD-20260119-3FA85F64"

Handler = Callable[[httpx.Request], httpx.Response]


def toss(handler: Handler) -> TossPaymentsGateway:
    return TossPaymentsGateway(
        secret_key="test_sk_fake_key",
        base_url="https://api.tosspayments.test",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def portone(handler: Handler) -> PortOneGateway:
    return PortOneGateway(
        api_secret="test_portone_secret",
        base_url="https://api.portone.test",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def toss_payment(status: str = "DONE", amount: int = 10000, **extra: object) -> dict:
    payment = {
        "paymentKey": "pk_live",
        "orderId": ORDER,
        "status": status,
        "totalAmount": amount,
        "approvedAt": "2026-01-19T21:00:00+09:00",
        "receipt": {"url": "https://receipts.toss.test/pk_live"},
    }
    payment.update(extra)
    return payment


def portone_payment(status: str = "PAID", amount: int = 10000, **extra: object) -> dict:
    payment = {
        "id": "pay_abc",
        "status": status,
        "transactionId": "txn_123",
        "amount": {"total": amount},
        "paidAt": "2026-01-19T12:00:00Z",
        "receiptUrl": "https://receipts.portone.test/txn_123",
    }
    payment.update(extra)
    return payment


class TestParseProviderTimestamp:
    """Tests for provider timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_provider_timestamp("2026-01-19T12:00:00Z") == datetime(
            2026, 1, 19, 12, 0, tzinfo=UTC
        )

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
    def test_unparseable_is_none(self, value):
        assert parse_provider_timestamp(value) is None


# ============================================================================
# TossPayments
# ============================================================================


class TestTossConfirm:
    """Tests for TossPaymentsGateway.confirm_or_verify."""

    @pytest.mark.asyncio
    async def test_done_is_paid(self):
        """DONE with the right amount is a captured payment."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=toss_payment())

        result = await toss(handler).confirm_or_verify("pk_live", 10000, ORDER)

        assert result.verified
        assert result.outcome == GatewayOutcome.PAID
        assert result.payment_key == "pk_live"
        assert result.receipt_url == "https://receipts.toss.test/pk_live"
        assert result.paid_at == datetime(2026, 1, 19, 12, 0, tzinfo=UTC)

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/payments/confirm"
        assert json.loads(request.content) == {
            "paymentKey": "pk_live",
            "orderId": ORDER,
            "amount": 10000,
        }
        expected = base64.b64encode(b"test_sk_fake_key:").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_waiting_for_deposit(self):
        """Virtual-account payments wait for the deposit."""
        payment = toss_payment(
            "WAITING_FOR_DEPOSIT",
            virtualAccount={
                "bankCode": "88",
                "accountNumber": "110-123-456789",
                "customerName": "KIM MINSU",
                "dueDate": "2026-01-22T23:59:59+09:00",
            },
        )
        result = await toss(lambda r: httpx.Response(200, json=payment)).confirm_or_verify(
            "pk_live", 10000, ORDER
        )

        assert not result.verified
        assert result.outcome == GatewayOutcome.AWAITING_DEPOSIT
        assert result.virtual_account.bank_code == "88"
        assert result.virtual_account.account_number == "110-123-456789"
        assert result.virtual_account.expires_at is not None

    @pytest.mark.asyncio
    async def test_ready_is_transient(self):
        """A payment the buyer hasn't finished is retryable."""
        gateway = toss(lambda r: httpx.Response(200, json=toss_payment("READY")))

        with pytest.raises(GatewayTransientError):
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_aborted_is_failed(self):
        payment = toss_payment(
            "ABORTED", failure={"code": "REJECT_CARD_COMPANY", "message": "declined"}
        )
        gateway = toss(lambda r: httpx.Response(200, json=payment))

        with pytest.raises(PaymentFailedError) as exc_info:
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

        assert exc_info.value.provider_code == "REJECT_CARD_COMPANY"

    @pytest.mark.asyncio
    async def test_captured_amount_mismatch(self):
        """A capture for a different amount is never accepted."""
        gateway = toss(lambda r: httpx.Response(200, json=toss_payment(amount=100)))

        with pytest.raises(PaymentFailedError, match="amount mismatch"):
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_order_mismatch(self):
        gateway = toss(
            lambda r: httpx.Response(200, json=toss_payment(orderId="ORD-20260119-DEADBEEF"))
        )

        with pytest.raises(PaymentFailedError, match="order reference mismatch"):
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_missing_order_reference(self):
        gateway = toss(lambda r: httpx.Response(200, json=toss_payment()))

        with pytest.raises(PaymentFailedError):
            await gateway.confirm_or_verify("pk_live", 10000, None)

    @pytest.mark.asyncio
    async def test_already_processed_falls_back_to_lookup(self):
        """A retried confirm reads the payment instead of failing."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(
                    400, json={"code": "ALREADY_PROCESSED_PAYMENT", "message": "already processed"}
                )
            assert request.url.path == "/v1/payments/pk_live"
            return httpx.Response(200, json=toss_payment())

        result = await toss(handler).confirm_or_verify("pk_live", 10000, ORDER)

        assert result.outcome == GatewayOutcome.PAID

    @pytest.mark.asyncio
    async def test_declined_is_failed(self):
        """Other 4xx responses are definite failures with the provider's code."""
        gateway = toss(
            lambda r: httpx.Response(
                400, json={"code": "INVALID_CARD_EXPIRATION", "message": "card expired"}
            )
        )

        with pytest.raises(PaymentFailedError) as exc_info:
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

        assert exc_info.value.provider_code == "INVALID_CARD_EXPIRATION"
        assert exc_info.value.reason == "card expired"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 429, 401, 403])
    async def test_outage_and_credentials_are_transient(self, status_code: int):
        """Server errors, throttling and our own bad credentials never fail the purchase."""
        gateway = toss(lambda r: httpx.Response(status_code, json={"code": "X"}))

        with pytest.raises(GatewayTransientError):
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTransientError) as exc_info:
            await toss(handler).confirm_or_verify("pk_live", 10000, ORDER)

        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayTransientError):
            await toss(handler).confirm_or_verify("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_empty_body_is_transient(self):
        gateway = toss(lambda r: httpx.Response(200, content=b""))

        with pytest.raises(GatewayTransientError):
            await gateway.confirm_or_verify("pk_live", 10000, ORDER)


class TestTossCancel:
    """Tests for TossPaymentsGateway.cancel."""

    @pytest.mark.asyncio
    async def test_cancel(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=toss_payment(
                    "CANCELED",
                    cancels=[{"cancelAmount": 10000, "canceledAt": "2026-01-20T12:00:00Z"}],
                ),
            )

        result = await toss(handler).cancel("pk_live", "requested by buyer")

        assert seen[0].url.path == "/v1/payments/pk_live/cancel"
        assert json.loads(seen[0].content) == {"cancelReason": "requested by buyer"}
        assert result.cancelled_amount == 10000
        assert result.cancelled_at == datetime(2026, 1, 20, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_already_cancelled_reads_payment(self):
        """A retried cancel succeeds with the cancellation Toss already recorded."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(
                    400, json={"code": "ALREADY_CANCELED_PAYMENT", "message": "already cancelled"}
                )
            return httpx.Response(
                200,
                json=toss_payment(
                    "CANCELED",
                    cancels=[{"cancelAmount": 10000, "canceledAt": "2026-01-20T12:00:00Z"}],
                ),
            )

        result = await toss(handler).cancel("pk_live", "requested by buyer")

        assert [request.method for request in seen] == ["POST", "GET"]
        assert seen[1].url.path == "/v1/payments/pk_live"
        assert result.cancelled_amount == 10000
        assert result.cancelled_at == datetime(2026, 1, 20, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_refused_cancel_is_failed(self):
        gateway = toss(
            lambda r: httpx.Response(
                400, json={"code": "NOT_CANCELABLE_PAYMENT", "message": "not cancelable"}
            )
        )

        with pytest.raises(PaymentFailedError) as exc_info:
            await gateway.cancel("pk_live", "requested by buyer")

        assert exc_info.value.provider_code == "NOT_CANCELABLE_PAYMENT"


class TestTossLookup:
    """Tests for TossPaymentsGateway.lookup."""

    @pytest.mark.asyncio
    async def test_reads_without_confirming(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=toss_payment())

        result = await toss(handler).lookup("pk_live", 10000, ORDER)

        assert result.outcome == GatewayOutcome.PAID
        assert len(seen) == 1
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/v1/payments/pk_live"

    @pytest.mark.asyncio
    async def test_payment_for_another_order(self):
        """A paymentKey that belongs to a different order is a failure."""
        gateway = toss(
            lambda r: httpx.Response(200, json=toss_payment(orderId="ORD-20260119-OTHER000"))
        )

        with pytest.raises(PaymentFailedError, match="order reference mismatch"):
            await gateway.lookup("pk_live", 10000, ORDER)

    @pytest.mark.asyncio
    async def test_requires_order_reference(self):
        gateway = toss(lambda r: httpx.Response(200, json=toss_payment()))

        with pytest.raises(PaymentFailedError):
            await gateway.lookup("pk_live", 10000)


class TestVerifyTossSignature:
    """Tests for verify_toss_signature."""

    SECRET = "whsec_test"
    BODY = b'{"eventType":"PAYMENT_STATUS_CHANGED"}'

    def sign(self, body: bytes) -> str:
        return hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        assert verify_toss_signature(self.BODY, self.sign(self.BODY), self.SECRET)

    def test_uppercase_hex_accepted(self):
        assert verify_toss_signature(self.BODY, self.sign(self.BODY).upper(), self.SECRET)

    def test_tampered_body(self):
        signature = self.sign(self.BODY)
        assert not verify_toss_signature(self.BODY + b" ", signature, self.SECRET)

    @pytest.mark.parametrize(("signature", "secret"), [("", "whsec_test"), ("abc", "")])
    def test_missing_signature_or_secret(self, signature: str, secret: str):
        assert not verify_toss_signature(self.BODY, signature, secret)


# ============================================================================
# PortOne
# ============================================================================


class TestPortOneVerify:
    """Tests for PortOneGateway.confirm_or_verify."""

    @pytest.mark.asyncio
    async def test_paid(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=portone_payment())

        result = await portone(handler).confirm_or_verify("pay_abc", 10000)

        assert result.verified
        assert result.payment_key == "txn_123"
        assert result.receipt_url == "https://receipts.portone.test/txn_123"
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/payments/pay_abc"
        assert seen[0].headers["Authorization"] == "PortOne test_portone_secret"

    @pytest.mark.asyncio
    async def test_virtual_account_issued(self):
        payment = portone_payment(
            "VIRTUAL_ACCOUNT_ISSUED",
            method={
                "virtualAccount": {
                    "bankCode": "SHINHAN",
                    "accountNumber": "56211234567890",
                    "accountHolder": "CONTENT MARKET",
                    "expiresAt": "2026-01-22T14:59:59Z",
                }
            },
        )
        result = await portone(lambda r: httpx.Response(200, json=payment)).confirm_or_verify(
            "pay_abc", 10000
        )

        assert result.outcome == GatewayOutcome.AWAITING_DEPOSIT
        assert result.virtual_account.account_holder == "CONTENT MARKET"
        assert result.virtual_account.expires_at == datetime(2026, 1, 22, 14, 59, 59, tzinfo=UTC)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["FAILED", "CANCELLED", "PARTIAL_CANCELLED"])
    async def test_failed_statuses(self, status: str):
        gateway = portone(lambda r: httpx.Response(200, json=portone_payment(status)))

        with pytest.raises(PaymentFailedError):
            await gateway.confirm_or_verify("pay_abc", 10000)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["READY", "PENDING"])
    async def test_unsettled_statuses_are_transient(self, status: str):
        gateway = portone(lambda r: httpx.Response(200, json=portone_payment(status)))

        with pytest.raises(GatewayTransientError):
            await gateway.confirm_or_verify("pay_abc", 10000)

    @pytest.mark.asyncio
    async def test_amount_mismatch(self):
        gateway = portone(lambda r: httpx.Response(200, json=portone_payment(amount=9000)))

        with pytest.raises(PaymentFailedError, match="amount mismatch"):
            await gateway.confirm_or_verify("pay_abc", 10000)

    @pytest.mark.asyncio
    async def test_unknown_payment_is_failed(self):
        gateway = portone(
            lambda r: httpx.Response(
                404, json={"type": "PAYMENT_NOT_FOUND", "message": "payment not found"}
            )
        )

        with pytest.raises(PaymentFailedError) as exc_info:
            await gateway.confirm_or_verify("pay_abc", 10000)

        assert exc_info.value.provider_code == "PAYMENT_NOT_FOUND"


class TestPortOneCancel:
    """Tests for PortOneGateway.cancel."""

    @pytest.mark.asyncio
    async def test_partial_cancel(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"cancellation": {"totalAmount": 5000, "cancelledAt": "2026-01-20T00:00:00Z"}},
            )

        result = await portone(handler).cancel("pay_abc", "requested by buyer", amount=5000)

        assert seen[0].url.path == "/payments/pay_abc/cancel"
        assert json.loads(seen[0].content) == {"reason": "requested by buyer", "amount": 5000}
        assert result.cancelled_amount == 5000

    @pytest.mark.asyncio
    async def test_cancel_outage(self):
        gateway = portone(lambda r: httpx.Response(503))

        with pytest.raises(GatewayTransientError):
            await gateway.cancel("pay_abc", "requested by buyer")

    @pytest.mark.asyncio
    async def test_already_cancelled_reads_payment(self):
        """A retried cancel succeeds once PortOne reports it already cancelled."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(
                    409,
                    json={"type": "PAYMENT_ALREADY_CANCELLED", "message": "already cancelled"},
                )
            return httpx.Response(
                200, json=portone_payment("CANCELLED", cancelledAt="2026-01-20T00:00:00Z")
            )

        result = await portone(handler).cancel("pay_abc", "requested by buyer")

        assert [request.method for request in seen] == ["POST", "GET"]
        assert seen[1].url.path == "/payments/pay_abc"
        assert result.payment_ref == "pay_abc"
        assert result.cancelled_at == datetime(2026, 1, 20, 0, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_refused_cancel_is_failed(self):
        gateway = portone(
            lambda r: httpx.Response(
                400, json={"type": "CANCEL_AMOUNT_EXCEEDS_CANCELLABLE_AMOUNT", "message": "too much"}
            )
        )

        with pytest.raises(PaymentFailedError):
            await gateway.cancel("pay_abc", "requested by buyer")


class TestHTTPPaymentGateway:
    """Tests for the shared adapter base."""

    def test_requires_auth_headers(self):
        with pytest.raises(TypeError):
            HTTPPaymentGateway("https://api.example.test", 5.0)  # type: ignore[abstract]
