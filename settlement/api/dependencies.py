"""
FastAPI Dependencies - Caller identity and per-request service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Identity tokens are issued by the external identity provider and verified
here with the shared signing secret. Services are built per request from
the request's database session; nothing is cached between requests.
"""

from typing import Any
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import Settings, get_settings
from settlement.db.session import get_read_db, get_write_db
from settlement.exceptions import AuthenticationRequiredError
from settlement.models.api import CardProvider
from settlement.models.domain import CallerIdentity
from settlement.observability.logging import get_logger
from settlement.services.balance import BalanceAggregator
from settlement.services.ledger import LedgerStore
from settlement.services.notifications import NotificationDispatcher
from settlement.services.payment_gateway import PaymentGateway
from settlement.services.portone_gateway import PortOneGateway
from settlement.services.purchase_state_machine import PurchaseStateMachine
from settlement.services.toss_gateway import TossPaymentsGateway

logger = get_logger(__name__)

# Bearer token scheme; missing header is reported as 401 by get_caller
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Caller Identity
# ============================================================================


def decode_identity_token(token: str, config: Settings) -> CallerIdentity:
    """
    Verify an identity-provider JWT and extract the caller.

    Raises:
        AuthenticationRequiredError: Token invalid, expired or lacks a subject
    """
    if not config.auth_jwt_secret:
        logger.error("auth_jwt_secret_not_configured")
        raise AuthenticationRequiredError()

    options: dict[str, Any] = {"require": ["sub", "exp"]}
    if config.auth_jwt_audience is None:
        options["verify_aud"] = False

    try:
        payload = jwt.decode(
            token,
            config.auth_jwt_secret,
            algorithms=[config.auth_jwt_algorithm],
            audience=config.auth_jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        logger.info("identity_token_expired")
        raise AuthenticationRequiredError("Session expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("identity_token_invalid", error=str(exc))
        raise AuthenticationRequiredError() from exc

    try:
        user_id = UUID(str(payload["sub"]))
    except ValueError as exc:
        logger.warning("identity_token_bad_subject")
        raise AuthenticationRequiredError() from exc

    app_metadata = payload.get("app_metadata") or {}
    role = app_metadata.get("role") if isinstance(app_metadata, dict) else None

    return CallerIdentity(
        user_id=user_id,
        email=payload.get("email"),
        role=role or payload.get("role"),
    )


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    config: Settings = Depends(get_settings),
) -> CallerIdentity:
    """
    FastAPI dependency to authenticate the caller.

    Accepts: Authorization: Bearer {identity_provider_jwt}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "authentication_required", "message": "Authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_identity_token(credentials.credentials, config)
    except AuthenticationRequiredError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"code": exc.code, "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(
    caller: CallerIdentity = Depends(get_caller),
    config: Settings = Depends(get_settings),
) -> CallerIdentity:
    """FastAPI dependency allowing only platform operators."""
    if caller.role != config.auth_admin_role:
        logger.warning("admin_access_denied", user_id=str(caller.user_id), role=caller.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "authorization_denied", "message": "Admin access required"},
        )
    return caller


# ============================================================================
# Service Wiring
# ============================================================================


def get_payment_gateways(
    config: Settings = Depends(get_settings),
) -> dict[CardProvider, PaymentGateway]:
    """Build the gateway adapters from configuration."""
    return {
        CardProvider.TOSS: TossPaymentsGateway(
            secret_key=config.toss_secret_key,
            base_url=config.toss_api_url,
            timeout=config.gateway_timeout_seconds,
        ),
        CardProvider.PORTONE: PortOneGateway(
            api_secret=config.portone_api_secret,
            base_url=config.portone_api_url,
            timeout=config.gateway_timeout_seconds,
        ),
    }


def get_state_machine(
    db: AsyncSession = Depends(get_write_db),
    gateways: dict[CardProvider, PaymentGateway] = Depends(get_payment_gateways),
    config: Settings = Depends(get_settings),
) -> PurchaseStateMachine:
    """Build the purchase state machine for one request."""
    return PurchaseStateMachine(
        ledger=LedgerStore(db),
        balances=BalanceAggregator(db, recent_payouts_limit=config.recent_payouts_limit),
        notifier=NotificationDispatcher(db),
        gateways=gateways,
        fee_rate=config.platform_fee_rate,
        refund_window_days=config.refund_window_days,
    )


def get_balance_aggregator(
    db: AsyncSession = Depends(get_read_db),
    config: Settings = Depends(get_settings),
) -> BalanceAggregator:
    """Balance reads are served from the replica."""
    return BalanceAggregator(db, recent_payouts_limit=config.recent_payouts_limit)
