"""
FastAPI dependencies for authentication, authorization and service wiring.

Principals are read from bearer JWTs (``sub``, ``role`` and ``email``
claims). Token issuance belongs to the identity service; this API only
verifies tokens. Services are constructed per request around the request's
database session; gateway adapters and external clients are process-wide.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import get_settings
from storefront.core.logging import get_logger, set_actor_id
from storefront.core.security import TokenError, decode_token
from storefront.database.connection import get_db
from storefront.services.audit.sink import Actor, ActorType, AuditSink
from storefront.services.checkout.catalog import HttpPriceCatalog, PriceCatalog
from storefront.services.checkout.discounts import DiscountResolver, build_discount_resolver
from storefront.services.checkout.service import CheckoutOrchestrator
from storefront.services.inventory.ledger import InventoryLedger
from storefront.services.notifications.notifier import OrderNotifications
from storefront.services.orders.service import OrderService
from storefront.services.payments.gateway import GatewayRegistry
from storefront.services.payments.registry import build_gateway_registry
from storefront.services.payments.service import PaymentService
from storefront.services.refunds.service import RefundManager

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    subject: str
    role: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in get_settings().admin_roles


def _principal_from_token(token: str) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(token)
    except TokenError as e:
        logger.warning(
            "Authentication failed: token rejected",
            code=e.code,
        )
        raise credentials_exception from e

    subject = payload.get("sub")
    if not subject:
        logger.warning("Authentication failed: Token missing 'sub' claim")
        raise credentials_exception

    principal = Principal(
        subject=str(subject),
        role=str(payload.get("role") or "buyer"),
        email=payload.get("email"),
    )
    set_actor_id(principal.subject)
    return principal


async def get_optional_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[Principal]:
    """
    Principal for endpoints open to guests.

    A missing token means a guest; a token that is present but invalid is
    still rejected with 401.
    """
    if credentials is None:
        return None
    return _principal_from_token(credentials.credentials)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Validate the bearer token of the current request.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _principal_from_token(credentials.credentials)


async def get_current_admin(
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> Principal:
    """
    Dependency for endpoints requiring admin access.

    Raises:
        HTTPException: 403 if the principal's role is not an admin role
    """
    if not principal.is_admin:
        logger.warning(
            "Access denied: Insufficient permissions",
            subject=principal.subject,
            role=principal.role,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return principal


OptionalPrincipal = Annotated[Optional[Principal], Depends(get_optional_principal)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AdminPrincipal = Annotated[Principal, Depends(get_current_admin)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


def actor_for(
    request: Request,
    principal: Optional[Principal],
    guest_email: Optional[str] = None,
) -> Actor:
    """Audit actor for the caller of ``request``."""
    if principal is None:
        actor_id, actor_type = guest_email, ActorType.GUEST
    elif principal.is_admin:
        actor_id, actor_type = principal.subject, ActorType.ADMIN
    else:
        actor_id, actor_type = principal.subject, ActorType.BUYER

    return Actor(
        actor_id=actor_id,
        actor_type=actor_type,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@lru_cache
def get_gateway_registry() -> GatewayRegistry:
    return build_gateway_registry(get_settings())


@lru_cache
def get_price_catalog() -> PriceCatalog:
    return HttpPriceCatalog(settings=get_settings())


@lru_cache
def get_discount_resolver() -> DiscountResolver:
    return build_discount_resolver(get_settings())


def get_audit_sink() -> AuditSink:
    return AuditSink()


def get_notifications() -> OrderNotifications:
    return OrderNotifications()


Gateways = Annotated[GatewayRegistry, Depends(get_gateway_registry)]
Audit = Annotated[AuditSink, Depends(get_audit_sink)]
Notifications = Annotated[OrderNotifications, Depends(get_notifications)]


def get_payment_service(
    db: DatabaseSession,
    gateways: Gateways,
    audit: Audit,
    notifications: Notifications,
) -> PaymentService:
    return PaymentService(db, gateways, audit=audit, notifications=notifications)


def get_checkout_orchestrator(
    db: DatabaseSession,
    catalog: Annotated[PriceCatalog, Depends(get_price_catalog)],
    discounts: Annotated[DiscountResolver, Depends(get_discount_resolver)],
    payments: Annotated[PaymentService, Depends(get_payment_service)],
    audit: Audit,
    notifications: Notifications,
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        db,
        catalog=catalog,
        discounts=discounts,
        payments=payments,
        audit=audit,
        notifications=notifications,
    )


def get_order_service(
    db: DatabaseSession,
    audit: Audit,
    notifications: Notifications,
) -> OrderService:
    return OrderService(db, audit=audit, notifications=notifications)


def get_refund_manager(
    db: DatabaseSession,
    gateways: Gateways,
    audit: Audit,
    notifications: Notifications,
) -> RefundManager:
    return RefundManager(db, gateways, audit=audit, notifications=notifications)


def get_inventory_ledger(db: DatabaseSession) -> InventoryLedger:
    return InventoryLedger(db)
