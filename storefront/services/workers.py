"""
Assembly of the background loops.

The API process runs these loops from its lifespan handler; the Celery
tasks run single passes of the same code.
"""

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.database.connection import get_session_factory
from storefront.services.audit.sink import AuditSink
from storefront.services.background import BackgroundDispatcher, get_dispatcher
from storefront.services.notifications.notifier import OrderNotifications
from storefront.services.orders.service import OrderService
from storefront.services.payments.gateway import GatewayRegistry
from storefront.services.payments.registry import build_gateway_registry
from storefront.services.refunds.service import RefundManager
from storefront.services.refunds.settlement import SettlementWorker

logger = get_logger(__name__)


def build_settlement_worker(
    settings: Optional[Settings] = None,
    gateways: Optional[GatewayRegistry] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> SettlementWorker:
    settings = settings or get_settings()
    gateways = gateways or build_gateway_registry(settings)
    session_factory = session_factory or get_session_factory()
    dispatcher = dispatcher or get_dispatcher()
    audit = AuditSink(session_factory=session_factory, dispatcher=dispatcher)
    notifications = OrderNotifications(dispatcher=dispatcher)

    def manager_factory(session: AsyncSession) -> RefundManager:
        return RefundManager(
            session,
            gateways,
            settings=settings,
            audit=audit,
            notifications=notifications,
        )

    return SettlementWorker(session_factory, manager_factory, settings=settings)


async def expire_pending_orders(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> int:
    """Cancel stale unpaid orders in one pass and return how many were cancelled."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    dispatcher = dispatcher or get_dispatcher()

    async with session_factory() as session:
        service = OrderService(
            session,
            audit=AuditSink(session_factory=session_factory, dispatcher=dispatcher),
            notifications=OrderNotifications(dispatcher=dispatcher),
            settings=settings,
        )
        return await service.expire_stale_orders()
