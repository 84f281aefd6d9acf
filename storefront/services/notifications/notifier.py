"""
Order lifecycle notifications.

Delivery (email, SMS, push) belongs to an external collaborator behind the
``Notifier`` protocol. ``OrderNotifications`` fires events on the background
dispatcher so a delivery failure never reaches the order operation.
"""

from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from storefront.core.logging import get_logger
from storefront.services.background import BackgroundDispatcher, get_dispatcher

logger = get_logger(__name__)


class NotificationType(str, Enum):
    """Order notification types."""

    ORDER_PLACED = "order_placed"
    ORDER_PAID = "order_paid"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_REFUNDED = "order_refunded"


@runtime_checkable
class Notifier(Protocol):
    async def notify(
        self,
        notification_type: NotificationType,
        recipient: Optional[str],
        context: dict[str, Any],
    ) -> None:
        ...


class LogNotifier:
    """Default notifier: records the event in the structured log."""

    async def notify(
        self,
        notification_type: NotificationType,
        recipient: Optional[str],
        context: dict[str, Any],
    ) -> None:
        logger.info(
            "Notification emitted",
            notification_type=notification_type.value,
            recipient=recipient,
            **context,
        )


class OrderNotifications:
    """
    Fire-and-forget wrapper around a notifier.

    Example:
        notifications.send(NotificationType.ORDER_PAID, order.owner, order_id=str(order.id))
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        dispatcher: Optional[BackgroundDispatcher] = None,
    ):
        self.notifier = notifier or LogNotifier()
        self.dispatcher = dispatcher or get_dispatcher()

    def send(
        self,
        notification_type: NotificationType,
        recipient: Optional[str],
        **context: Any,
    ) -> None:
        self.dispatcher.submit(
            self.notifier.notify(notification_type, recipient, context),
            name=f"notify:{notification_type.value}",
        )
