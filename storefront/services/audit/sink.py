"""
Best-effort audit sink.

``record`` schedules an append to ``audit_logs`` on the background dispatcher
and returns immediately. The write uses its own session so a failed audit
insert can never roll back, or be rolled back with, the audited operation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.connection import get_session_factory
from storefront.database.models.audit_log import AuditLogEntry
from storefront.services.background import BackgroundDispatcher, get_dispatcher

logger = get_logger(__name__)


class AuditAction(str, Enum):
    ORDER_CREATE = "order.create"
    ORDER_STATUS = "order.status"
    ORDER_CANCEL = "order.cancel"
    PAYMENT_CONFIRM = "payment.confirm"
    REFUND_CREATE = "refund.create"
    REFUND_SETTLE = "refund.settle"
    REFUND_MANUAL = "refund.manual"
    INVENTORY_SET = "inventory.set"
    INVENTORY_ADJUST = "inventory.adjust"


class ActorType(str, Enum):
    BUYER = "buyer"
    GUEST = "guest"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who performed an audited action."""

    actor_id: Optional[str]
    actor_type: ActorType = ActorType.SYSTEM
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM_ACTOR = Actor(actor_id="system", actor_type=ActorType.SYSTEM)


@dataclass(frozen=True)
class AuditEvent:
    actor: Actor
    action: AuditAction
    object_type: str
    object_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditSink:
    """
    Append-only audit log writer.

    Attributes:
        session_factory: Factory producing sessions for audit writes
        dispatcher: Runs writes detached from the caller
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        dispatcher: Optional[BackgroundDispatcher] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.dispatcher = dispatcher or get_dispatcher()

    def record(
        self,
        actor: Actor,
        action: AuditAction,
        object_type: str,
        object_id: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Schedule an audit entry; never raises for write failures."""
        event = AuditEvent(
            actor=actor,
            action=action,
            object_type=object_type,
            object_id=str(object_id),
            metadata=_json_safe(metadata or {}),
        )
        self.dispatcher.submit(self.write(event), name=f"audit:{action.value}")

    async def write(self, event: AuditEvent) -> bool:
        """
        Persist one audit entry.

        Returns:
            True if written, False if the insert failed (the failure is logged)
        """
        entry = AuditLogEntry(
            actor_id=event.actor.actor_id,
            actor_type=event.actor.actor_type.value,
            action=event.action.value,
            object_type=event.object_type,
            object_id=event.object_id,
            meta=event.metadata,
            ip_address=event.actor.ip_address,
            user_agent=event.actor.user_agent,
        )

        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Audit write failed",
                action=event.action.value,
                object_type=event.object_type,
                object_id=event.object_id,
                error=str(e),
            )
            return False

        logger.debug(
            "Audit entry written",
            action=event.action.value,
            object_id=event.object_id,
            actor=event.actor.actor_id,
        )
        return True


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)
