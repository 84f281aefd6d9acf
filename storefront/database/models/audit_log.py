"""
Append-only audit log of settlement-relevant events.
"""

from typing import Any, Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel, JSONType


class AuditLogEntry(BaseModel):
    """
    Audit log entry.

    Attributes:
        actor_id: Buyer, guest email, admin or system identifier
        actor_type: buyer, guest, admin or system
        action: Dotted action name such as ``payment.confirm``
        object_type: Kind of object acted on (order, payment, refund, inventory)
        object_id: Identifier of that object
        meta: Free-form context
        ip_address: Client address when triggered over HTTP
        user_agent: Client user agent when triggered over HTTP
    """

    __tablename__ = "audit_logs"

    actor_id: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    object_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_object", "object_type", "object_id"),
        {"comment": "Append-only audit trail"},
    )
