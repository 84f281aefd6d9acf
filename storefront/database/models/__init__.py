"""
Database models package initialization.

Models are imported here to ensure they are registered with the Base
metadata for Alembic and for ``create_all`` in tests.
"""

from storefront.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from storefront.database.models.audit_log import AuditLogEntry
from storefront.database.models.inventory import InventoryRecord
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    ShippingMethod,
)
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.database.models.refund import Refund, RefundStatus
from storefront.database.models.settlement_job import JobStatus, SettlementJob

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "AuditLogEntry",
    "InventoryRecord",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "ShippingMethod",
    "Payment",
    "PaymentStatus",
    "Refund",
    "RefundStatus",
    "JobStatus",
    "SettlementJob",
]
