"""
Inventory record model: available quantity per product.

Quantity is guarded by a CHECK constraint and every decrement is issued as a
conditional UPDATE, so stock can never go negative.
"""

from sqlalchemy import CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import Base, TimestampMixin

DEFAULT_LOW_STOCK_THRESHOLD = 10


class InventoryRecord(Base, TimestampMixin):
    """
    Available stock for a catalog product.

    Attributes:
        product_id: Catalog product identifier (primary key)
        qty: Units available for reservation
        low_stock_threshold: Quantity at or below which the product is low
    """

    __tablename__ = "inventory"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    low_stock_threshold: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_LOW_STOCK_THRESHOLD,
    )

    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_inventory_qty_non_negative"),
        CheckConstraint(
            "low_stock_threshold >= 0",
            name="ck_inventory_threshold_non_negative",
        ),
        {"comment": "Per-product available stock"},
    )

    @property
    def is_low_stock(self) -> bool:
        return self.qty <= self.low_stock_threshold

    def __repr__(self) -> str:
        return f"<InventoryRecord(product_id={self.product_id!r}, qty={self.qty})>"
