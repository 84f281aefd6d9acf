"""
Test doubles and data helpers shared across the suite.

Helpers talk to the database through a session factory so that each call
uses its own session, the way separate requests would.
"""

import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from storefront.core.security import (
    compute_payment_signature,
    compute_webhook_signature,
    create_access_token,
)
from storefront.database.base import utcnow
from storefront.database.models import InventoryRecord, Order, OrderItem, OrderStatus, PaymentMethod
from storefront.services.notifications.notifier import NotificationType
from storefront.services.orders.enums import order_sources_for
from storefront.services.orders.repository import OrderRepository
from storefront.services.payments.gateway import (
    GatewayError,
    GatewayOrder,
    GatewayPayment,
    GatewayPaymentStatus,
    GatewayRefund,
)
from storefront.services.payments.repository import PaymentRepository

GATEWAY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "rzp_webhook_secret"


# ============================================================================
# Fake Collaborators
# ============================================================================


class FakeGateway:
    """
    In-memory gateway adapter.

    Payments reported by ``fetch_gateway_payment`` default to captured; set
    ``payment_status`` or ``fail_*`` flags to simulate gateway behavior.
    """

    supports_refunds = True

    def __init__(self, name: str = "razorpay"):
        self.name = name
        self.payment_status = GatewayPaymentStatus.CAPTURED
        self.fail_create_order = False
        self.fail_refund = False
        self.created_orders: list[str] = []
        self.refund_calls: list[dict[str, Any]] = []

    @property
    def signing_secret(self) -> str:
        return GATEWAY_SECRET

    @property
    def public_key(self) -> Optional[str]:
        return "rzp_test_key"

    async def create_gateway_order(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        if self.fail_create_order:
            raise GatewayError("Gateway unavailable", gateway=self.name, retryable=True)
        gateway_order_id = f"order_{len(self.created_orders) + 1}"
        self.created_orders.append(reference)
        return GatewayOrder(gateway_order_id=gateway_order_id, raw={"amount": str(amount)})

    async def fetch_gateway_payment(self, gateway_payment_id: str) -> GatewayPayment:
        return GatewayPayment(gateway_payment_id=gateway_payment_id, status=self.payment_status)

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        self.refund_calls.append(
            {
                "gateway_payment_id": gateway_payment_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
            }
        )
        if self.fail_refund:
            raise GatewayError("Refund rejected", gateway=self.name, code="GATEWAY_DECLINED")
        return GatewayRefund(
            gateway_refund_id=f"rfnd_{len(self.refund_calls)}",
            status="processed",
            raw={"status": "processed"},
        )


class RecordingNotifier:
    """Notifier collecting every event it receives."""

    def __init__(self) -> None:
        self.sent: list[tuple[NotificationType, Optional[str], dict[str, Any]]] = []

    async def notify(
        self,
        notification_type: NotificationType,
        recipient: Optional[str],
        context: dict[str, Any],
    ) -> None:
        self.sent.append((notification_type, recipient, context))

    def types(self) -> list[NotificationType]:
        return [sent[0] for sent in self.sent]



# ============================================================================
# Data Helpers
# ============================================================================


async def set_stock(session_factory, **levels: int) -> None:
    """Seed inventory rows, e.g. ``await set_stock(factory, P1=5, P2=0)``."""
    async with session_factory() as session:
        for product_id, qty in levels.items():
            session.add(InventoryRecord(product_id=product_id, qty=qty, low_stock_threshold=2))
        await session.commit()


async def stock_of(session_factory, product_id: str) -> int:
    async with session_factory() as session:
        record = await session.get(InventoryRecord, product_id)
        return record.qty if record is not None else 0


async def create_order(
    session_factory,
    items: Optional[list[tuple[str, int, Decimal]]] = None,
    buyer_id: Optional[str] = "buyer-1",
    guest_email: Optional[str] = None,
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY,
    placed_at: Optional[datetime] = None,
    gateway_order_id: Optional[str] = None,
) -> uuid.UUID:
    """
    Insert a pending order directly, bypassing checkout.

    Amounts follow an 18% tax rate with free shipping.
    """
    items = items or [("P1", 2, Decimal("500.00"))]
    subtotal = sum((price * qty for _, qty, price in items), Decimal("0.00"))
    tax = (subtotal * Decimal("0.18")).quantize(Decimal("0.01"))

    async with session_factory() as session:
        order = Order(
            buyer_id=buyer_id,
            guest_email=guest_email,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            currency="INR",
            subtotal=subtotal,
            tax_amount=tax,
            total=subtotal + tax,
            tax_rate_percent=Decimal("18"),
            shipping_address={"name": "Asha", "city": "Pune", "country": "IN"},
            billing_address={"name": "Asha", "city": "Pune", "country": "IN"},
            gateway_order_id=gateway_order_id,
            placed_at=placed_at or utcnow(),
            items=[
                OrderItem(position=position, product_id=pid, name=pid, qty=qty, unit_price=price)
                for position, (pid, qty, price) in enumerate(items)
            ],
        )
        order = await OrderRepository(session).create(order)
        return order.id


async def mark_paid(
    session_factory,
    order_id: uuid.UUID,
    gateway: str = "razorpay",
    gateway_payment_id: str = "pay_1",
) -> None:
    """Complete the order's payment and move the order to paid."""
    async with session_factory() as session:
        order = await OrderRepository(session).get(order_id)
        await PaymentRepository(session).upsert_completed(
            order_id=order.id,
            amount=order.total,
            currency=order.currency,
            gateway=gateway,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )
        await OrderRepository(session).transition(
            order.id, OrderStatus.PAID, order_sources_for(OrderStatus.PAID)
        )
        await session.commit()


async def move_order(
    session_factory,
    order_id: uuid.UUID,
    target: OrderStatus,
    **values: Any,
) -> None:
    async with session_factory() as session:
        await OrderRepository(session).transition(
            order_id, target, order_sources_for(target), **values
        )
        await session.commit()


async def load_order(session_factory, order_id: uuid.UUID) -> Order:
    async with session_factory() as session:
        return await OrderRepository(session).get(order_id)


def days_ago(days: float) -> datetime:
    return utcnow() - timedelta(days=days)


def sign(gateway_order_id: str, gateway_payment_id: str) -> str:
    return compute_payment_signature(GATEWAY_SECRET, gateway_order_id, gateway_payment_id)


def bearer(subject: str = "buyer-1", role: str = "buyer", **claims: Any) -> dict[str, str]:
    token = create_access_token({"sub": subject, "role": role, **claims})
    return {"Authorization": f"Bearer {token}"}


def razorpay_event(
    gateway_order_id: str,
    gateway_payment_id: str = "pay_1",
    amount_minor: int = 118000,
    event: str = "payment.captured",
    currency: str = "INR",
) -> bytes:
    """Raw Razorpay webhook body for a payment event."""
    entity = {
        "id": gateway_payment_id,
        "entity": "payment",
        "order_id": gateway_order_id,
        "amount": amount_minor,
        "currency": currency,
        "status": "captured",
    }
    return json.dumps(
        {
            "entity": "event",
            "event": event,
            "payload": {"payment": {"entity": entity}},
            "created_at": 1700000000,
        }
    ).encode("utf-8")


def webhook_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": compute_webhook_signature(secret, body),
    }
