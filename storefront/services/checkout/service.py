"""
Checkout orchestrator.

This module implements the CheckoutOrchestrator, which turns a cart into a
pending order:

1. validate the request (owner, non-empty cart, enabled payment method)
2. price lines from the catalog and resolve discounts
3. reserve inventory line by line, compensating in reverse on any failure
4. persist the pending order with snapshotted prices and server-side totals
5. create (at most once) the gateway order, or record a cash-on-delivery
   payment

Payment completion happens later through the PaymentService.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.errors import (
    InsufficientInventoryError,
    NotFoundError,
    StateError,
    StorageError,
    ValidationError,
)
from storefront.core.logging import get_logger, log_performance
from storefront.database.base import utcnow
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    ShippingMethod,
)
from storefront.services.audit.sink import SYSTEM_ACTOR, Actor, AuditAction, AuditSink
from storefront.services.checkout.catalog import PriceCatalog
from storefront.services.checkout.discounts import DiscountResolver
from storefront.services.inventory.ledger import InventoryLedger, InventoryLedgerError
from storefront.services.notifications.notifier import NotificationType, OrderNotifications
from storefront.services.orders.pricing import (
    OrderTotals,
    PricedLine,
    compute_shipping,
    compute_subtotal,
    compute_totals,
)
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.payments.repository import PaymentRepositoryError
from storefront.services.payments.service import PaymentService

logger = get_logger(__name__)

COD_GATEWAY = "cod"


@dataclass(frozen=True)
class CheckoutLine:
    product_id: str
    qty: int


@dataclass
class CheckoutCommand:
    """
    Validated checkout request.

    Attributes:
        items: Cart lines; prices are looked up, never taken from the client
        payment_method: Requested payment method
        shipping_address: Required shipping address document
        billing_address: Billing address, defaults to shipping
        buyer_id: Registered buyer, mutually exclusive with guest_email
        guest_email: Guest email, mutually exclusive with buyer_id
        coupon_code: Coupon the buyer expects to apply
        loyalty_points: Points to redeem
        gift_wrap: Gift wrap requested
        shipping_method: Standard or express
        expected_total: Total shown to the client, advisory only
    """

    items: list[CheckoutLine]
    payment_method: PaymentMethod
    shipping_address: dict[str, Any]
    billing_address: Optional[dict[str, Any]] = None
    buyer_id: Optional[str] = None
    guest_email: Optional[str] = None
    coupon_code: Optional[str] = None
    loyalty_points: int = 0
    gift_wrap: bool = False
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    expected_total: Optional[Decimal] = None


@dataclass
class _Reservations:
    """Reservations made so far in one checkout attempt."""

    ledger: InventoryLedger
    completed: list[tuple[str, int]] = field(default_factory=list)

    def add(self, product_id: str, qty: int) -> None:
        self.completed.append((product_id, qty))

    async def release(self) -> None:
        for product_id, qty in reversed(self.completed):
            try:
                await self.ledger.restore(product_id, qty)
            except InventoryLedgerError as e:
                logger.error(
                    "Compensating restore failed, manual correction required",
                    product_id=product_id,
                    qty=qty,
                    error=str(e),
                )
        if self.completed:
            logger.info("Checkout reservations released", lines=len(self.completed))
        self.completed.clear()


class CheckoutOrchestrator:
    """
    Drives one checkout attempt from cart to pending order.

    Attributes:
        session: Async database session
        catalog: Price lookup
        discounts: Coupon and loyalty resolver
        payments: Payment service for gateway orders
        ledger: Inventory ledger
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: PriceCatalog,
        discounts: DiscountResolver,
        payments: PaymentService,
        settings: Optional[Settings] = None,
        audit: Optional[AuditSink] = None,
        notifications: Optional[OrderNotifications] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.catalog = catalog
        self.discounts = discounts
        self.payments = payments
        self.settings = settings or get_settings()
        self.audit = audit
        self.notifications = notifications
        self.clock = clock or utcnow
        self.ledger = InventoryLedger(session)
        self.orders = OrderRepository(session)

    async def checkout(
        self,
        command: CheckoutCommand,
        actor: Actor = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """
        Run a checkout.

        Args:
            command: Checkout request
            actor: Who is checking out

        Returns:
            Dictionary with order id, gateway order reference, amount,
            currency, payment method and the gateway public key

        Raises:
            ValidationError: Malformed request, unknown product or invalid coupon
            InsufficientInventoryError: A line could not be reserved; all
                earlier reservations were restored before raising
            ExternalGatewayError: Gateway order creation failed; the order
                stays pending and can be retried
        """
        lines = self._validate(command)

        with log_performance(logger, "checkout", line_count=len(lines)):
            priced = await self._price(lines)
            totals, discount = await self._compute_totals(command, priced)

            reservations = _Reservations(self.ledger)
            try:
                await self._reserve_all(priced, reservations)
                order = await self._create_order(command, priced, totals, discount)
            except Exception:
                await reservations.release()
                raise

        logger.info(
            "Order placed",
            order_id=str(order.id),
            owner_type="buyer" if order.buyer_id else "guest",
            total=str(order.total),
            payment_method=order.payment_method.value,
        )
        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.ORDER_CREATE,
                "order",
                order.id,
                {"total": order.total, "payment_method": order.payment_method, **totals.as_dict()},
            )
        if self.notifications is not None:
            self.notifications.send(
                NotificationType.ORDER_PLACED,
                order.owner,
                order_id=str(order.id),
                total=str(order.total),
            )

        return await self._settle_payment_setup(order)

    async def retry_gateway_order(
        self,
        order_id: uuid.UUID,
        buyer_id: Optional[str] = None,
        guest_email: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create the gateway order for a pending order whose earlier attempt failed.

        Returns the stored reference when one already exists.

        Raises:
            NotFoundError: Unknown order or not owned by the caller
            StateError: Order not pending or not using a gateway
        """
        order = await self.orders.get(order_id)
        if order is None or not self._owned_by(order, buyer_id, guest_email):
            raise NotFoundError(
                "Order not found",
                code="ORDER_NOT_FOUND",
                order_id=str(order_id),
            )
        if order.status != OrderStatus.PENDING or not order.payment_method.uses_gateway:
            raise StateError(
                "Order is not awaiting online payment",
                code="INVALID_STATE",
                order_id=str(order_id),
                status=order.status.value,
            )
        return await self._settle_payment_setup(order)

    @staticmethod
    def _owned_by(order: Order, buyer_id: Optional[str], guest_email: Optional[str]) -> bool:
        if order.buyer_id is not None:
            return order.buyer_id == buyer_id
        return (
            guest_email is not None
            and order.guest_email is not None
            and order.guest_email.lower() == guest_email.lower()
        )

    def _validate(self, command: CheckoutCommand) -> list[CheckoutLine]:
        if not command.items:
            raise ValidationError("Cart is empty", code="EMPTY_CART")

        if (command.buyer_id is None) == (command.guest_email is None):
            raise ValidationError(
                "Exactly one of buyer or guest email is required",
                code="OWNER_REQUIRED",
            )
        if command.guest_email is not None and not self.settings.guest_checkout_enabled:
            raise ValidationError(
                "Guest checkout is disabled",
                code="GUEST_CHECKOUT_DISABLED",
            )

        method = command.payment_method
        enabled = method.value in self.settings.enabled_payment_methods
        if not enabled or (method.uses_gateway and not self.payments.gateways.has(method.value)):
            raise ValidationError(
                f"Payment method {method.value} is not available",
                code="PAYMENT_METHOD_DISABLED",
                payment_method=method.value,
            )

        merged: dict[str, int] = {}
        for line in command.items:
            if line.qty <= 0:
                raise ValidationError(
                    "Quantity must be positive",
                    code="INVALID_QUANTITY",
                    product_id=line.product_id,
                )
            merged[line.product_id] = merged.get(line.product_id, 0) + line.qty
        return [CheckoutLine(product_id, qty) for product_id, qty in merged.items()]

    async def _price(self, lines: list[CheckoutLine]) -> list[PricedLine]:
        products = await self.catalog.get_products(line.product_id for line in lines)

        priced = []
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.active:
                raise ValidationError(
                    f"Product {line.product_id} is not available",
                    code="PRODUCT_UNAVAILABLE",
                    product_id=line.product_id,
                )
            priced.append(
                PricedLine(
                    product_id=line.product_id,
                    qty=line.qty,
                    unit_price=product.unit_price,
                    name=product.name,
                )
            )
        return priced

    async def _compute_totals(self, command: CheckoutCommand, priced: list[PricedLine]):
        subtotal = compute_subtotal(priced)
        discount = await self.discounts.resolve(
            order_amount=subtotal,
            lines=priced,
            code=command.coupon_code,
            buyer_id=command.buyer_id,
            loyalty_points=command.loyalty_points,
        )
        totals = compute_totals(
            priced,
            shipping_cost=compute_shipping(self.settings, subtotal, command.shipping_method),
            tax_rate_percent=self.settings.tax_rate_percent,
            coupon_discount=discount.coupon_discount,
            loyalty_discount=discount.loyalty_discount,
        )

        if command.expected_total is not None and command.expected_total != totals.total:
            logger.warning(
                "Client total differs from computed total, using computed",
                expected_total=str(command.expected_total),
                computed_total=str(totals.total),
            )
        return totals, discount

    async def _reserve_all(self, priced: list[PricedLine], reservations: _Reservations) -> None:
        for line in priced:
            try:
                result = await self.ledger.reserve(line.product_id, line.qty)
            except InventoryLedgerError as e:
                raise StorageError(
                    "Inventory reservation failed",
                    product_id=line.product_id,
                ) from e

            if not result.ok:
                logger.info(
                    "Checkout rejected for insufficient inventory",
                    product_id=line.product_id,
                    requested=line.qty,
                    available=result.available_qty,
                )
                raise InsufficientInventoryError(
                    product_id=line.product_id,
                    requested=line.qty,
                    available=result.available_qty,
                )
            reservations.add(line.product_id, line.qty)

    async def _create_order(
        self,
        command: CheckoutCommand,
        priced: list[PricedLine],
        totals: OrderTotals,
        discount,
    ) -> Order:
        order = Order(
            buyer_id=command.buyer_id,
            guest_email=command.guest_email,
            status=OrderStatus.PENDING,
            payment_method=command.payment_method,
            shipping_method=command.shipping_method,
            currency=self.settings.currency,
            subtotal=totals.subtotal,
            coupon_discount=totals.coupon_discount,
            loyalty_discount=totals.loyalty_discount,
            tax_amount=totals.tax_amount,
            shipping_cost=totals.shipping_cost,
            total=totals.total,
            tax_rate_percent=totals.tax_rate_percent,
            coupon_code=discount.coupon_code,
            loyalty_points_redeemed=discount.loyalty_points_redeemed,
            gift_wrap=command.gift_wrap,
            shipping_address=command.shipping_address,
            billing_address=command.billing_address or command.shipping_address,
            placed_at=self.clock(),
            items=[
                OrderItem(
                    position=position,
                    product_id=line.product_id,
                    name=line.name,
                    qty=line.qty,
                    unit_price=line.unit_price,
                )
                for position, line in enumerate(priced)
            ],
        )

        try:
            return await self.orders.create(order)
        except OrderRepositoryError as e:
            raise StorageError("Failed to create order") from e

    async def _settle_payment_setup(self, order: Order) -> dict[str, Any]:
        method = order.payment_method
        gateway_order_id = None
        public_key = None

        if method.uses_gateway:
            gateway_order_id = await self.payments.ensure_gateway_order(order)
            public_key = self.payments.gateways.get(method.value).public_key
        else:
            try:
                await self.payments.payments.create_pending(
                    order_id=order.id,
                    amount=order.total,
                    currency=order.currency,
                    gateway=COD_GATEWAY,
                )
                await self.session.commit()
            except PaymentRepositoryError as e:
                raise StorageError(
                    "Failed to record cash on delivery payment",
                    order_id=str(order.id),
                ) from e

        return {
            "order_id": str(order.id),
            "gateway_order_id": gateway_order_id,
            "amount": str(order.total),
            "currency": order.currency,
            "payment_method": method.value,
            "key_id": public_key,
            "status": OrderStatus.PENDING.value,
        }
