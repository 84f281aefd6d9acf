"""
Payment service: gateway order creation and payment confirmation.

This module implements the PaymentService, which creates (at most once) the
gateway-side order for a pending order and runs the confirmation protocol:
gateway reference check, constant-time signature verification, authoritative
gateway status lookup, then a single commit that upserts the payment as
completed and moves the order from pending to paid. Gateway capture
webhooks finish through the same commit. Audit and notification side
effects are dispatched only after that commit.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import (
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    SecurityError,
    StateError,
    StorageError,
)
from storefront.core.logging import get_logger, log_performance
from storefront.core.security import verify_payment_signature
from storefront.database.models.order import Order, OrderStatus
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.services.audit.sink import SYSTEM_ACTOR, Actor, AuditAction, AuditSink
from storefront.services.notifications.notifier import NotificationType, OrderNotifications
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.orders.state_machine import OrderStateMachine
from storefront.services.payments.gateway import GatewayAdapter, GatewayRegistry
from storefront.services.payments.repository import (
    PaymentRepository,
    PaymentRepositoryError,
)

logger = get_logger(__name__)


class PaymentService:
    """
    Payment service coordinating gateway adapters with order and payment storage.

    Attributes:
        session: Async database session
        gateways: Adapters keyed by payment method
        orders: Order repository
        payments: Payment repository
    """

    def __init__(
        self,
        session: AsyncSession,
        gateways: GatewayRegistry,
        audit: Optional[AuditSink] = None,
        notifications: Optional[OrderNotifications] = None,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.session = session
        self.gateways = gateways
        self.orders = OrderRepository(session)
        self.payments = PaymentRepository(session)
        self.audit = audit
        self.notifications = notifications
        self.state_machine = state_machine or OrderStateMachine()

    async def ensure_gateway_order(self, order: Order) -> str:
        """
        Return the order's gateway reference, creating it on first call.

        The reference is stored with a conditional update, so concurrent
        callers that both reach the gateway still converge on the first
        stored reference. A pending payment row is recorded alongside it.

        Args:
            order: Pending order using a gateway payment method

        Returns:
            Gateway order reference stored on the order

        Raises:
            StateError: If the order is not pending
            ExternalGatewayError: If the gateway call fails; the order stays
                pending and the call can be retried
        """
        if order.gateway_order_id:
            return order.gateway_order_id

        if order.status != OrderStatus.PENDING:
            raise StateError(
                "Gateway orders can only be created for pending orders",
                code="INVALID_STATE",
                order_id=str(order.id),
                status=order.status.value,
            )

        adapter = self.gateways.get(order.payment_method.value)

        with log_performance(logger, "gateway.create_order", gateway=adapter.name):
            try:
                gateway_order = await adapter.create_gateway_order(
                    amount=order.total,
                    currency=order.currency,
                    reference=str(order.id),
                    notes={"order_id": str(order.id)},
                )
            except ExternalGatewayError as e:
                logger.error(
                    "Gateway order creation failed",
                    order_id=str(order.id),
                    gateway=adapter.name,
                    error=str(e),
                )
                e.context.setdefault("order_id", str(order.id))
                raise

        try:
            stored = await self.orders.attach_gateway_order(
                order.id, gateway_order.gateway_order_id
            )
            await self.payments.create_pending(
                order_id=order.id,
                amount=order.total,
                currency=order.currency,
                gateway=adapter.name,
                gateway_order_id=stored,
            )
            await self.session.commit()
        except (OrderRepositoryError, PaymentRepositoryError) as e:
            logger.error(
                "Failed to store gateway order reference",
                order_id=str(order.id),
                error=str(e),
            )
            raise StorageError(
                "Failed to store gateway order reference",
                order_id=str(order.id),
            ) from e

        logger.info(
            "Gateway order attached",
            order_id=str(order.id),
            gateway=adapter.name,
            gateway_order_id=stored,
        )
        return stored

    async def confirm_payment(
        self,
        order_id: uuid.UUID,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """
        Confirm a client-reported payment.

        Duplicate confirmations with the same inputs are no-op successes.
        Rejections never change order or payment state.

        Args:
            order_id: Order being paid
            gateway_order_id: Gateway order reference the client paid against
            gateway_payment_id: Gateway payment reference
            signature: Client-supplied HMAC signature
            actor: Who submitted the confirmation

        Returns:
            Dictionary with order id, order status, payment id and whether the
            payment was already confirmed

        Raises:
            NotFoundError: Unknown order
            ConflictError: Gateway reference does not match the order
            SecurityError: Signature does not verify
            ExternalGatewayError: Gateway lookup failed or payment not successful
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(
                "Order not found",
                code="ORDER_NOT_FOUND",
                order_id=str(order_id),
            )

        if not order.payment_method.uses_gateway:
            raise StateError(
                "Order does not use an online payment gateway",
                code="INVALID_STATE",
                order_id=str(order_id),
                payment_method=order.payment_method.value,
            )

        if order.gateway_order_id is None or order.gateway_order_id != gateway_order_id:
            logger.warning(
                "Gateway reference mismatch on confirmation",
                order_id=str(order_id),
                stored=order.gateway_order_id,
                supplied=gateway_order_id,
            )
            raise ConflictError(
                "Gateway order reference does not match the order",
                code="GATEWAY_REFERENCE_MISMATCH",
                order_id=str(order_id),
            )

        adapter = self.gateways.get(order.payment_method.value)
        if not verify_payment_signature(
            adapter.signing_secret, gateway_order_id, gateway_payment_id, signature
        ):
            logger.warning(
                "Payment signature rejected",
                order_id=str(order_id),
                gateway=adapter.name,
            )
            raise SecurityError(
                "Payment signature verification failed",
                code="INVALID_SIGNATURE",
                order_id=str(order_id),
            )

        existing = await self.payments.get_by_order(order.id)
        if existing is not None and existing.status == PaymentStatus.COMPLETED:
            if existing.gateway_payment_id != gateway_payment_id:
                logger.warning(
                    "Order already paid with a different gateway payment",
                    order_id=str(order_id),
                    stored=existing.gateway_payment_id,
                    supplied=gateway_payment_id,
                )
            order = await self.orders.get(order.id)
            return self._result(order, existing, already_confirmed=True)

        gateway_payment = await self._fetch_successful_payment(
            adapter, order, gateway_order_id, gateway_payment_id
        )

        return await self._record_completion(
            order,
            adapter.name,
            gateway_order_id,
            gateway_payment.gateway_payment_id,
            meta={"gateway_status": gateway_payment.status.value},
            actor=actor,
        )

    async def record_captured_payment(
        self,
        gateway: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        event: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """
        Complete an order from a gateway-signed capture notification.

        Runs the same payment upsert and pending to paid transition as
        :meth:`confirm_payment`, so a buyer who never returns from the
        gateway still ends up with a paid order. Redelivered events for a
        gateway payment already recorded are no-op successes.

        Args:
            gateway: Gateway that sent the notification
            gateway_order_id: Gateway order the payment belongs to
            gateway_payment_id: Gateway payment reference
            amount: Captured amount in major units
            currency: Captured currency
            event: Gateway event name, kept in the payment metadata

        Raises:
            NotFoundError: No order carries the gateway order reference
            ConflictError: Captured amount or currency differs from the order
        """
        recorded = await self.payments.get_by_gateway_payment(gateway_payment_id)
        if recorded is not None:
            logger.info(
                "Duplicate payment notification ignored",
                gateway=gateway,
                gateway_payment_id=gateway_payment_id,
                order_id=str(recorded.order_id),
            )
            order = await self.orders.get(recorded.order_id)
            return self._result(order, recorded, already_confirmed=True)

        order = await self.orders.get_by_gateway_order(gateway_order_id)
        if order is None:
            raise NotFoundError(
                "No order for gateway order reference",
                code="ORDER_NOT_FOUND",
                gateway_order_id=gateway_order_id,
            )

        if amount != order.total or currency.upper() != order.currency:
            logger.error(
                "Captured amount does not match order, manual reconciliation required",
                order_id=str(order.id),
                order_total=str(order.total),
                captured=str(amount),
                currency=currency,
                gateway_payment_id=gateway_payment_id,
            )
            raise ConflictError(
                "Captured amount does not match the order total",
                code="PAYMENT_AMOUNT_MISMATCH",
                order_id=str(order.id),
                captured=str(amount),
                total=str(order.total),
            )

        existing = await self.payments.get_by_order(order.id)
        if existing is not None and existing.status == PaymentStatus.COMPLETED:
            logger.warning(
                "Order already paid with a different gateway payment",
                order_id=str(order.id),
                stored=existing.gateway_payment_id,
                supplied=gateway_payment_id,
            )
            return self._result(order, existing, already_confirmed=True)

        return await self._record_completion(
            order,
            gateway,
            gateway_order_id,
            gateway_payment_id,
            meta={"gateway_status": "captured", "event": event},
            actor=actor,
        )

    async def _record_completion(
        self,
        order: Order,
        gateway: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        meta: dict[str, Any],
        actor: Actor,
    ) -> dict[str, Any]:
        """Upsert the completed payment and move a pending order to paid in one commit."""
        try:
            newly_completed = await self.payments.upsert_completed(
                order_id=order.id,
                amount=order.total,
                currency=order.currency,
                gateway=gateway,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                meta=meta,
            )

            transitioned = False
            if order.status == OrderStatus.PENDING:
                plan = self.state_machine.plan(order, OrderStatus.PAID)
                transitioned = await self.orders.apply_transition(order.id, plan)

            await self.session.commit()
        except (OrderRepositoryError, PaymentRepositoryError) as e:
            logger.error(
                "Failed to record payment confirmation",
                order_id=str(order.id),
                error=str(e),
            )
            raise StorageError(
                "Failed to record payment confirmation",
                order_id=str(order.id),
            ) from e

        order = await self.orders.get(order.id)
        payment = await self.payments.get_by_order(order.id)

        if newly_completed and order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            logger.error(
                "Payment captured for a closed order, manual reconciliation required",
                order_id=str(order.id),
                order_status=order.status.value,
                gateway_payment_id=gateway_payment_id,
            )

        if newly_completed:
            logger.info(
                "Payment confirmed",
                order_id=str(order.id),
                payment_id=str(payment.id),
                gateway=gateway,
                order_transitioned=transitioned,
            )
            if self.audit is not None:
                self.audit.record(
                    actor,
                    AuditAction.PAYMENT_CONFIRM,
                    "payment",
                    payment.id,
                    {
                        "order_id": order.id,
                        "amount": payment.amount,
                        "gateway": gateway,
                        "gateway_payment_id": gateway_payment_id,
                    },
                )
            if self.notifications is not None and transitioned:
                self.notifications.send(
                    NotificationType.ORDER_PAID,
                    order.owner,
                    order_id=str(order.id),
                    total=str(order.total),
                )

        return self._result(order, payment, already_confirmed=not newly_completed)

    async def _fetch_successful_payment(
        self,
        adapter: GatewayAdapter,
        order: Order,
        gateway_order_id: str,
        gateway_payment_id: str,
    ):
        try:
            with log_performance(logger, "gateway.fetch_payment", gateway=adapter.name):
                gateway_payment = await adapter.fetch_gateway_payment(gateway_payment_id)
        except ExternalGatewayError as e:
            logger.error(
                "Gateway payment lookup failed",
                order_id=str(order.id),
                gateway=adapter.name,
                error=str(e),
            )
            raise

        if not gateway_payment.status.is_success:
            logger.warning(
                "Gateway reports payment not successful",
                order_id=str(order.id),
                gateway_status=gateway_payment.status.value,
            )
            raise ExternalGatewayError(
                "Payment has not been captured or authorized",
                code="PAYMENT_NOT_SUCCESSFUL",
                order_id=str(order.id),
                gateway_status=gateway_payment.status.value,
            )

        if (
            gateway_payment.gateway_order_id is not None
            and gateway_payment.gateway_order_id != gateway_order_id
        ):
            raise ConflictError(
                "Gateway payment belongs to a different gateway order",
                code="GATEWAY_REFERENCE_MISMATCH",
                order_id=str(order.id),
            )

        return gateway_payment

    async def get_payment(self, order_id: uuid.UUID) -> Payment:
        payment = await self.payments.get_by_order(order_id)
        if payment is None:
            raise NotFoundError(
                "Payment not found",
                code="PAYMENT_NOT_FOUND",
                order_id=str(order_id),
            )
        return payment

    @staticmethod
    def _result(order: Order, payment: Payment, already_confirmed: bool) -> dict[str, Any]:
        return {
            "order_id": str(order.id),
            "order_status": order.status.value,
            "payment_id": str(payment.id),
            "payment_status": payment.status.value,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "already_confirmed": already_confirmed,
        }
