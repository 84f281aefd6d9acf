"""
Tests for payment confirmation and gateway order creation.

Confirmations are verified against the in-memory gateway: the signature is an
HMAC over ``gateway_order_id|gateway_payment_id`` with the gateway secret.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from helpers import create_order, days_ago, load_order, sign
from storefront.core.errors import (
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    SecurityError,
    StateError,
)
from storefront.database.models import AuditLogEntry, OrderStatus, PaymentMethod, PaymentStatus
from storefront.services.audit.sink import Actor, ActorType, AuditSink
from storefront.services.notifications.notifier import NotificationType
from storefront.services.orders.service import OrderService
from storefront.services.payments.gateway import GatewayPaymentStatus
from storefront.services.payments.repository import PaymentRepository
from storefront.services.payments.service import PaymentService

BUYER = Actor(actor_id="buyer-1", actor_type=ActorType.BUYER)


@pytest.fixture
def payment_service(db_session, gateways, session_factory, dispatcher, notifications):
    audit = AuditSink(session_factory=session_factory, dispatcher=dispatcher)
    return PaymentService(db_session, gateways, audit=audit, notifications=notifications)


async def _awaiting_payment(session_factory, gateway_order_id: str = "order_1") -> uuid.UUID:
    """Pending order with a gateway reference and a pending payment."""
    order_id = await create_order(session_factory, gateway_order_id=gateway_order_id)
    async with session_factory() as session:
        await PaymentRepository(session).create_pending(
            order_id=order_id,
            amount=Decimal("1180.00"),
            currency="INR",
            gateway="razorpay",
            gateway_order_id=gateway_order_id,
        )
        await session.commit()
    return order_id


async def _payment(session_factory, order_id):
    async with session_factory() as session:
        return await PaymentRepository(session).get_by_order(order_id)


# ============================================================================
# Confirmation Tests
# ============================================================================


class TestConfirmPayment:
    """Tests for PaymentService.confirm_payment."""

    async def test_confirm_marks_order_paid(
        self, payment_service, session_factory, dispatcher, recording_notifier
    ):
        order_id = await _awaiting_payment(session_factory)

        result = await payment_service.confirm_payment(
            order_id, "order_1", "pay_1", sign("order_1", "pay_1"), actor=BUYER
        )

        assert result["order_status"] == "paid"
        assert result["payment_status"] == "completed"
        assert result["amount"] == "1180.00"
        assert result["already_confirmed"] is False

        payment = await _payment(session_factory, order_id)
        assert payment.gateway_payment_id == "pay_1"
        assert payment.status == PaymentStatus.COMPLETED

        await dispatcher.drain()
        assert recording_notifier.types() == [NotificationType.ORDER_PAID]
        async with session_factory() as session:
            actions = (await session.execute(select(AuditLogEntry.action))).scalars().all()
        assert actions == ["payment.confirm"]

    async def test_duplicate_confirmation_is_noop_success(
        self, payment_service, session_factory, dispatcher, recording_notifier
    ):
        order_id = await _awaiting_payment(session_factory)
        signature = sign("order_1", "pay_1")

        first = await payment_service.confirm_payment(order_id, "order_1", "pay_1", signature)
        second = await payment_service.confirm_payment(order_id, "order_1", "pay_1", signature)

        assert first["already_confirmed"] is False
        assert second["already_confirmed"] is True
        assert second["payment_id"] == first["payment_id"]
        assert second["order_status"] == "paid"

        await dispatcher.drain()
        assert recording_notifier.types() == [NotificationType.ORDER_PAID]

    async def test_concurrent_confirmations_complete_once(
        self, gateways, session_factory
    ):
        order_id = await _awaiting_payment(session_factory)
        signature = sign("order_1", "pay_1")

        async def confirm():
            async with session_factory() as session:
                return await PaymentService(session, gateways).confirm_payment(
                    order_id, "order_1", "pay_1", signature
                )

        results = await asyncio.gather(confirm(), confirm(), confirm())

        assert sorted(result["already_confirmed"] for result in results) == [False, True, True]
        assert all(result["order_status"] == "paid" for result in results)

    async def test_invalid_signature_changes_nothing(self, payment_service, session_factory):
        order_id = await _awaiting_payment(session_factory)

        with pytest.raises(SecurityError) as exc_info:
            await payment_service.confirm_payment(order_id, "order_1", "pay_1", "deadbeef")

        assert exc_info.value.code == "INVALID_SIGNATURE"
        assert (await load_order(session_factory, order_id)).status == OrderStatus.PENDING
        assert (await _payment(session_factory, order_id)).status == PaymentStatus.PENDING

    async def test_signature_for_other_payment_rejected(self, payment_service, session_factory):
        order_id = await _awaiting_payment(session_factory)

        with pytest.raises(SecurityError):
            await payment_service.confirm_payment(
                order_id, "order_1", "pay_2", sign("order_1", "pay_1")
            )

    async def test_gateway_reference_mismatch(self, payment_service, session_factory):
        order_id = await _awaiting_payment(session_factory)

        with pytest.raises(ConflictError) as exc_info:
            await payment_service.confirm_payment(
                order_id, "order_other", "pay_1", sign("order_other", "pay_1")
            )

        assert exc_info.value.code == "GATEWAY_REFERENCE_MISMATCH"

    async def test_order_without_gateway_reference(self, payment_service, session_factory):
        order_id = await create_order(session_factory)

        with pytest.raises(ConflictError):
            await payment_service.confirm_payment(
                order_id, "order_1", "pay_1", sign("order_1", "pay_1")
            )

    async def test_payment_not_successful_at_gateway(
        self, payment_service, session_factory, fake_gateway
    ):
        order_id = await _awaiting_payment(session_factory)
        fake_gateway.payment_status = GatewayPaymentStatus.FAILED

        with pytest.raises(ExternalGatewayError) as exc_info:
            await payment_service.confirm_payment(
                order_id, "order_1", "pay_1", sign("order_1", "pay_1")
            )

        assert exc_info.value.code == "PAYMENT_NOT_SUCCESSFUL"
        assert (await load_order(session_factory, order_id)).status == OrderStatus.PENDING

    async def test_authorized_payment_is_accepted(
        self, payment_service, session_factory, fake_gateway
    ):
        order_id = await _awaiting_payment(session_factory)
        fake_gateway.payment_status = GatewayPaymentStatus.AUTHORIZED

        result = await payment_service.confirm_payment(
            order_id, "order_1", "pay_1", sign("order_1", "pay_1")
        )

        assert result["order_status"] == "paid"

    async def test_unknown_order(self, payment_service):
        with pytest.raises(NotFoundError):
            await payment_service.confirm_payment(uuid.uuid4(), "order_1", "pay_1", "sig")

    async def test_cash_on_delivery_order_rejected(self, payment_service, session_factory):
        order_id = await create_order(session_factory, payment_method=PaymentMethod.COD)

        with pytest.raises(StateError):
            await payment_service.confirm_payment(order_id, "order_1", "pay_1", "sig")

    async def test_payment_after_cancellation_is_recorded(
        self, payment_service, session_factory
    ):
        """Money captured for a cancelled order is kept on record for reconciliation."""
        order_id = await _awaiting_payment(session_factory)
        async with session_factory() as session:
            await OrderService(session).cancel_order(order_id)

        result = await payment_service.confirm_payment(
            order_id, "order_1", "pay_1", sign("order_1", "pay_1")
        )

        assert result["order_status"] == "cancelled"
        assert result["payment_status"] == "completed"


# ============================================================================
# Capture Notification Tests
# ============================================================================


class TestRecordCapturedPayment:
    """Tests for PaymentService.record_captured_payment."""

    async def _capture(self, service, gateway_payment_id="pay_1", **overrides):
        values = {
            "gateway": "razorpay",
            "gateway_order_id": "order_1",
            "gateway_payment_id": gateway_payment_id,
            "amount": Decimal("1180.00"),
            "currency": "INR",
            "event": "payment.captured",
        }
        values.update(overrides)
        return await service.record_captured_payment(**values)

    async def test_capture_marks_order_paid(
        self, payment_service, session_factory, dispatcher, recording_notifier
    ):
        order_id = await _awaiting_payment(session_factory)

        result = await self._capture(payment_service)

        assert result["order_id"] == str(order_id)
        assert result["order_status"] == "paid"
        assert result["already_confirmed"] is False
        payment = await _payment(session_factory, order_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.gateway_payment_id == "pay_1"
        assert payment.meta["event"] == "payment.captured"

        await dispatcher.drain()
        assert recording_notifier.types() == [NotificationType.ORDER_PAID]

    async def test_redelivered_event_is_noop(
        self, payment_service, session_factory, dispatcher, recording_notifier
    ):
        await _awaiting_payment(session_factory)

        first = await self._capture(payment_service)
        second = await self._capture(payment_service)

        assert second["already_confirmed"] is True
        assert second["payment_id"] == first["payment_id"]
        await dispatcher.drain()
        assert recording_notifier.types() == [NotificationType.ORDER_PAID]

    async def test_capture_after_client_confirmation_is_noop(
        self, payment_service, session_factory
    ):
        order_id = await _awaiting_payment(session_factory)
        await payment_service.confirm_payment(
            order_id, "order_1", "pay_1", sign("order_1", "pay_1")
        )

        result = await self._capture(payment_service)

        assert result["already_confirmed"] is True
        assert result["order_status"] == "paid"

    async def test_second_gateway_payment_keeps_first(self, payment_service, session_factory):
        order_id = await _awaiting_payment(session_factory)
        await self._capture(payment_service)

        result = await self._capture(payment_service, gateway_payment_id="pay_2")

        assert result["already_confirmed"] is True
        assert (await _payment(session_factory, order_id)).gateway_payment_id == "pay_1"

    async def test_concurrent_deliveries_complete_once(self, gateways, session_factory):
        await _awaiting_payment(session_factory)

        async def deliver():
            async with session_factory() as session:
                return await self._capture(PaymentService(session, gateways))

        results = await asyncio.gather(deliver(), deliver())

        assert sorted(result["already_confirmed"] for result in results) == [False, True]

    async def test_unknown_gateway_order(self, payment_service, session_factory):
        await _awaiting_payment(session_factory)

        with pytest.raises(NotFoundError):
            await self._capture(payment_service, gateway_order_id="order_other")

    async def test_amount_mismatch_changes_nothing(self, payment_service, session_factory):
        order_id = await _awaiting_payment(session_factory)

        with pytest.raises(ConflictError) as exc_info:
            await self._capture(payment_service, amount=Decimal("1.00"))

        assert exc_info.value.code == "PAYMENT_AMOUNT_MISMATCH"
        assert (await load_order(session_factory, order_id)).status == OrderStatus.PENDING
        assert (await _payment(session_factory, order_id)).status == PaymentStatus.PENDING

    async def test_paid_order_is_not_expired(self, payment_service, session_factory, settings):
        order_id = await create_order(
            session_factory, gateway_order_id="order_1", placed_at=days_ago(1)
        )
        await self._capture(payment_service)

        async with session_factory() as session:
            expired = await OrderService(session, settings=settings).expire_stale_orders()

        assert expired == 0
        assert (await load_order(session_factory, order_id)).status == OrderStatus.PAID


# ============================================================================
# Gateway Order Tests
# ============================================================================


class TestEnsureGatewayOrder:
    """Tests for PaymentService.ensure_gateway_order."""

    async def test_creates_reference_once(self, payment_service, session_factory, fake_gateway):
        order_id = await create_order(session_factory)
        order = await payment_service.orders.get(order_id)

        first = await payment_service.ensure_gateway_order(order)
        order = await payment_service.orders.get(order_id)
        second = await payment_service.ensure_gateway_order(order)

        assert first == second == "order_1"
        assert len(fake_gateway.created_orders) == 1
        payment = await _payment(session_factory, order_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.gateway_order_id == "order_1"

    async def test_concurrent_callers_converge_on_first_reference(
        self, gateways, session_factory, fake_gateway
    ):
        order_id = await create_order(session_factory)

        async def ensure():
            async with session_factory() as session:
                service = PaymentService(session, gateways)
                order = await service.orders.get(order_id)
                return await service.ensure_gateway_order(order)

        references = await asyncio.gather(ensure(), ensure())

        stored = (await load_order(session_factory, order_id)).gateway_order_id
        assert references == [stored, stored]

    async def test_non_pending_order_rejected(self, payment_service, session_factory):
        order_id = await create_order(session_factory)
        async with session_factory() as session:
            await OrderService(session).cancel_order(order_id)
        order = await payment_service.orders.get(order_id)

        with pytest.raises(StateError):
            await payment_service.ensure_gateway_order(order)
