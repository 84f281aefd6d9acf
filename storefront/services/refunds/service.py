"""
Refund manager.

This module implements the RefundManager, which validates and records refunds
against a completed payment and drives their settlement:

* creation checks the refund window, the payment status and the cumulative
  refund bound while holding a row lock on the payment, then inserts through
  the partial unique index so duplicate requests collide in storage
* settlement moves a refund requested|failed -> processing -> succeeded|failed
  and calls the gateway with the refund id as idempotency key
* a succeeded refund that brings the refunded total up to the payment amount
  moves the order to refunded and returns its stock, exactly once
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.errors import (
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    StateError,
    StorageError,
    ValidationError,
)
from storefront.core.logging import get_logger, log_performance
from storefront.database.base import as_utc, utcnow
from storefront.database.models.order import Order, OrderStatus
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.database.models.refund import Refund, RefundStatus
from storefront.services.audit.sink import SYSTEM_ACTOR, Actor, AuditAction, AuditSink
from storefront.services.inventory.ledger import InventoryLedger
from storefront.services.notifications.notifier import NotificationType, OrderNotifications
from storefront.services.orders.enums import order_sources_for, refund_sources_for
from storefront.services.orders.pricing import quantize_money
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.orders.service import restore_order_inventory
from storefront.services.payments.gateway import GatewayRegistry
from storefront.services.payments.repository import PaymentRepository
from storefront.services.refunds.repository import (
    RefundConflictError,
    RefundRepository,
    RefundRepositoryError,
)
from storefront.services.refunds.settlement import SettlementQueue

logger = get_logger(__name__)

MANUAL_OUTCOMES = (RefundStatus.SUCCEEDED, RefundStatus.FAILED)


def format_refund(refund: Refund) -> dict[str, Any]:
    return {
        "id": str(refund.id),
        "payment_id": str(refund.payment_id),
        "order_id": str(refund.order_id),
        "amount": str(refund.amount),
        "currency": refund.currency,
        "status": refund.status.value,
        "reason": refund.reason,
        "initiated_by": refund.initiated_by,
        "gateway_refund_id": refund.gateway_refund_id,
        "attempts": refund.attempts,
        "created_at": refund.created_at.isoformat() if refund.created_at else None,
        "updated_at": refund.updated_at.isoformat() if refund.updated_at else None,
    }


def refund_window_reference(order: Order) -> datetime:
    """Delivery time, falling back to placement (or creation) time."""
    return as_utc(order.delivered_at or order.placed_at or order.created_at)


class RefundManager:
    """
    Validates, records and settles refunds.

    Attributes:
        session: Async database session
        gateways: Gateway adapters keyed by name
        settings: Refund window and settlement settings
        clock: Current time provider
    """

    def __init__(
        self,
        session: AsyncSession,
        gateways: GatewayRegistry,
        settings: Optional[Settings] = None,
        audit: Optional[AuditSink] = None,
        notifications: Optional[OrderNotifications] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.gateways = gateways
        self.settings = settings or get_settings()
        self.audit = audit
        self.notifications = notifications
        self.clock = clock or utcnow
        self.orders = OrderRepository(session)
        self.payments = PaymentRepository(session)
        self.refunds = RefundRepository(session)
        self.queue = SettlementQueue(session)
        self.ledger = InventoryLedger(session)

    async def create_refund(
        self,
        order_id: uuid.UUID,
        reason: str,
        amount: Optional[Decimal] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Refund:
        """
        Record a refund for an order's completed payment.

        Args:
            order_id: Order to refund
            reason: Why the refund is issued
            amount: Amount to refund; defaults to the full payment amount
            actor: Admin requesting the refund

        Returns:
            The new refund in ``requested`` state

        Raises:
            ValidationError: Empty reason or non-positive amount
            NotFoundError: Unknown order, or the order has no payment
            StateError: REFUND_WINDOW_EXPIRED, PAYMENT_NOT_COMPLETED or
                REFUND_AMOUNT_EXCEEDED
            ConflictError: DUPLICATE_REFUND, carrying the existing refund
        """
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required", code="REASON_REQUIRED")
        if amount is not None and amount <= 0:
            raise ValidationError(
                "Refund amount must be positive",
                code="INVALID_REFUND_AMOUNT",
                amount=str(amount),
            )

        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(
                "Order not found",
                code="ORDER_NOT_FOUND",
                order_id=str(order_id),
            )

        self._check_window(order)

        payment = await self.payments.get_by_order(order.id, for_update=True)
        if payment is None:
            raise NotFoundError(
                "Payment not found",
                code="PAYMENT_NOT_FOUND",
                order_id=str(order_id),
            )
        if payment.status != PaymentStatus.COMPLETED:
            raise StateError(
                "Payment is not completed",
                code="PAYMENT_NOT_COMPLETED",
                order_id=str(order_id),
                payment_status=payment.status.value,
            )

        refund_amount = quantize_money(amount if amount is not None else payment.amount)

        try:
            refunded = await self.refunds.sum_amounts(payment.id)
            if refunded + refund_amount > payment.amount:
                raise StateError(
                    "Refund would exceed the payment amount",
                    code="REFUND_AMOUNT_EXCEEDED",
                    order_id=str(order_id),
                    payment_amount=str(payment.amount),
                    already_refunded=str(refunded),
                    requested=str(refund_amount),
                )

            refund = await self.refunds.insert_if_absent(
                payment_id=payment.id,
                order_id=order.id,
                amount=refund_amount,
                currency=payment.currency,
                initiated_by=actor.actor_id or "system",
                reason=reason.strip(),
            )
            if refund is None:
                existing = await self.refunds.find_active(payment.id, refund_amount)
                logger.info(
                    "Duplicate refund request",
                    order_id=str(order_id),
                    amount=str(refund_amount),
                    existing_refund_id=str(existing.id) if existing else None,
                )
                raise ConflictError(
                    "A refund for this amount already exists",
                    code="DUPLICATE_REFUND",
                    existing=existing,
                    order_id=str(order_id),
                    refund_id=str(existing.id) if existing else None,
                )

            queued = False
            if self._auto_settles(payment):
                queued = await self.queue.enqueue(
                    refund.id, max_attempts=self.settings.settlement_max_attempts
                )
            await self.session.commit()
        except RefundRepositoryError as e:
            raise StorageError(
                "Failed to record refund",
                order_id=str(order_id),
            ) from e

        logger.info(
            "Refund created",
            refund_id=str(refund.id),
            order_id=str(order_id),
            amount=str(refund_amount),
            settlement_queued=queued,
        )
        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.REFUND_CREATE,
                "refund",
                refund.id,
                {
                    "order_id": order.id,
                    "payment_id": payment.id,
                    "amount": refund_amount,
                    "reason": refund.reason,
                    "settlement_queued": queued,
                },
            )
        return refund

    def _check_window(self, order: Order) -> None:
        elapsed = self.clock() - refund_window_reference(order)
        if elapsed > timedelta(days=self.settings.refund_window_days):
            raise StateError(
                "Refund window has expired",
                code="REFUND_WINDOW_EXPIRED",
                order_id=str(order.id),
                elapsed_days=round(elapsed.total_seconds() / 86400, 2),
                window_days=self.settings.refund_window_days,
            )

    async def _check_reactivation(self, refund: Refund) -> None:
        """
        Re-validate a failed refund before it is settled again.

        Failed refunds do not count toward the payment's refund total, so
        other refunds may have been created against that amount since.

        Raises:
            ConflictError: DUPLICATE_REFUND if an active refund now holds the
                same amount
            StateError: REFUND_AMOUNT_EXCEEDED if reviving it would push
                active refunds past the payment amount
        """
        payment = await self.payments.get(refund.payment_id, for_update=True)

        duplicate = await self.refunds.find_active(payment.id, refund.amount)
        if duplicate is not None:
            raise ConflictError(
                "An active refund for this amount already exists",
                code="DUPLICATE_REFUND",
                existing=duplicate,
                refund_id=str(refund.id),
                existing_refund_id=str(duplicate.id),
            )

        refunded = await self.refunds.sum_amounts(payment.id)
        if refunded + refund.amount > payment.amount:
            logger.warning(
                "Failed refund cannot be revived within payment amount",
                refund_id=str(refund.id),
                payment_amount=str(payment.amount),
                already_refunded=str(refunded),
            )
            raise StateError(
                "Refund would exceed the payment amount",
                code="REFUND_AMOUNT_EXCEEDED",
                refund_id=str(refund.id),
                payment_amount=str(payment.amount),
                already_refunded=str(refunded),
                requested=str(refund.amount),
            )

    def _auto_settles(self, payment: Payment) -> bool:
        if not self.settings.auto_settle_refunds or not self.gateways.has(payment.gateway):
            return False
        return self.gateways.get(payment.gateway).supports_refunds

    async def settle(self, refund_id: uuid.UUID) -> Refund:
        """
        Settle a refund at the gateway.

        A succeeded refund is returned unchanged. A refund left in processing
        longer than ``settlement_stale_after_seconds`` (a settlement that died
        mid-flight) is resumed; the gateway call reuses the same idempotency
        key, so money moves at most once.

        Raises:
            NotFoundError: Unknown refund
            StateError: REFUND_IN_PROGRESS if another settlement is still
                running; REFUND_AMOUNT_EXCEEDED if a failed refund no longer
                fits within the payment amount
            ConflictError: DUPLICATE_REFUND if a failed refund's amount is now
                held by another active refund
            ExternalGatewayError: Gateway call failed; the refund is recorded
                as failed before raising so it can be retried
        """
        refund = await self._load(refund_id)
        sources = refund_sources_for(RefundStatus.PROCESSING)
        stale_before: Optional[datetime] = None

        if refund.status == RefundStatus.PROCESSING:
            stale_before = self.clock() - timedelta(
                seconds=self.settings.settlement_stale_after_seconds
            )
            if as_utc(refund.updated_at) >= stale_before:
                raise StateError(
                    "Refund settlement already in progress",
                    code="REFUND_IN_PROGRESS",
                    refund_id=str(refund_id),
                )
            logger.warning(
                "Resuming refund abandoned in processing",
                refund_id=str(refund_id),
                attempts=refund.attempts,
            )
            sources = {RefundStatus.PROCESSING}
        elif not refund.status.is_settleable:
            logger.info(
                "Refund not settleable, skipping",
                refund_id=str(refund_id),
                status=refund.status.value,
            )
            return refund

        if refund.status == RefundStatus.FAILED:
            await self._check_reactivation(refund)

        try:
            claimed = await self.refunds.transition(
                refund_id,
                RefundStatus.PROCESSING,
                sources,
                updated_before=stale_before,
            )
            await self.session.commit()
        except RefundConflictError as e:
            raise ConflictError(
                "An active refund for this amount already exists",
                code="DUPLICATE_REFUND",
                refund_id=str(refund_id),
            ) from e
        if not claimed:
            return await self._load(refund_id)

        payment = await self.payments.get(refund.payment_id)
        try:
            adapter = self.gateways.get(payment.gateway)
            if not adapter.supports_refunds or not payment.gateway_payment_id:
                raise ExternalGatewayError(
                    "Payment cannot be refunded through its gateway",
                    code="GATEWAY_REFUND_UNSUPPORTED",
                    gateway=payment.gateway,
                )
            with log_performance(logger, "gateway.create_refund", gateway=adapter.name):
                gateway_refund = await adapter.create_refund(
                    gateway_payment_id=payment.gateway_payment_id,
                    amount=refund.amount,
                    currency=refund.currency,
                    idempotency_key=f"refund_{refund.id}",
                    notes={"order_id": str(refund.order_id), "refund_id": str(refund.id)},
                )
        except ExternalGatewayError as e:
            await self.refunds.transition(
                refund.id,
                RefundStatus.FAILED,
                {RefundStatus.PROCESSING},
                gateway_response={"error": e.message, "code": e.code},
            )
            await self.session.commit()
            logger.warning(
                "Refund settlement failed",
                refund_id=str(refund_id),
                error=e.message,
                code=e.code,
            )
            self._audit_settlement(SYSTEM_ACTOR, refund, RefundStatus.FAILED, {"error": e.message})
            raise

        await self._mark_succeeded(
            refund,
            gateway_refund_id=gateway_refund.gateway_refund_id,
            gateway_response=dict(gateway_refund.raw),
            allowed_from={RefundStatus.PROCESSING},
        )
        self._audit_settlement(
            SYSTEM_ACTOR,
            refund,
            RefundStatus.SUCCEEDED,
            {"gateway_refund_id": gateway_refund.gateway_refund_id},
        )
        return await self._load(refund_id)

    async def retry_settlement(self, refund_id: uuid.UUID, actor: Actor = SYSTEM_ACTOR) -> Refund:
        """
        Queue settlement again for a requested or failed refund.

        Raises:
            NotFoundError: Unknown refund
            StateError: Refund already processing or succeeded, or a failed
                refund no longer fits within the payment amount
            ConflictError: DUPLICATE_REFUND if a failed refund's amount is now
                held by another active refund
        """
        refund = await self._load(refund_id)
        if not refund.status.is_settleable:
            raise StateError(
                f"Refund in status {refund.status.value} cannot be settled",
                code="INVALID_STATE",
                refund_id=str(refund_id),
                status=refund.status.value,
            )
        if refund.status == RefundStatus.FAILED:
            await self._check_reactivation(refund)

        queued = await self.queue.enqueue(
            refund.id, max_attempts=self.settings.settlement_max_attempts
        )
        await self.session.commit()

        logger.info("Refund settlement re-queued", refund_id=str(refund_id), queued=queued)
        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.REFUND_SETTLE,
                "refund",
                refund.id,
                {"requeued": queued},
            )
        return refund

    async def confirm_manually(
        self,
        refund_id: uuid.UUID,
        outcome: RefundStatus,
        actor: Actor = SYSTEM_ACTOR,
        gateway_refund_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Refund:
        """
        Record a settlement outcome reached outside the gateway integration.

        Raises:
            ValidationError: Outcome is not succeeded or failed
            NotFoundError: Unknown refund
            StateError: Refund already succeeded
        """
        if outcome not in MANUAL_OUTCOMES:
            raise ValidationError(
                "Outcome must be succeeded or failed",
                code="INVALID_OUTCOME",
                outcome=outcome.value,
            )

        refund = await self._load(refund_id)
        response = {"manual": True, "note": note, "by": actor.actor_id}

        if outcome == RefundStatus.SUCCEEDED:
            applied = await self._mark_succeeded(
                refund,
                gateway_refund_id=gateway_refund_id,
                gateway_response=response,
                allowed_from=refund_sources_for(RefundStatus.SUCCEEDED),
            )
        else:
            applied = await self.refunds.transition(
                refund.id,
                RefundStatus.FAILED,
                refund_sources_for(RefundStatus.FAILED),
                gateway_response=response,
            )
            await self.session.commit()

        if not applied:
            refund = await self._load(refund_id)
            raise StateError(
                f"Refund in status {refund.status.value} cannot be marked {outcome.value}",
                code="INVALID_TRANSITION",
                refund_id=str(refund_id),
                status=refund.status.value,
            )

        if self.audit is not None:
            self.audit.record(
                actor,
                AuditAction.REFUND_MANUAL,
                "refund",
                refund.id,
                {"outcome": outcome, "gateway_refund_id": gateway_refund_id, "note": note},
            )
        return await self._load(refund_id)

    async def list_refunds(
        self,
        order_id: Optional[uuid.UUID] = None,
        status: Optional[RefundStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Refund]:
        return await self.refunds.list_refunds(
            order_id=order_id, status=status, limit=limit, offset=offset
        )

    async def get_refund(self, refund_id: uuid.UUID) -> Refund:
        return await self._load(refund_id)

    async def _load(self, refund_id: uuid.UUID) -> Refund:
        refund = await self.refunds.get(refund_id)
        if refund is None:
            raise NotFoundError(
                "Refund not found",
                code="REFUND_NOT_FOUND",
                refund_id=str(refund_id),
            )
        return refund

    async def _mark_succeeded(
        self,
        refund: Refund,
        gateway_refund_id: Optional[str],
        gateway_response: dict[str, Any],
        allowed_from: set[RefundStatus],
    ) -> bool:
        """
        Mark a refund succeeded and apply full-refund effects.

        The refund update and the order transition commit together; stock is
        restored only when this call moved the order to refunded.
        """
        try:
            applied = await self.refunds.transition(
                refund.id,
                RefundStatus.SUCCEEDED,
                allowed_from,
                gateway_refund_id=gateway_refund_id,
                gateway_response=gateway_response,
            )
            order_refunded = False
            if applied:
                order_refunded = await self._refund_order_if_complete(refund)
            await self.session.commit()
        except (RefundRepositoryError, OrderRepositoryError) as e:
            raise StorageError(
                "Failed to record refund outcome",
                refund_id=str(refund.id),
            ) from e

        if not applied:
            return False

        logger.info(
            "Refund succeeded",
            refund_id=str(refund.id),
            order_id=str(refund.order_id),
            amount=str(refund.amount),
            order_refunded=order_refunded,
        )

        if order_refunded:
            order = await self.orders.get(refund.order_id)
            await restore_order_inventory(self.ledger, order)
            if self.notifications is not None:
                self.notifications.send(
                    NotificationType.ORDER_REFUNDED,
                    order.owner,
                    order_id=str(order.id),
                    amount=str(refund.amount),
                )
        return True

    async def _refund_order_if_complete(self, refund: Refund) -> bool:
        payment = await self.payments.get(refund.payment_id)
        succeeded = await self.refunds.sum_amounts(
            payment.id, statuses={RefundStatus.SUCCEEDED}
        )
        if succeeded < payment.amount:
            return False
        return await self.orders.transition(
            refund.order_id,
            OrderStatus.REFUNDED,
            order_sources_for(OrderStatus.REFUNDED),
        )

    def _audit_settlement(
        self,
        actor: Actor,
        refund: Refund,
        outcome: RefundStatus,
        extra: dict[str, Any],
    ) -> None:
        if self.audit is None:
            return
        self.audit.record(
            actor,
            AuditAction.REFUND_SETTLE,
            "refund",
            refund.id,
            {"outcome": outcome, "amount": refund.amount, **extra},
        )
