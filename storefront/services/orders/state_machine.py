"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine, which validates an order status
change and plans its side effects. It does not write anything itself: the plan
it returns (allowed source statuses plus column values) is applied by the
repository as one conditional UPDATE, so a transition either happens exactly
once or not at all under concurrent requests.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from storefront.core.errors import StateError
from storefront.core.logging import get_logger
from storefront.database.base import utcnow
from storefront.database.models.order import Order, OrderStatus
from storefront.services.orders.enums import (
    get_allowed_order_transitions,
    order_sources_for,
    validate_order_status_transition,
)

logger = get_logger(__name__)

# Targets an operator may request directly. REFUNDED is reached only through
# refund settlement; PAID is manual only for cash on delivery.
MANUAL_TARGETS = frozenset(
    {
        OrderStatus.PAID,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }
)


class StateTransitionError(StateError):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any,
    ):
        super().__init__(
            message,
            code="INVALID_TRANSITION",
            current_state=current_state.value,
            target_state=target_state.value,
            **context,
        )
        self.current_state = current_state
        self.target_state = target_state


@dataclass
class TransitionPlan:
    """Conditional update describing one order status change.

    Attributes:
        target: Status to move to
        allowed_from: Statuses the stored row must be in for the update to apply
        values: Extra column values written with the status
        restores_inventory: Whether line items go back to stock on success
    """

    target: OrderStatus
    allowed_from: Set[OrderStatus]
    values: Dict[str, Any] = field(default_factory=dict)
    restores_inventory: bool = False


class OrderStateMachine:
    """State machine for order lifecycle transitions.

    Guards reject transitions that the transition table allows but the order
    data does not support; side effects contribute column values to the plan.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._transition_guards: Dict[
            tuple[OrderStatus, OrderStatus],
            Callable[[Order, bool], bool],
        ] = {
            (OrderStatus.PENDING, OrderStatus.PAID): self._guard_payment_confirmed,
        }
        self._side_effects: Dict[
            OrderStatus,
            Callable[[Order, Optional[str]], Dict[str, Any]],
        ] = {
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        manual: bool = False,
    ) -> None:
        """Validate that ``order`` may move to ``target_status``.

        Args:
            order: Order in its current state
            target_status: Desired status
            manual: True when requested by an operator

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        current = order.status

        if manual and target_status not in MANUAL_TARGETS:
            raise StateTransitionError(
                f"Status {target_status.value} cannot be set manually",
                current_state=current,
                target_state=target_status,
                order_id=str(order.id),
            )

        if not validate_order_status_transition(current, target_status):
            allowed = sorted(s.value for s in get_allowed_order_transitions(current))
            raise StateTransitionError(
                f"Cannot transition order from {current.value} to {target_status.value}",
                current_state=current,
                target_state=target_status,
                order_id=str(order.id),
                allowed=",".join(allowed),
            )

        guard = self._transition_guards.get((current, target_status))
        if guard is not None and not guard(order, manual):
            raise StateTransitionError(
                f"Guard rejected transition from {current.value} to {target_status.value}",
                current_state=current,
                target_state=target_status,
                order_id=str(order.id),
            )

    def plan(
        self,
        order: Order,
        target_status: OrderStatus,
        reason: Optional[str] = None,
        manual: bool = False,
    ) -> TransitionPlan:
        """Validate a transition and build its conditional update.

        Args:
            order: Order in its current state
            target_status: Desired status
            reason: Optional reason recorded with cancellations
            manual: True when requested by an operator

        Returns:
            TransitionPlan to apply through the repository
        """
        self.validate_transition(order, target_status, manual=manual)

        effect = self._side_effects.get(target_status)
        values = effect(order, reason) if effect else {}

        plan = TransitionPlan(
            target=target_status,
            allowed_from=order_sources_for(target_status),
            values=values,
            restores_inventory=target_status == OrderStatus.CANCELLED,
        )

        logger.debug(
            "Order transition planned",
            order_id=str(order.id),
            from_status=order.status.value,
            to_status=target_status.value,
        )
        return plan

    def _guard_payment_confirmed(self, order: Order, manual: bool) -> bool:
        if manual:
            return not order.payment_method.uses_gateway
        return order.gateway_order_id is not None or not order.payment_method.uses_gateway

    def _effect_delivered(self, order: Order, reason: Optional[str]) -> Dict[str, Any]:
        return {"delivered_at": self._clock()}

    def _effect_cancelled(self, order: Order, reason: Optional[str]) -> Dict[str, Any]:
        return {
            "cancelled_at": self._clock(),
            "cancellation_reason": reason,
        }
