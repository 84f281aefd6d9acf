"""Order and refund status transition tables.

This module defines which status changes are legal. The tables are consumed
both for validation and to build the ``WHERE status IN (...)`` guard of the
conditional UPDATE that performs a transition, so the database row is only
changed if it is still in an allowed source state.
"""

from typing import Dict, Set

from storefront.database.models.order import OrderStatus
from storefront.database.models.refund import RefundStatus

# Fulfillment transitions an operator may request
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAID: {
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.DELIVERED: {
        OrderStatus.REFUNDED,
    },
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

REFUND_STATUS_TRANSITIONS: Dict[RefundStatus, Set[RefundStatus]] = {
    RefundStatus.REQUESTED: {
        RefundStatus.PROCESSING,
        RefundStatus.SUCCEEDED,
        RefundStatus.FAILED,
    },
    RefundStatus.PROCESSING: {
        RefundStatus.SUCCEEDED,
        RefundStatus.FAILED,
    },
    RefundStatus.FAILED: {
        RefundStatus.PROCESSING,
    },
    RefundStatus.SUCCEEDED: set(),  # Terminal
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def validate_refund_status_transition(
    current: RefundStatus,
    new: RefundStatus
) -> bool:
    """Validate if refund status transition is allowed."""
    return new in REFUND_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(
    current: OrderStatus
) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status.

    Args:
        current: Current order status

    Returns:
        Set of allowed next statuses
    """
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


def order_sources_for(target: OrderStatus) -> Set[OrderStatus]:
    """Statuses from which ``target`` can be reached in one step.

    Args:
        target: Desired order status

    Returns:
        Set of source statuses, empty for unreachable targets
    """
    return {
        source
        for source, targets in ORDER_STATUS_TRANSITIONS.items()
        if target in targets
    }


def refund_sources_for(target: RefundStatus) -> Set[RefundStatus]:
    """Statuses from which a refund can move to ``target``."""
    return {
        source
        for source, targets in REFUND_STATUS_TRANSITIONS.items()
        if target in targets
    }
