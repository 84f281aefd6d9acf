"""
Domain error taxonomy for the order lifecycle and settlement engine.

Every error carries a stable machine-readable ``code`` and structured
``context`` so that API handlers can map it to a response and callers can
branch on it without parsing messages.
"""

from typing import Any, Optional


class CommerceError(Exception):
    """Base exception for order, payment and refund errors."""

    default_code = "COMMERCE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_detail(self) -> dict[str, Any]:
        """
        Render the error as an API error detail.

        Returns:
            Dictionary with message, code and JSON-safe context
        """
        return {
            "message": self.message,
            "code": self.code,
            "context": {
                key: value if isinstance(value, (int, float, bool, type(None))) else str(value)
                for key, value in self.context.items()
            },
        }


class ValidationError(CommerceError):
    """Malformed input, rejected before any mutation."""

    default_code = "VALIDATION_ERROR"


class NotFoundError(CommerceError):
    """Referenced order, payment or refund does not exist."""

    default_code = "NOT_FOUND"


class ConflictError(CommerceError):
    """Duplicate refund or gateway reference mismatch."""

    default_code = "CONFLICT"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        existing: Any = None,
        **context: Any,
    ):
        super().__init__(message, code, **context)
        self.existing = existing


class StateError(CommerceError):
    """Operation invalid for the current order or payment status."""

    default_code = "INVALID_STATE"


class InsufficientInventoryError(CommerceError):
    """Raised when a product cannot cover the requested quantity."""

    default_code = "INSUFFICIENT_INVENTORY"

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient inventory for product {product_id}: "
            f"requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ExternalGatewayError(CommerceError):
    """Gateway adapter call failed or returned an unexpected status."""

    default_code = "GATEWAY_ERROR"


class SecurityError(CommerceError):
    """Payment signature did not verify."""

    default_code = "INVALID_SIGNATURE"


class StorageError(CommerceError):
    """Database operation failed; the request may be retried."""

    default_code = "STORAGE_ERROR"
