"""
Payment gateway adapter contract.

Adapters are thin wrappers around an external payment processor. Both calls
are fallible and are not assumed to be idempotent on the gateway side;
idempotency is enforced by the order and payment repositories.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from storefront.core.errors import ExternalGatewayError
from storefront.services.orders.pricing import quantize_money


class GatewayPaymentStatus(str, Enum):
    """Gateway payment statuses normalized across processors."""

    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"

    @property
    def is_success(self) -> bool:
        return self in (GatewayPaymentStatus.AUTHORIZED, GatewayPaymentStatus.CAPTURED)


@dataclass(frozen=True)
class GatewayOrder:
    gateway_order_id: str
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPayment:
    gateway_payment_id: str
    status: GatewayPaymentStatus
    gateway_order_id: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRefund:
    gateway_refund_id: str
    status: str
    raw: Mapping[str, Any] = field(default_factory=dict)


class GatewayError(ExternalGatewayError):
    """Adapter call failed.

    Attributes:
        retryable: True for network errors, rate limits and 5xx responses
    """

    def __init__(
        self,
        message: str,
        gateway: str,
        retryable: bool = False,
        code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, code=code, gateway=gateway, **context)
        self.gateway = gateway
        self.retryable = retryable


@runtime_checkable
class GatewayAdapter(Protocol):
    """Interface every payment processor adapter implements."""

    name: str
    supports_refunds: bool

    @property
    def signing_secret(self) -> str:
        """Secret used to verify client confirmation signatures."""
        ...

    @property
    def public_key(self) -> Optional[str]:
        """Publishable key handed to the checkout client, if any."""
        ...

    async def create_gateway_order(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        ...

    async def fetch_gateway_payment(self, gateway_payment_id: str) -> GatewayPayment:
        ...

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees, dollars) to paise or cents."""
    return int(quantize_money(amount) * 100)


def from_minor_units(value: int) -> Decimal:
    return quantize_money(Decimal(value) / 100)


class GatewayRegistry:
    """
    Adapters keyed by payment method name.

    Example:
        registry = GatewayRegistry({"razorpay": RazorpayClient(...)})
        adapter = registry.get("razorpay")
    """

    def __init__(self, adapters: Optional[Mapping[str, GatewayAdapter]] = None):
        self._adapters: dict[str, GatewayAdapter] = dict(adapters or {})

    def register(self, method: str, adapter: GatewayAdapter) -> None:
        self._adapters[method] = adapter

    def get(self, method: str) -> GatewayAdapter:
        """
        Adapter for a payment method.

        Raises:
            ExternalGatewayError: If no adapter is configured for the method
        """
        try:
            return self._adapters[method]
        except KeyError:
            raise ExternalGatewayError(
                f"No payment gateway configured for method {method!r}",
                code="GATEWAY_NOT_CONFIGURED",
                payment_method=method,
            ) from None

    def has(self, method: str) -> bool:
        return method in self._adapters

    def __contains__(self, method: str) -> bool:
        return self.has(method)
