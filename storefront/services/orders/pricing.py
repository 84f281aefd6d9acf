"""
Server-side order pricing.

Totals are always computed here from snapshotted unit prices and trusted
settings; any amount supplied by the client is advisory only.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from storefront.core.config import Settings
from storefront.database.models.order import ShippingMethod

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    """Round a money value half-up to two decimal places."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricedLine:
    """Cart line with its unit price looked up from the catalog."""

    product_id: str
    qty: int
    unit_price: Decimal
    name: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.qty


@dataclass(frozen=True)
class OrderTotals:
    """
    Computed order amounts.

    ``total`` always equals
    ``subtotal - coupon_discount - loyalty_discount + tax_amount + shipping_cost``.
    """

    subtotal: Decimal
    coupon_discount: Decimal
    loyalty_discount: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal
    tax_rate_percent: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "coupon_discount": str(self.coupon_discount),
            "loyalty_discount": str(self.loyalty_discount),
            "tax_amount": str(self.tax_amount),
            "shipping_cost": str(self.shipping_cost),
            "total": str(self.total),
        }


def compute_subtotal(lines: Iterable[PricedLine]) -> Decimal:
    return quantize_money(sum((line.line_total for line in lines), ZERO))


def compute_shipping(
    settings: Settings,
    subtotal: Decimal,
    method: ShippingMethod = ShippingMethod.STANDARD,
) -> Decimal:
    """
    Shipping cost for the chosen method.

    Orders at or above ``free_shipping_threshold`` ship free.
    """
    threshold = settings.free_shipping_threshold
    if threshold is not None and subtotal >= threshold:
        return ZERO

    if method == ShippingMethod.EXPRESS:
        return quantize_money(settings.shipping_express_cost)
    return quantize_money(settings.shipping_standard_cost)


def compute_totals(
    lines: Iterable[PricedLine],
    shipping_cost: Decimal,
    tax_rate_percent: Decimal,
    coupon_discount: Decimal = ZERO,
    loyalty_discount: Decimal = ZERO,
) -> OrderTotals:
    """
    Compute all order amounts.

    Discounts are capped so they never exceed the subtotal (coupon first,
    then loyalty). Tax applies to ``max(0, subtotal + shipping - discounts)``.

    Args:
        lines: Priced cart lines
        shipping_cost: Shipping charge
        tax_rate_percent: Tax rate, e.g. ``Decimal("18")``
        coupon_discount: Discount from the coupon engine
        loyalty_discount: Discount from loyalty redemption

    Returns:
        OrderTotals with every amount rounded to two places

    Example:
        >>> totals = compute_totals(
        ...     [PricedLine("p1", 2, Decimal("500"))], Decimal("0"), Decimal("18")
        ... )
        >>> totals.total
        Decimal('1180.00')
    """
    subtotal = compute_subtotal(lines)
    shipping = quantize_money(shipping_cost)

    coupon = min(quantize_money(max(coupon_discount, ZERO)), subtotal)
    loyalty = min(quantize_money(max(loyalty_discount, ZERO)), subtotal - coupon)

    taxable = max(ZERO, subtotal + shipping - coupon - loyalty)
    tax = quantize_money(taxable * Decimal(tax_rate_percent) / Decimal(100))

    total = subtotal - coupon - loyalty + tax + shipping

    return OrderTotals(
        subtotal=subtotal,
        coupon_discount=coupon,
        loyalty_discount=loyalty,
        tax_amount=tax,
        shipping_cost=shipping,
        total=total,
        tax_rate_percent=Decimal(tax_rate_percent),
    )
