"""
Discount resolution for checkout.

Coupon and loyalty engines are external; this module only combines their
answers. Engine outages are non-fatal and contribute a zero discount. A
coupon the buyer explicitly entered that turns out to be invalid aborts the
checkout, since the buyer expects it to apply.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol, Sequence

import httpx

from storefront.core.config import Settings, get_settings
from storefront.core.errors import ExternalGatewayError, ValidationError
from storefront.core.logging import get_logger
from storefront.services.orders.pricing import ZERO, PricedLine, quantize_money

logger = get_logger(__name__)


class CouponInvalidError(ValidationError):
    default_code = "COUPON_INVALID"


@dataclass(frozen=True)
class DiscountResult:
    coupon_discount: Decimal = ZERO
    loyalty_discount: Decimal = ZERO
    coupon_code: Optional[str] = None
    loyalty_points_redeemed: int = 0

    @property
    def discount_amount(self) -> Decimal:
        return self.coupon_discount + self.loyalty_discount


class CouponCalculator(Protocol):
    async def evaluate(
        self,
        code: str,
        buyer_id: Optional[str],
        order_amount: Decimal,
        lines: Sequence[PricedLine],
    ) -> Decimal:
        """Discount for the code; raises CouponInvalidError if it does not apply."""
        ...


class LoyaltyCalculator(Protocol):
    async def quote(self, buyer_id: str, points: int, order_amount: Decimal) -> Decimal:
        """Discount the buyer gets for redeeming ``points``."""
        ...


class HttpPromotionsClient:
    """
    Coupon and loyalty calculator backed by the promotions service.

    Endpoints:
        POST /coupons/evaluate -> {"valid": bool, "discount": "12.50", "reason": str}
        POST /loyalty/quote    -> {"discount": "20.00"}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(path, json=payload)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalGatewayError(
                f"Promotions service request failed: {e}",
                code="PROMOTIONS_UNAVAILABLE",
                path=path,
            ) from e

    @staticmethod
    def _amount(body: dict[str, Any]) -> Decimal:
        try:
            return quantize_money(Decimal(str(body.get("discount", "0"))))
        except InvalidOperation as e:
            raise ExternalGatewayError(
                "Promotions service returned an invalid discount",
                code="PROMOTIONS_UNAVAILABLE",
            ) from e

    async def evaluate(
        self,
        code: str,
        buyer_id: Optional[str],
        order_amount: Decimal,
        lines: Sequence[PricedLine],
    ) -> Decimal:
        body = await self._post(
            "/coupons/evaluate",
            {
                "code": code,
                "buyer_id": buyer_id,
                "order_amount": str(order_amount),
                "items": [
                    {"product_id": line.product_id, "qty": line.qty, "unit_price": str(line.unit_price)}
                    for line in lines
                ],
            },
        )
        if not body.get("valid", False):
            raise CouponInvalidError(
                body.get("reason") or "Coupon is not valid for this order",
                coupon_code=code,
            )
        return self._amount(body)

    async def quote(self, buyer_id: str, points: int, order_amount: Decimal) -> Decimal:
        body = await self._post(
            "/loyalty/quote",
            {"buyer_id": buyer_id, "points": points, "order_amount": str(order_amount)},
        )
        return self._amount(body)


class DiscountResolver:
    """
    Combines coupon and loyalty discounts into one result.

    Either calculator may be absent, in which case it contributes zero.
    Called with no code and no buyer it always returns a zero discount.
    """

    def __init__(
        self,
        coupons: Optional[CouponCalculator] = None,
        loyalty: Optional[LoyaltyCalculator] = None,
    ):
        self.coupons = coupons
        self.loyalty = loyalty

    async def resolve(
        self,
        order_amount: Decimal,
        lines: Sequence[PricedLine],
        code: Optional[str] = None,
        buyer_id: Optional[str] = None,
        loyalty_points: int = 0,
    ) -> DiscountResult:
        """
        Resolve discounts for an order amount.

        Raises:
            CouponInvalidError: If an explicitly supplied coupon does not apply
            ValidationError: If loyalty points are redeemed without an account
        """
        coupon_discount = ZERO
        applied_code = None
        if code:
            if self.coupons is None:
                raise CouponInvalidError(
                    "Coupons are not available",
                    coupon_code=code,
                )
            try:
                coupon_discount = min(
                    await self.coupons.evaluate(code, buyer_id, order_amount, lines),
                    order_amount,
                )
                applied_code = code
            except CouponInvalidError:
                logger.info("Coupon rejected", coupon_code=code, buyer_id=buyer_id)
                raise
            except ExternalGatewayError as e:
                logger.warning(
                    "Coupon evaluation failed, continuing without coupon",
                    coupon_code=code,
                    error=str(e),
                )

        loyalty_discount = ZERO
        points_redeemed = 0
        if loyalty_points > 0:
            if buyer_id is None:
                raise ValidationError(
                    "Loyalty points can only be redeemed by registered buyers",
                    code="LOYALTY_REQUIRES_ACCOUNT",
                )
            if self.loyalty is not None:
                try:
                    loyalty_discount = min(
                        await self.loyalty.quote(buyer_id, loyalty_points, order_amount - coupon_discount),
                        order_amount - coupon_discount,
                    )
                    points_redeemed = loyalty_points if loyalty_discount > ZERO else 0
                except ExternalGatewayError as e:
                    logger.warning(
                        "Loyalty quote failed, continuing without loyalty discount",
                        buyer_id=buyer_id,
                        points=loyalty_points,
                        error=str(e),
                    )
            else:
                logger.info("Loyalty disabled, ignoring points", buyer_id=buyer_id)

        return DiscountResult(
            coupon_discount=quantize_money(coupon_discount),
            loyalty_discount=quantize_money(loyalty_discount),
            coupon_code=applied_code,
            loyalty_points_redeemed=points_redeemed,
        )


def build_discount_resolver(settings: Optional[Settings] = None) -> DiscountResolver:
    """Resolver wired to the promotions service according to settings."""
    settings = settings or get_settings()
    if not settings.promotions_base_url:
        return DiscountResolver()

    client = HttpPromotionsClient(settings.promotions_base_url)
    return DiscountResolver(
        coupons=client if settings.coupons_enabled else None,
        loyalty=client if settings.loyalty_enabled else None,
    )
