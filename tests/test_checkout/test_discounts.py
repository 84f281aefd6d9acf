"""
Tests for discount resolution and the promotions service client.

HTTP calls are served by ``httpx.MockTransport`` handlers.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from storefront.core.config import Settings
from storefront.core.errors import ExternalGatewayError, ValidationError
from storefront.services.checkout.discounts import (
    CouponInvalidError,
    DiscountResolver,
    HttpPromotionsClient,
    build_discount_resolver,
)
from storefront.services.orders.pricing import PricedLine

LINES = [PricedLine("P1", 2, Decimal("500.00"))]


def _client(handler) -> HttpPromotionsClient:
    return HttpPromotionsClient("http://promotions.test", transport=httpx.MockTransport(handler))


# ============================================================================
# Resolver Tests
# ============================================================================


class TestDiscountResolver:
    """Tests for DiscountResolver.resolve."""

    async def test_no_code_no_points_is_zero(self):
        result = await DiscountResolver().resolve(Decimal("1000"), LINES)

        assert result.discount_amount == Decimal("0.00")
        assert result.coupon_code is None

    async def test_coupon_discount_capped_at_order_amount(self):
        coupons = AsyncMock(spec=HttpPromotionsClient)
        coupons.evaluate.return_value = Decimal("5000")

        result = await DiscountResolver(coupons=coupons).resolve(
            Decimal("1000"), LINES, code="BIG", buyer_id="buyer-1"
        )

        assert result.coupon_discount == Decimal("1000.00")
        assert result.coupon_code == "BIG"

    async def test_invalid_coupon_propagates(self):
        coupons = AsyncMock(spec=HttpPromotionsClient)
        coupons.evaluate.side_effect = CouponInvalidError("Expired", coupon_code="OLD")

        with pytest.raises(CouponInvalidError):
            await DiscountResolver(coupons=coupons).resolve(Decimal("1000"), LINES, code="OLD")

    async def test_unavailable_promotions_service_skips_coupon(self):
        coupons = AsyncMock(spec=HttpPromotionsClient)
        coupons.evaluate.side_effect = ExternalGatewayError("down", code="PROMOTIONS_UNAVAILABLE")

        result = await DiscountResolver(coupons=coupons).resolve(
            Decimal("1000"), LINES, code="SAVE10"
        )

        assert result.coupon_discount == Decimal("0.00")
        assert result.coupon_code is None

    async def test_loyalty_applies_after_coupon(self):
        promotions = AsyncMock(spec=HttpPromotionsClient)
        promotions.evaluate.return_value = Decimal("100")
        promotions.quote.return_value = Decimal("50")

        result = await DiscountResolver(coupons=promotions, loyalty=promotions).resolve(
            Decimal("1000"), LINES, code="SAVE100", buyer_id="buyer-1", loyalty_points=500
        )

        promotions.quote.assert_awaited_once_with("buyer-1", 500, Decimal("900"))
        assert result.discount_amount == Decimal("150.00")
        assert result.loyalty_points_redeemed == 500

    async def test_loyalty_requires_account(self):
        with pytest.raises(ValidationError) as exc_info:
            await DiscountResolver().resolve(Decimal("1000"), LINES, loyalty_points=10)

        assert exc_info.value.code == "LOYALTY_REQUIRES_ACCOUNT"

    async def test_loyalty_disabled_ignores_points(self):
        result = await DiscountResolver().resolve(
            Decimal("1000"), LINES, buyer_id="buyer-1", loyalty_points=10
        )

        assert result.loyalty_discount == Decimal("0.00")
        assert result.loyalty_points_redeemed == 0


# ============================================================================
# Promotions Client Tests
# ============================================================================


class TestHttpPromotionsClient:
    """Tests for HttpPromotionsClient."""

    async def test_evaluate_valid_coupon(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"valid": True, "discount": "12.50"})

        discount = await _client(handler).evaluate("SAVE", "buyer-1", Decimal("100"), LINES)

        assert discount == Decimal("12.50")
        assert seen["path"] == "/coupons/evaluate"
        assert seen["body"]["items"] == [{"product_id": "P1", "qty": 2, "unit_price": "500.00"}]

    async def test_evaluate_invalid_coupon(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"valid": False, "reason": "Coupon expired"})

        with pytest.raises(CouponInvalidError, match="Coupon expired"):
            await _client(handler).evaluate("OLD", None, Decimal("100"), LINES)

    async def test_server_error_is_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        with pytest.raises(ExternalGatewayError) as exc_info:
            await _client(handler).quote("buyer-1", 10, Decimal("100"))

        assert exc_info.value.code == "PROMOTIONS_UNAVAILABLE"

    async def test_malformed_discount_is_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"discount": "lots"})

        with pytest.raises(ExternalGatewayError):
            await _client(handler).quote("buyer-1", 10, Decimal("100"))


class TestBuildDiscountResolver:
    """Tests for build_discount_resolver."""

    def test_without_promotions_url(self):
        resolver = build_discount_resolver(Settings(promotions_base_url=None))

        assert resolver.coupons is None
        assert resolver.loyalty is None

    def test_respects_feature_flags(self):
        resolver = build_discount_resolver(
            Settings(promotions_base_url="http://promotions.test", loyalty_enabled=False)
        )

        assert isinstance(resolver.coupons, HttpPromotionsClient)
        assert resolver.loyalty is None
