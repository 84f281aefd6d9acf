"""Gateway registry assembly from settings."""

from typing import Optional

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.services.payments.gateway import GatewayRegistry
from storefront.services.payments.razorpay_client import RazorpayClient
from storefront.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)


def build_gateway_registry(settings: Optional[Settings] = None) -> GatewayRegistry:
    """
    Register an adapter for every enabled gateway payment method.

    Methods without credentials are skipped with a warning; checkout then
    rejects them as PAYMENT_METHOD_DISABLED.
    """
    settings = settings or get_settings()
    registry = GatewayRegistry()
    enabled = set(settings.enabled_payment_methods)

    if "razorpay" in enabled:
        if settings.razorpay_key_id and settings.razorpay_key_secret:
            registry.register("razorpay", RazorpayClient(settings=settings))
        else:
            logger.warning("Razorpay enabled without credentials")

    if "stripe" in enabled:
        if settings.stripe_secret_key:
            registry.register("stripe", StripeClient(settings=settings))
        else:
            logger.warning("Stripe enabled without credentials")

    return registry
