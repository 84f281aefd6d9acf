"""Request rate limiting shared by the routers and the application."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from storefront.core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    enabled=get_settings().rate_limit_enabled,
)


def checkout_limit() -> str:
    return get_settings().checkout_rate_limit
