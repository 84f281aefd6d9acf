"""
API v1 package initialization.

This module collects the v1 routers for the storefront API.
"""

from storefront.api.v1.admin_inventory import router as admin_inventory_router
from storefront.api.v1.admin_orders import router as admin_orders_router
from storefront.api.v1.admin_refunds import router as admin_refunds_router
from storefront.api.v1.checkout import router as checkout_router
from storefront.api.v1.orders import router as orders_router
from storefront.api.v1.webhooks import router as webhooks_router

__all__ = [
    "admin_inventory_router",
    "admin_orders_router",
    "admin_refunds_router",
    "checkout_router",
    "orders_router",
    "webhooks_router",
]
