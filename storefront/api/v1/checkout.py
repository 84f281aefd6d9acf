"""
Checkout API endpoints.

This module implements the buyer-facing checkout flow: placing an order,
retrying gateway order creation for a pending order, and confirming a
gateway payment with its signature. Registered buyers authenticate with a
bearer token; guests identify themselves with an email address.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from storefront.api.deps import (
    OptionalPrincipal,
    actor_for,
    get_checkout_orchestrator,
    get_payment_service,
)
from storefront.api.errors import to_http_exception
from storefront.api.rate_limit import checkout_limit, limiter
from storefront.core.errors import CommerceError
from storefront.core.logging import get_logger
from storefront.schemas.checkout import (
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    GatewayOrderRequest,
)
from storefront.services.checkout.service import (
    CheckoutCommand,
    CheckoutLine,
    CheckoutOrchestrator,
)
from storefront.services.payments.service import PaymentService

logger = get_logger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
    description="Reserve stock, create a pending order and its gateway order",
)
@limiter.limit(checkout_limit)
async def checkout(
    request: Request,
    body: CheckoutRequest,
    principal: OptionalPrincipal,
    orchestrator: Annotated[CheckoutOrchestrator, Depends(get_checkout_orchestrator)],
) -> CheckoutResponse:
    """
    Place an order.

    Raises:
        HTTPException: 400 for invalid carts or coupons, 409 when stock runs
            out, 502 when the gateway order cannot be created (the order is
            kept pending and the gateway order can be retried)
    """
    buyer_id = principal.subject if principal else None
    guest_email = None if principal else body.guest_email

    command = CheckoutCommand(
        items=[CheckoutLine(product_id=item.product_id, qty=item.qty) for item in body.items],
        payment_method=body.payment_method,
        shipping_address=body.shipping_address.model_dump(),
        billing_address=body.billing_address.model_dump() if body.billing_address else None,
        buyer_id=buyer_id,
        guest_email=guest_email,
        coupon_code=body.coupon_code,
        loyalty_points=body.loyalty_points,
        gift_wrap=body.gift_wrap,
        shipping_method=body.shipping_method,
        expected_total=body.expected_total,
    )

    logger.info(
        "Checkout requested",
        buyer_id=buyer_id,
        guest=guest_email is not None,
        item_count=len(body.items),
        payment_method=body.payment_method.value,
    )

    try:
        result = await orchestrator.checkout(
            command,
            actor=actor_for(request, principal, guest_email),
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return CheckoutResponse(**result)


@router.post(
    "/confirm",
    response_model=ConfirmPaymentResponse,
    summary="Confirm payment",
    description="Verify a signed gateway payment and mark the order paid",
)
@limiter.limit(checkout_limit)
async def confirm_payment(
    request: Request,
    body: ConfirmPaymentRequest,
    principal: OptionalPrincipal,
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> ConfirmPaymentResponse:
    """
    Confirm a payment reported by the client.

    Repeating a successful confirmation returns the same result with
    ``already_confirmed`` set.
    """
    try:
        result = await payments.confirm_payment(
            order_id=body.order_id,
            gateway_order_id=body.gateway_order_id,
            gateway_payment_id=body.gateway_payment_id,
            signature=body.signature,
            actor=actor_for(request, principal),
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return ConfirmPaymentResponse(**result)


@router.post(
    "/{order_id}/gateway-order",
    response_model=CheckoutResponse,
    summary="Retry gateway order",
    description="Create the gateway order for a pending order if it is missing",
)
@limiter.limit(checkout_limit)
async def retry_gateway_order(
    request: Request,
    order_id: UUID,
    principal: OptionalPrincipal,
    orchestrator: Annotated[CheckoutOrchestrator, Depends(get_checkout_orchestrator)],
    body: Optional[GatewayOrderRequest] = None,
) -> CheckoutResponse:
    guest_email = body.guest_email if body else None
    if principal is None and guest_email is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication or guest email required",
        )

    try:
        result = await orchestrator.retry_gateway_order(
            order_id,
            buyer_id=principal.subject if principal else None,
            guest_email=None if principal else guest_email,
        )
    except CommerceError as e:
        raise to_http_exception(e) from e

    return CheckoutResponse(**result)
