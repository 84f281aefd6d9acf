"""
Payment gateway webhook endpoints.

Razorpay posts ``payment.captured`` and ``order.paid`` events here. The raw
body is authenticated with the ``X-Razorpay-Signature`` HMAC before it is
parsed. Captures complete the order through the payment service, so an order
is paid even when the buyer never returns to submit the client confirmation.

Verified events that cannot be applied are acknowledged with 200 so the
gateway stops redelivering them; storage failures return 503 so it retries.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from storefront.api.deps import get_payment_service
from storefront.api.errors import to_http_exception
from storefront.core.config import Settings, get_settings
from storefront.core.errors import (
    CommerceError,
    ConflictError,
    NotFoundError,
    SecurityError,
    ValidationError,
)
from storefront.core.logging import get_logger
from storefront.core.security import verify_webhook_signature
from storefront.schemas.webhooks import WebhookAckResponse
from storefront.services.payments.gateway import from_minor_units
from storefront.services.payments.service import PaymentService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})


def _captured_payment(event: dict[str, Any]) -> dict[str, Any]:
    """Gateway references and amount of the event's payment entity."""
    try:
        entity = event["payload"]["payment"]["entity"]
        captured = {
            "gateway_order_id": str(entity["order_id"]),
            "gateway_payment_id": str(entity["id"]),
            "amount": from_minor_units(int(entity["amount"])),
            "currency": str(entity.get("currency") or ""),
        }
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(
            "Webhook payload has no valid payment entity",
            code="INVALID_PAYLOAD",
            event=event.get("event"),
        ) from e

    if not entity["order_id"] or not entity["id"]:
        raise ValidationError(
            "Webhook payment entity is missing its references",
            code="INVALID_PAYLOAD",
            event=event.get("event"),
        )
    return captured


@router.post("/razorpay", response_model=WebhookAckResponse, summary="Razorpay webhook")
async def razorpay_webhook(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    service: Annotated[PaymentService, Depends(get_payment_service)],
) -> WebhookAckResponse:
    """
    Apply a signed Razorpay event.

    Raises:
        HTTPException: 400 with INVALID_SIGNATURE or INVALID_PAYLOAD, 503 when
            the payment cannot be stored
    """
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature")

    if not verify_webhook_signature(settings.razorpay_webhook_secret, body, signature):
        if not settings.razorpay_webhook_secret:
            logger.error("Razorpay webhook received but no webhook secret is configured")
        raise to_http_exception(
            SecurityError("Webhook signature verification failed", code="INVALID_SIGNATURE")
        )

    try:
        event = json.loads(body)
        if not isinstance(event, dict):
            raise ValueError("event must be an object")
    except ValueError as e:
        raise to_http_exception(
            ValidationError("Webhook body is not a JSON object", code="INVALID_PAYLOAD")
        ) from e

    name = str(event.get("event") or "unknown")
    if name not in CAPTURE_EVENTS:
        logger.info("Razorpay webhook ignored", webhook_event=name)
        return WebhookAckResponse(event=name, processed=False, reason="unhandled_event")

    try:
        captured = _captured_payment(event)
        result = await service.record_captured_payment(gateway="razorpay", event=name, **captured)
    except (NotFoundError, ConflictError) as e:
        logger.warning(
            "Razorpay webhook not applied",
            webhook_event=name,
            code=e.code,
            error=e.message,
        )
        return WebhookAckResponse(event=name, processed=False, reason=e.code)
    except CommerceError as e:
        raise to_http_exception(e) from e

    return WebhookAckResponse(
        event=name,
        processed=True,
        duplicate=result["already_confirmed"],
        order_id=result["order_id"],
        order_status=result["order_status"],
    )
