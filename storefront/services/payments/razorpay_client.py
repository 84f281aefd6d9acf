"""
Razorpay gateway adapter over the Razorpay REST API.

Amounts are sent in paise. The checkout client receives the gateway order id
and key id, completes payment in Razorpay's widget, and posts back the
payment id with an HMAC signature over ``order_id|payment_id`` computed with
the key secret.
"""

from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger
from storefront.services.payments.gateway import (
    GatewayError,
    GatewayOrder,
    GatewayPayment,
    GatewayPaymentStatus,
    GatewayRefund,
    to_minor_units,
)

logger = get_logger(__name__)

RAZORPAY_STATUS_MAP = {
    "created": GatewayPaymentStatus.CREATED,
    "authorized": GatewayPaymentStatus.AUTHORIZED,
    "captured": GatewayPaymentStatus.CAPTURED,
    "failed": GatewayPaymentStatus.FAILED,
    "refunded": GatewayPaymentStatus.REFUNDED,
}


class RazorpayClient:
    """
    Razorpay adapter implementing the gateway contract.

    Attributes:
        name: Gateway name stored on payments
        supports_refunds: Refunds are created through the API
    """

    name = "razorpay"
    supports_refunds = True

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.key_id = key_id or settings.razorpay_key_id or ""
        self._key_secret = key_secret or settings.razorpay_key_secret or ""
        self.base_url = (base_url or settings.razorpay_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self._transport = transport

    @property
    def signing_secret(self) -> str:
        return self._key_secret

    @property
    def public_key(self) -> Optional[str]:
        return self.key_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self._key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Send one request and return the decoded JSON body.

        Raises:
            GatewayError: On transport failures and non-2xx responses
        """
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "Razorpay request failed",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayError(
                f"Razorpay request failed: {e}",
                gateway=self.name,
                retryable=True,
            ) from e

        if response.is_error:
            description = None
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                pass
            logger.error(
                "Razorpay returned an error",
                method=method,
                path=path,
                status_code=response.status_code,
                description=description,
            )
            raise GatewayError(
                description or f"Razorpay returned HTTP {response.status_code}",
                gateway=self.name,
                retryable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )

        return response.json()

    async def create_gateway_order(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "receipt": reference,
            "notes": dict(notes or {}),
        }
        body = await self._request("POST", "/orders", json=payload)

        logger.info(
            "Razorpay order created",
            gateway_order_id=body["id"],
            receipt=reference,
            amount=str(amount),
        )
        return GatewayOrder(gateway_order_id=body["id"], raw=body)

    async def fetch_gateway_payment(self, gateway_payment_id: str) -> GatewayPayment:
        body = await self._request("GET", f"/payments/{gateway_payment_id}")
        status = RAZORPAY_STATUS_MAP.get(body.get("status", ""), GatewayPaymentStatus.UNKNOWN)

        logger.debug(
            "Razorpay payment fetched",
            gateway_payment_id=gateway_payment_id,
            status=status.value,
        )
        return GatewayPayment(
            gateway_payment_id=body.get("id", gateway_payment_id),
            status=status,
            gateway_order_id=body.get("order_id"),
            raw=body,
        )

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        payload = {
            "amount": to_minor_units(amount),
            "receipt": idempotency_key,
            "notes": dict(notes or {}),
        }
        body = await self._request(
            "POST",
            f"/payments/{gateway_payment_id}/refund",
            json=payload,
            headers={"X-Idempotency-Key": idempotency_key},
        )

        logger.info(
            "Razorpay refund created",
            gateway_refund_id=body["id"],
            gateway_payment_id=gateway_payment_id,
            status=body.get("status"),
        )
        return GatewayRefund(
            gateway_refund_id=body["id"],
            status=body.get("status", "processed"),
            raw=body,
        )
