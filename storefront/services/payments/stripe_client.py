"""
Stripe gateway adapter with error handling and retry logic.

This module wraps the Stripe SDK behind the gateway adapter contract. Gateway
orders are PaymentIntents, gateway payments are the same PaymentIntents read
back after the client completes them, and refunds are Stripe Refunds created
with an idempotency key. Transient failures are retried with exponential
backoff.
"""

import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional

import stripe

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

# PaymentIntent status -> normalized gateway status
STRIPE_STATUS_MAP = {
    "requires_payment_method": GatewayPaymentStatus.CREATED,
    "requires_confirmation": GatewayPaymentStatus.CREATED,
    "requires_action": GatewayPaymentStatus.CREATED,
    "processing": GatewayPaymentStatus.CREATED,
    "requires_capture": GatewayPaymentStatus.AUTHORIZED,
    "succeeded": GatewayPaymentStatus.CAPTURED,
    "canceled": GatewayPaymentStatus.FAILED,
}

RETRYABLE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class StripeClient:
    """
    Stripe adapter implementing the gateway contract.

    Attributes:
        name: Gateway name stored on payments
        supports_refunds: Stripe refunds are created through the API
    """

    name = "stripe"
    supports_refunds = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        signing_secret: Optional[str] = None,
        publishable_key: Optional[str] = None,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the Stripe adapter.

        Args:
            api_key: Stripe secret API key (defaults to settings)
            signing_secret: Secret for confirmation signatures (defaults to settings)
            publishable_key: Key returned to checkout clients
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Multiplier for exponential backoff
        """
        settings = settings or get_settings()
        self.api_key = api_key or settings.stripe_secret_key
        self._signing_secret = signing_secret or settings.stripe_signing_secret
        self._publishable_key = publishable_key or settings.stripe_publishable_key
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        stripe.api_key = self.api_key
        stripe.max_network_retries = 0

        logger.info(
            "Stripe client initialized",
            max_retries=max_retries,
            initial_backoff=initial_backoff,
            max_backoff=max_backoff,
        )

    @property
    def signing_secret(self) -> str:
        return self._signing_secret or ""

    @property
    def public_key(self) -> Optional[str]:
        return self._publishable_key

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    async def _execute_with_retry(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a Stripe API call, retrying transient failures.

        Raises:
            GatewayError: If the call fails permanently or retries run out
        """
        last_error: Optional[stripe.StripeError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        f"Stripe operation succeeded after retry: {operation}",
                        attempt=attempt,
                    )
                return result

            except stripe.AuthenticationError as e:
                logger.error(f"Stripe authentication error: {operation}", error=str(e))
                raise GatewayError(
                    f"Authentication failed: {e.user_message or str(e)}",
                    gateway=self.name,
                    code="GATEWAY_AUTH_FAILED",
                ) from e

            except stripe.CardError as e:
                logger.warning(
                    f"Stripe card error: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise GatewayError(
                    f"Card error: {e.user_message or str(e)}",
                    gateway=self.name,
                    code="PAYMENT_DECLINED",
                    stripe_code=e.code,
                ) from e

            except (stripe.InvalidRequestError, stripe.IdempotencyError) as e:
                logger.error(
                    f"Stripe rejected request: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise GatewayError(
                    f"Invalid request: {e.user_message or str(e)}",
                    gateway=self.name,
                    stripe_code=e.code,
                ) from e

            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt >= self.max_retries:
                    break

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"Stripe transient error, retrying: {operation}",
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(backoff)

            except stripe.StripeError as e:
                logger.error(
                    f"Unexpected Stripe error: {operation}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise GatewayError(
                    f"Stripe error: {e.user_message or str(e)}",
                    gateway=self.name,
                ) from e

        logger.error(
            f"Stripe operation failed after all retries: {operation}",
            max_retries=self.max_retries,
            last_error=str(last_error),
        )
        raise GatewayError(
            f"Stripe {operation} failed after {self.max_retries} retries",
            gateway=self.name,
            retryable=True,
        ) from last_error

    async def create_gateway_order(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a PaymentIntent for an order.

        The order reference doubles as the idempotency key so a retried
        checkout reuses the same intent.
        """
        metadata = dict(notes or {})
        metadata["order_id"] = reference

        intent = await self._execute_with_retry(
            "create_payment_intent",
            stripe.PaymentIntent.create_async,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=f"order_{reference}",
        )

        logger.info(
            "Payment intent created",
            payment_intent_id=intent.id,
            order_id=reference,
            amount=str(amount),
        )
        return GatewayOrder(gateway_order_id=intent.id, raw={"status": intent.status})

    async def fetch_gateway_payment(self, gateway_payment_id: str) -> GatewayPayment:
        intent = await self._execute_with_retry(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve_async,
            gateway_payment_id,
        )
        status = STRIPE_STATUS_MAP.get(intent.status, GatewayPaymentStatus.UNKNOWN)

        logger.debug(
            "Payment intent retrieved",
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return GatewayPayment(
            gateway_payment_id=intent.id,
            status=status,
            gateway_order_id=intent.id,
            raw={"status": intent.status, "amount": intent.amount},
        )

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        refund = await self._execute_with_retry(
            "create_refund",
            stripe.Refund.create_async,
            payment_intent=gateway_payment_id,
            amount=to_minor_units(amount),
            metadata=dict(notes or {}),
            idempotency_key=idempotency_key,
        )

        logger.info(
            "Stripe refund created",
            refund_id=refund.id,
            payment_intent_id=gateway_payment_id,
            status=refund.status,
        )
        return GatewayRefund(
            gateway_refund_id=refund.id,
            status=refund.status,
            raw={"status": refund.status, "amount": refund.amount},
        )
