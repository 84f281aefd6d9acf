"""
Checkout and payment confirmation schemas.

Clients send product ids and quantities only; prices are looked up server
side. ``expected_total`` lets a client report the total it displayed so that
drift can be logged, but it never changes what is charged.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storefront.database.models.order import PaymentMethod, ShippingMethod


def _normalize_email(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip().lower()
    if "@" not in v or "." not in v.split("@")[-1]:
        raise ValueError("Invalid email format")
    return v


class Address(BaseModel):
    """Postal address stored on the order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200, description="Recipient name")
    street: str = Field(..., min_length=1, max_length=255, description="Street address")
    city: str = Field(..., min_length=1, max_length=100, description="City")
    state: Optional[str] = Field(None, max_length=100, description="State or region")
    postal_code: str = Field(..., min_length=3, max_length=12, description="Postal code")
    country: str = Field(
        ...,
        min_length=2,
        max_length=2,
        description="ISO 3166-1 alpha-2 country code",
    )
    phone: Optional[str] = Field(None, max_length=20, description="Contact phone")

    @field_validator("country")
    @classmethod
    def uppercase_country(cls, v: str) -> str:
        return v.upper()


class CheckoutItem(BaseModel):
    """One cart line."""

    product_id: str = Field(..., min_length=1, max_length=64, description="Catalog product id")
    qty: int = Field(..., gt=0, le=1000, description="Quantity to order")


class CheckoutRequest(BaseModel):
    """Checkout request for a registered buyer or a guest."""

    model_config = ConfigDict(str_strip_whitespace=True)

    items: list[CheckoutItem] = Field(..., min_length=1, description="Cart lines")
    payment_method: PaymentMethod = Field(..., description="Payment method")
    shipping_method: ShippingMethod = Field(
        default=ShippingMethod.STANDARD,
        description="Shipping speed",
    )
    shipping_address: Address = Field(..., description="Where to ship the order")
    billing_address: Optional[Address] = Field(
        None,
        description="Billing address, defaults to the shipping address",
    )
    guest_email: Optional[str] = Field(
        None,
        max_length=255,
        description="Email for guest checkout; ignored for authenticated buyers",
    )
    coupon_code: Optional[str] = Field(None, max_length=64, description="Coupon to apply")
    loyalty_points: int = Field(default=0, ge=0, description="Loyalty points to redeem")
    gift_wrap: bool = Field(default=False, description="Gift wrap the order")
    expected_total: Optional[Decimal] = Field(
        None,
        ge=0,
        decimal_places=2,
        description="Total displayed to the buyer",
    )

    @field_validator("guest_email")
    @classmethod
    def validate_guest_email(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_email(v)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.upper() or None


class CheckoutResponse(BaseModel):
    """Pending order handed back to the client for payment."""

    order_id: UUID
    gateway_order_id: Optional[str] = None
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    key_id: Optional[str] = Field(None, description="Gateway public key for the client SDK")
    status: str


class GatewayOrderRequest(BaseModel):
    """Ownership proof for guests retrying gateway order creation."""

    guest_email: Optional[str] = Field(None, max_length=255)

    @field_validator("guest_email")
    @classmethod
    def validate_guest_email(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_email(v)


class ConfirmPaymentRequest(BaseModel):
    """Signed confirmation returned by the gateway checkout widget."""

    model_config = ConfigDict(str_strip_whitespace=True)

    order_id: UUID = Field(..., description="Local order id")
    gateway_order_id: str = Field(..., min_length=1, max_length=255)
    gateway_payment_id: str = Field(..., min_length=1, max_length=255)
    signature: str = Field(..., min_length=1, max_length=512)

    @model_validator(mode="after")
    def validate_references_differ(self) -> "ConfirmPaymentRequest":
        if self.gateway_order_id == self.gateway_payment_id:
            raise ValueError("gateway_order_id and gateway_payment_id must differ")
        return self


class ConfirmPaymentResponse(BaseModel):
    order_id: UUID
    order_status: str
    payment_id: UUID
    payment_status: str
    amount: Decimal
    currency: str
    already_confirmed: bool
