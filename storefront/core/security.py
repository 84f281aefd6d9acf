"""
Security utilities for bearer token validation and payment signatures.

This module provides:
- JWT access token encoding and decoding (python-jose)
- HMAC-SHA256 signatures binding a gateway order to a gateway payment
- HMAC-SHA256 signatures over raw gateway webhook bodies
- Constant-time signature verification

Issuing tokens to end users is handled by the identity service; the encode
helper exists for service-to-service calls and tests.
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class TokenError(Exception):
    """Exception raised for token-related errors."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token with expiration.

    Args:
        data: Claims to encode (``sub``, ``role``, ``email``)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = data.copy()
    to_encode.update({"exp": expire, "iat": now, "type": "access"})

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, invalid, or expired
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e

    if payload.get("type", "access") != "access":
        raise TokenError("Unexpected token type", code="TOKEN_TYPE_INVALID")

    return payload


def compute_payment_signature(
    secret: str,
    gateway_order_id: str,
    gateway_payment_id: str,
) -> str:
    """
    Compute the confirmation signature for a gateway order/payment pair.

    The signed message is ``"<gateway_order_id>|<gateway_payment_id>"``,
    which is the format Razorpay uses for checkout signatures.

    Args:
        secret: Gateway signing secret
        gateway_order_id: Gateway-side order reference
        gateway_payment_id: Gateway-side payment reference

    Returns:
        Lower-case hex HMAC-SHA256 digest
    """
    message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    secret: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> bool:
    """
    Verify a client-supplied confirmation signature in constant time.

    Returns:
        True if the signature matches, False otherwise (including when no
        signing secret is configured)
    """
    if not secret or not signature:
        return False

    expected = compute_payment_signature(secret, gateway_order_id, gateway_payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


def compute_webhook_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of a raw webhook body, as sent in ``X-Razorpay-Signature``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Verify a webhook body signature in constant time.

    The signature must be computed over the exact bytes received; parsing
    and re-serializing the JSON would change them.

    Returns:
        False when no webhook secret is configured or no signature was sent
    """
    if not secret or not signature:
        return False

    expected = compute_webhook_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
