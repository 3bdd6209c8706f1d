"""Webhook security utilities.

Provides secret generation and HMAC signing for webhook payloads so
receivers can verify authenticity and detect tampering.

Signature Format:
    X-Yoraa-Signature: sha256=<hex>

The signature is computed as HMAC-SHA256(secret, body) over the exact bytes
placed on the wire, never over a re-serialization of the payload.
"""

import hashlib
import hmac
import secrets

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

SIGNATURE_SCHEME = "sha256"

# 32 random bytes -> 64 hex chars (256 bits of entropy)
SECRET_BYTES = 32


def generate_secret() -> str:
    """Generate a fresh endpoint signing secret.

    Returns:
        Hex-encoded random token.
    """
    return secrets.token_hex(SECRET_BYTES)


def sign_payload(secret: str, payload: bytes) -> str:
    """Generate the signature header value for a payload.

    Args:
        secret: Endpoint secret key.
        payload: Exact request body bytes.

    Returns:
        Signature in the form ``sha256=<hex>``.
    """
    digest = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    logger.debug("webhook_signature_generated", payload_length=len(payload))

    return f"{SIGNATURE_SCHEME}={digest}"


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    """Verify a received signature header (receiver side).

    Args:
        secret: Endpoint secret key.
        payload: Raw request body bytes as received.
        signature: Value of the signature header.

    Returns:
        True if the signature matches.
    """
    expected = sign_payload(secret, payload)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(signature.strip(), expected)

    if not is_valid:
        logger.warning("webhook_signature_invalid", payload_length=len(payload))

    return is_valid


def create_signature_headers(
    secret: str,
    payload: bytes,
    *,
    header_name: str | None = None,
) -> dict[str, str]:
    """Create HTTP headers with signature for webhook delivery.

    Args:
        secret: Endpoint secret key.
        payload: Exact request body bytes.
        header_name: Override for the signature header name.

    Returns:
        Dictionary of headers to include in request.
    """
    return {
        header_name or settings.WEBHOOK_SIGNATURE_HEADER: sign_payload(secret, payload),
    }
