"""
Request signing for the single-message ingest endpoint.

Scrapers sign the raw JSON body with the shared INGEST_SECRET and send the
hex digest in X-Signature, either bare or as "sha256=<hex>".
"""

import hmac
import hashlib
import logging

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of body keyed with secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Check an X-Signature header value against the raw request body.

    Args:
        body: Raw request body bytes, exactly as received
        signature: Header value, hex digest with optional "sha256=" prefix
        secret: INGEST_SECRET

    Returns:
        True if the digest matches
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected = compute_signature(body, secret).encode("ascii")
    is_valid = hmac.compare_digest(expected, signature.strip().lower().encode("utf-8"))
    if not is_valid:
        logger.debug(f"Signature mismatch for {len(body)}-byte body (got {signature[:8]}...)")
    return is_valid
