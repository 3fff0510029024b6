"""
Utility functions for the webhook mirror.
"""

import hmac
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_webhook_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Verify an ``X-Hub-Signature-256`` header.

    Args:
        body: Raw request body bytes
        signature_header: Header value, ``sha256=<hex HMAC-SHA256 of body>``
        secret: WEBHOOK_SECRET (the app secret shared with the vendor)

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        logger.info("Webhook signature missing or not in sha256=<hex> form")
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature_header[len(SIGNATURE_PREFIX):])
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
