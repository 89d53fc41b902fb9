"""
HMAC verification of payment gateway callbacks.

The gateway signs ``timestamp + "." + raw_body`` with HMAC-SHA256 and sends
the base64 digest in ``x-webhook-signature`` next to ``x-webhook-timestamp``.
"""

import base64
import hashlib
import hmac
from typing import Optional

from .exceptions import WebhookSignatureError
from .logging_config import log_security_event

TIMESTAMP_HEADER = "x-webhook-timestamp"
SIGNATURE_HEADER = "x-webhook-signature"


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    raw_body: bytes,
    timestamp: Optional[str],
    signature: Optional[str],
    secret: Optional[str],
) -> None:
    """Raise WebhookSignatureError unless the signature matches in constant time."""
    if not secret:
        log_security_event("webhook_secret_not_configured", {}, severity="ERROR")
        raise WebhookSignatureError("Webhook verification is not configured")

    if not timestamp or not signature:
        log_security_event("webhook_signature_missing", {"has_timestamp": bool(timestamp)})
        raise WebhookSignatureError("Missing webhook signature headers")

    expected = compute_signature(secret, timestamp, raw_body)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8")):
        log_security_event("webhook_signature_mismatch", {"timestamp_header": timestamp})
        raise WebhookSignatureError()
