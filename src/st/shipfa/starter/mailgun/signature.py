"""
Mailgun webhook signature verification.

Every webhook request from Mailgun carries ``timestamp``, ``token`` and
``signature`` form fields. The signature is the hex encoded HMAC-SHA256 of
``timestamp`` concatenated with ``token``, keyed with the account's webhook
signing key.
"""

import hashlib
import hmac
from typing import Optional


def compute_signature(signing_key: str, timestamp: str, token: str) -> str:
    """Return the hex HMAC-SHA256 of ``timestamp + token`` keyed by ``signing_key``."""
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(
    signing_key: Optional[str],
    timestamp: Optional[str],
    token: Optional[str],
    signature: Optional[str],
) -> bool:
    """
    Check a Mailgun webhook signature.

    A request can only be trusted when every part of the signature is present
    and a signing key is configured; any missing piece fails verification.

    Args:
        signing_key: Webhook signing key (or API key on older accounts)
        timestamp: ``timestamp`` form field
        token: ``token`` form field
        signature: ``signature`` form field

    Returns:
        bool: True when the signature matches
    """
    if not signing_key or not timestamp or not token or not signature:
        return False

    expected = compute_signature(signing_key, timestamp, token)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
