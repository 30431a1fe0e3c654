"""Webhook signature verification for GitHub webhook payloads."""

import hashlib
import hmac


def compute_signature(payload: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature GitHub would send for *payload*."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_github_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify the ``X-Hub-Signature-256`` header.

    An empty secret never verifies.
    """
    if not secret or not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature)
