"""
HMAC signing of task envelopes.

The signature is HMAC-SHA256 over the canonical JSON serialization of the
message body, hex encoded, and travels in the ``x-message-signature`` header.
"""

import hashlib
import hmac
from collections.abc import Mapping
from typing import Any

from taskbroker.exceptions import SigningConfigError
from taskbroker.types.task import dumps_canonical


def require_secret(secret: str | None) -> str:
    """Return the signing secret, refusing to run without one."""
    if not secret:
        raise SigningConfigError(
            "Message signing secret not configured. Set MESSAGE_SIGNING_SECRET environment variable."
        )
    return secret


def sign_message(body: Mapping[str, Any], secret: str) -> str:
    """
    Compute the signature of a message body.

    Args:
        body: The parsed or to-be-serialized message body.
        secret: Shared signing secret.

    Returns:
        Hex-encoded HMAC-SHA256 digest.
    """
    return hmac.new(
        secret.encode("utf-8"),
        dumps_canonical(body).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(body: Mapping[str, Any], signature: Any, secret: str) -> bool:
    """
    Check a received signature against the body.

    Args:
        body: The parsed message body.
        signature: Header value; may be missing, str or bytes.
        secret: Shared signing secret.

    Returns:
        True if the signature matches.
    """
    if isinstance(signature, bytes):
        signature = signature.decode("utf-8", errors="replace")
    if not isinstance(signature, str) or not signature:
        return False
    return hmac.compare_digest(sign_message(body, secret), signature)
