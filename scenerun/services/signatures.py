"""HMAC-SHA256 webhook signatures with replay protection."""

import hashlib
import hmac
import time
from typing import Optional


def sign(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    window_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """
    Check ``signature`` over ``"{timestamp}.{body}"``.

    Args:
        secret: Shared webhook secret
        signature: Header value, optionally prefixed with ``sha256=``
        timestamp: Unix seconds as sent by the caller
        body: Raw request body
        window_seconds: Maximum clock skew / age accepted
        now: Current unix time (defaults to time.time())

    Returns:
        True only for a fresh, correctly signed request
    """
    if not secret or not signature or not timestamp:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - ts) > window_seconds:
        return False
    value = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    return hmac.compare_digest(value, sign(secret, timestamp, body))
