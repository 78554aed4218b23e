"""Webhook signature verification.

Header format: `t=<unix ts>,v1=<hex hmac>[,v1=<hex hmac>...]`; the signed
content is `"<ts>.<raw payload>"` under HMAC-SHA256 with the endpoint secret.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from paysync.services.webhooks.errors import SignatureInvalidError

SIGNATURE_SCHEME = "v1"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureInvalidError("Signature timestamp is not an integer.") from exc
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    if timestamp is None:
        raise SignatureInvalidError("Signature header has no timestamp.")
    if not signatures:
        raise SignatureInvalidError(f"Signature header has no {SIGNATURE_SCHEME} signature.")
    return timestamp, signatures


def compute_signature(payload: bytes, *, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, *, secret: str, timestamp: int) -> str:
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, secret=secret, timestamp=timestamp)}"


def verify_signature(
    payload: bytes,
    header: str | None,
    *,
    secret: str,
    tolerance_seconds: int,
    now: float | None = None,
) -> int:
    """Return the signed timestamp, or raise `SignatureInvalidError`."""
    if not secret:
        raise SignatureInvalidError("No webhook secret is configured.")
    if not header:
        raise SignatureInvalidError("Signature header is missing.")
    timestamp, signatures = parse_signature_header(header)
    expected = compute_signature(payload, secret=secret, timestamp=timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalidError("No signature matches the payload.")
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise SignatureInvalidError("Signature timestamp is outside the tolerance window.")
    return timestamp
