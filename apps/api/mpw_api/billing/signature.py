"""MercadoPago webhook signature verification.

MercadoPago signs notifications with the ``x-signature`` header::

    x-signature: ts=1742505638683,v1=ced36ab6d33566bb1e16c125819b8d840d6b8ef136b0b9127c76064466f5229b

``v1`` is HMAC-SHA256(secret, "id:<data.id>;request-id:<x-request-id>;ts:<ts>;")
hex-encoded. Verification fails closed with a tagged reason; the details
(timestamp, received/expected signature, signed payload) are meant for audit
logging only.

Reference: https://www.mercadopago.com.br/developers/en/docs/your-integrations/notifications/webhooks
"""

import hashlib
import hmac
import math
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

# Timestamps above this are milliseconds since epoch
_MILLISECONDS_THRESHOLD = 1_000_000_000_000


class SignatureDetails(BaseModel):
    timestamp: Optional[str] = None
    signature: Optional[str] = None
    expected: Optional[str] = None
    payload: Optional[str] = None


class SignatureResult(BaseModel):
    """Outcome of a signature check.

    ``reason`` is one of: missing_signature, missing_request_id,
    missing_data_id, timestamp_out_of_range, signature_mismatch.
    """

    valid: bool
    reason: Optional[str] = None
    details: Optional[SignatureDetails] = None


def build_signature_payload(data_id: str, request_id: str, timestamp: str) -> str:
    """Build the canonical string MercadoPago signs."""
    return f"id:{data_id};request-id:{request_id};ts:{timestamp};"


def compute_signature(secret: str, payload: str) -> str:
    """HMAC-SHA256 of payload, hex-encoded."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_signature_header(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Parse ``ts=...,v1=...`` into (ts, v1). Returns None unless both are present."""
    if not header:
        return None

    ts: Optional[str] = None
    v1: Optional[str] = None
    for part in header.split(","):
        part = part.strip()
        if not part:
            continue
        key, _, value = part.partition("=")
        key = key.strip()
        value = value.strip()
        if not key or not value:
            continue
        if key == "ts":
            ts = value
        elif key == "v1":
            v1 = value

    if not ts or not v1:
        return None
    return ts, v1


def is_timestamp_valid(timestamp: str, tolerance_sec: int, now: Optional[datetime] = None) -> bool:
    """Accept timestamps within ``tolerance_sec`` of ``now`` (seconds or milliseconds)."""
    try:
        ts = float(timestamp)
    except ValueError:
        return False
    if not math.isfinite(ts):
        return False

    ts_ms = ts if ts > _MILLISECONDS_THRESHOLD else ts * 1000
    now = now or datetime.now(timezone.utc)
    now_ms = now.timestamp() * 1000
    return abs(now_ms - ts_ms) / 1000 <= tolerance_sec


def verify_signature(
    signature_header: Optional[str],
    secret: str,
    request_id: Optional[str],
    data_id: Optional[str],
    tolerance_sec: int,
    now: Optional[datetime] = None,
) -> SignatureResult:
    """Verify a MercadoPago ``x-signature`` header.

    Args:
        signature_header: Raw ``x-signature`` header value
        secret: Webhook shared secret
        request_id: ``x-request-id`` header value
        data_id: Resource id the notification refers to (``data.id``)
        tolerance_sec: Accepted clock skew in seconds
        now: Reference time (default: current UTC time)

    Returns:
        SignatureResult; ``valid`` is False with a reason on any failure
    """
    parsed = parse_signature_header(signature_header)
    if parsed is None:
        return SignatureResult(valid=False, reason="missing_signature")

    ts, v1 = parsed
    partial = SignatureDetails(timestamp=ts, signature=v1)

    if not request_id:
        return SignatureResult(valid=False, reason="missing_request_id", details=partial)

    if not data_id:
        return SignatureResult(valid=False, reason="missing_data_id", details=partial)

    if not is_timestamp_valid(ts, tolerance_sec, now):
        return SignatureResult(valid=False, reason="timestamp_out_of_range", details=partial)

    payload = build_signature_payload(data_id, request_id, ts)
    expected = compute_signature(secret, payload)
    details = SignatureDetails(timestamp=ts, signature=v1, expected=expected, payload=payload)

    # compare_digest on bytes; differing lengths simply compare unequal
    if not hmac.compare_digest(expected.encode("utf-8"), v1.encode("utf-8")):
        return SignatureResult(valid=False, reason="signature_mismatch", details=details)

    return SignatureResult(valid=True, details=details)
