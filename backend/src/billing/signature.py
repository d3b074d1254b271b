"""
Webhook signature verification for Stripe-style signing.

Header format:
    Stripe-Signature: t=<unix_ts>,v1=<hex>[,v1=<hex>...]

The signed payload is "<t>.<raw body>" and each v1 value is
hex(HMAC-SHA256(secret, signed_payload)). Several v1 values appear while a
secret is being rotated; any match accepts.

SECURITY:
- Digests are compared with hmac.compare_digest (constant time)
- Timestamps outside the tolerance window are rejected (replay protection)
- No vendor SDK; pure function over bytes
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"


@dataclass(frozen=True)
class SignatureHeader:
    timestamp: int
    signatures: Tuple[str, ...]


def parse_signature_header(header: Optional[str]) -> Optional[SignatureHeader]:
    """
    Parse a signature header into its timestamp and v1 signatures.

    Returns None when the header is missing or malformed: no t=, more than
    one t=, a non-integer timestamp, or no v1= values. Unknown schemes
    (e.g. v0=) are ignored.
    """
    if not header:
        return None

    timestamp: Optional[int] = None
    seen_timestamp = False
    signatures = []

    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            if seen_timestamp:
                return None
            seen_timestamp = True
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value.strip())

    if timestamp is None or not signatures:
        return None

    return SignatureHeader(timestamp=timestamp, signatures=tuple(signatures))


def compute_signature(raw_body: bytes, timestamp: int, secret: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 over "<timestamp>.<raw_body>"."""
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    signed_payload = str(timestamp).encode("ascii") + b"." + raw_body
    return hmac.new(key, signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(raw_body: bytes, secret: Union[str, bytes], timestamp: Optional[int] = None) -> str:
    """Produce a header value the verifier accepts (used by tests and tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(raw_body, ts, secret)}"


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Union[str, bytes],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a webhook body against its signature header.

    Args:
        raw_body: Request body bytes exactly as received
        signature_header: Value of the signature header
        secret: Webhook signing secret
        tolerance_seconds: Maximum allowed |now - t|; 0 disables the check
        now: Current unix time (defaults to time.time())

    Returns:
        True if any v1 signature matches and the timestamp is fresh
    """
    if not secret:
        logger.error("Webhook signing secret not configured")
        return False

    parsed = parse_signature_header(signature_header)
    if parsed is None:
        logger.warning("Malformed or missing webhook signature header")
        return False

    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - parsed.timestamp) > tolerance_seconds:
            logger.warning("Webhook signature timestamp outside tolerance", extra={
                "signature_timestamp": parsed.timestamp,
                "tolerance_seconds": tolerance_seconds,
            })
            return False

    expected = compute_signature(raw_body, parsed.timestamp, secret).encode("ascii")

    matched = False
    for candidate in parsed.signatures:
        # no early exit: all candidates are compared
        if hmac.compare_digest(expected, candidate.encode("utf-8", errors="replace")):
            matched = True

    return matched
