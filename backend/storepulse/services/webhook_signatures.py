"""Webhook signature verification.

WHAT:
    Authenticates inbound webhook deliveries for each supported platform.
    1. Shopify: base64 HMAC-SHA256 of the raw body (X-Shopify-Hmac-SHA256)
    2. Stripe: timestamped HMAC-SHA256 (Stripe-Signature: t=...,v1=...)

WHY:
    - Anyone can POST to a public webhook URL; only a valid signature proves
      the delivery came from the platform holding our shared secret
    - Stripe's timestamp defeats replay of a captured, correctly signed body

RULES:
    - Always verify the raw, unparsed request bytes. Re-serialized JSON will
      not match the platform's digest.
    - Digests are compared with hmac.compare_digest (constant time).
    - Functions here never raise: every failure comes back as a
      VerificationResult with a distinguishable reason for logging.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://docs.stripe.com/webhooks#verify-manually
"""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Stripe's default tolerance between the signed timestamp and our clock
DEFAULT_TOLERANCE_SECONDS = 300

STRIPE_SIGNATURE_SCHEME = "v1"


class SignatureFailure(str, enum.Enum):
    missing_secret = "missing_secret"
    missing_header = "missing_header"
    malformed_header = "malformed_header"
    missing_fields = "missing_fields"
    timestamp_out_of_tolerance = "timestamp_out_of_tolerance"
    digest_mismatch = "digest_mismatch"
    invalid_json = "invalid_json"


@dataclass
class VerificationResult:
    """Outcome of a signature check.

    Attributes:
        ok: True when the delivery is authentic
        failure: Why verification failed (None when ok)
        event: Decoded event for schemes that parse the body (Stripe)
    """

    ok: bool
    failure: Optional[SignatureFailure] = None
    event: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, event: Optional[Dict[str, Any]] = None) -> "VerificationResult":
        return cls(ok=True, event=event)

    @classmethod
    def failed(cls, failure: SignatureFailure) -> "VerificationResult":
        return cls(ok=False, failure=failure)


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


# =============================================================================
# SHOPIFY (HMAC MODE)
# =============================================================================

def compute_shopify_hmac(raw_body: bytes, secret: str) -> str:
    """Return the base64 HMAC-SHA256 Shopify sends in X-Shopify-Hmac-SHA256."""
    digest = hmac.new(_to_bytes(secret), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify_hmac(
    raw_body: bytes,
    hmac_header: Optional[str],
    secret: Optional[str],
) -> VerificationResult:
    """Verify that a webhook request came from Shopify.

    Args:
        raw_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: Shared webhook secret for the app

    Returns:
        VerificationResult (no event attached: the caller parses the body)
    """
    if not secret:
        return VerificationResult.failed(SignatureFailure.missing_secret)

    if not hmac_header:
        return VerificationResult.failed(SignatureFailure.missing_header)

    computed = compute_shopify_hmac(raw_body, secret)

    # Both sides are ASCII base64; compare the bytes in constant time
    if not hmac.compare_digest(computed.encode("utf-8"), hmac_header.strip().encode("utf-8")):
        return VerificationResult.failed(SignatureFailure.digest_mismatch)

    return VerificationResult.success()


# =============================================================================
# STRIPE (TIMESTAMPED MODE)
# =============================================================================

def compute_stripe_signature(raw_body: bytes, timestamp: int | str, secret: str) -> str:
    """Return the hex v1 signature for a Stripe payload signed at `timestamp`."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(_to_bytes(secret), signed_payload, hashlib.sha256).hexdigest()


def parse_stripe_signature_header(header: str) -> Optional[Dict[str, List[str]]]:
    """Split `t=...,v1=...,v1=...,v0=...` into {key: [values]}.

    Returns None when any element is not a key=value pair.
    """
    parsed: Dict[str, List[str]] = {}
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep or not key or not value:
            return None
        parsed.setdefault(key, []).append(value)
    return parsed


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> VerificationResult:
    """Verify a Stripe-Signature header and decode the event.

    Args:
        raw_body: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Endpoint signing secret (whsec_...)
        tolerance: Max allowed |now - t| in seconds
        now: Current unix time (injectable for tests)

    Returns:
        VerificationResult with the parsed event on success.
    """
    if not secret:
        return VerificationResult.failed(SignatureFailure.missing_secret)

    if not signature_header:
        return VerificationResult.failed(SignatureFailure.missing_header)

    elements = parse_stripe_signature_header(signature_header)
    if elements is None:
        return VerificationResult.failed(SignatureFailure.malformed_header)

    timestamps = elements.get("t")
    signatures = elements.get(STRIPE_SIGNATURE_SCHEME)
    if not timestamps or not signatures:
        return VerificationResult.failed(SignatureFailure.missing_fields)

    try:
        timestamp = int(timestamps[0])
    except ValueError:
        return VerificationResult.failed(SignatureFailure.malformed_header)

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        return VerificationResult.failed(SignatureFailure.timestamp_out_of_tolerance)

    expected = compute_stripe_signature(raw_body, timestamps[0], secret).encode("utf-8")

    # Stripe may send several v1 signatures during secret rotation
    matched = False
    for candidate in signatures:
        if hmac.compare_digest(expected, candidate.encode("utf-8")):
            matched = True
    if not matched:
        return VerificationResult.failed(SignatureFailure.digest_mismatch)

    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return VerificationResult.failed(SignatureFailure.invalid_json)

    if not isinstance(event, dict):
        return VerificationResult.failed(SignatureFailure.invalid_json)

    return VerificationResult.success(event)
