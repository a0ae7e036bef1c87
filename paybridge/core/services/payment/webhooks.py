"""
Webhook signature schemes shared by the processor adapters.

Every verifier takes the raw payload exactly as received, the signature
header value and the shared secret, and returns a bool. None of them raise
on malformed input; a signature that cannot be parsed simply fails.
"""

import hashlib
import hmac
import json
from typing import Any
from urllib.parse import parse_qsl

import stripe as stripe_sdk

from paybridge.core.config import webhook_logger


def _to_text(payload: str | bytes) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    return payload


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def compute_hmac_sha256(secret: str, payload: str | bytes) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def canonical_json(payload: dict[str, Any]) -> str:
    """Compact JSON rendering used when a caller hands over an already parsed payload."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def verify_timestamped_hmac(
    payload: str | bytes,
    signature: str,
    secret: str,
    *,
    tolerance: int | None = None,
) -> bool:
    """Verify a ``t=<unix_ts>,v1=<hex>`` header over ``"<t>.<payload>"``.

    Parameters
    ----------
    payload : str | bytes
        The raw request body.
    signature : str
        The signature header value.
    secret : str
        The endpoint signing secret.
    tolerance : int | None, optional
        Maximum age of the timestamp in seconds. ``None`` accepts any age.

    Returns
    -------
    bool
        True when one of the ``v1`` signatures matches.
    """
    if not signature or not secret:
        return False
    try:
        stripe_sdk.WebhookSignature.verify_header(
            _to_text(payload), signature, secret, tolerance=tolerance
        )
        return True
    except stripe_sdk.SignatureVerificationError as exc:
        webhook_logger.warning(f"Timestamped signature rejected: {exc.user_message or exc}")
        return False
    except UnicodeDecodeError:
        return False


def sign_timestamped_hmac(payload: str | bytes, secret: str, timestamp: int) -> str:
    """Build a ``t=..,v1=..`` header for ``payload``."""
    signed = f"{timestamp}.{_to_text(payload)}"
    return f"t={timestamp},v1={compute_hmac_sha256(secret, signed)}"


def parse_payload_fields(payload: str | bytes | dict[str, Any]) -> dict[str, Any]:
    if isinstance(payload, dict):
        return dict(payload)
    text = _to_text(payload).strip()
    if text.startswith("{"):
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("Webhook payload is not an object")
        return parsed
    return dict(parse_qsl(text, keep_blank_values=True))


def sorted_fields_digest(fields: dict[str, Any], signature_field: str = "p_signature") -> str:
    """SHA1 hex digest of the sorted ``key=value`` concatenation, signature field removed."""
    remaining = {k: v for k, v in fields.items() if k != signature_field}
    joined = "".join(f"{key}={remaining[key]}" for key in sorted(remaining))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def verify_sorted_fields(
    payload: str | bytes | dict[str, Any],
    signature: str,
    secret: str | None = None,
    *,
    signature_field: str = "p_signature",
) -> bool:
    """Verify a sorted-field signature.

    The payload may be JSON, form-encoded or already parsed. When the
    payload embeds its own signature field it must agree with ``signature``.
    ``secret`` is accepted for interface symmetry; the digest is unkeyed.
    """
    if not signature:
        return False
    try:
        fields = parse_payload_fields(payload)
    except (ValueError, UnicodeDecodeError):
        return False

    embedded = fields.get(signature_field)
    if embedded is not None and not hmac.compare_digest(str(embedded), signature):
        return False

    expected = sorted_fields_digest(fields, signature_field)
    return hmac.compare_digest(expected, signature)


def verify_hmac_sha256(payload: str | bytes, signature: str, secret: str) -> bool:
    """Verify a plain hex HMAC-SHA256 over the raw body."""
    if not signature or not secret:
        return False
    expected = compute_hmac_sha256(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


__all__ = [
    "canonical_json",
    "compute_hmac_sha256",
    "parse_payload_fields",
    "sign_timestamped_hmac",
    "sorted_fields_digest",
    "verify_hmac_sha256",
    "verify_sorted_fields",
    "verify_timestamped_hmac",
]
