"""HMAC-SHA256 signing of webhook envelopes.

The signature covers the exact bytes sent on the wire, keyed with the
business's own secret. Receivers recompute it over the raw request body and
compare with :func:`verify_signature`.
"""
from __future__ import annotations

import hmac
import json
import secrets
from hashlib import sha256

from webhook_service.domain.webhooks import WebhookEnvelope

SIGNATURE_PREFIX = "sha256="


def serialize_envelope(envelope: WebhookEnvelope) -> bytes:
    """Canonical JSON encoding used both for signing and as the request body."""
    return json.dumps(
        envelope.model_dump(mode="json"),
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_signature(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign(envelope: WebhookEnvelope, secret: str) -> str:
    return compute_signature(secret, serialize_envelope(envelope))


def verify_signature(secret: str, body_bytes: bytes, header: str | None) -> bool:
    """Constant-time check of an ``X-BMGlass-Signature`` header value."""
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(secret, body_bytes)
    return hmac.compare_digest(expected.encode("ascii"), header.strip().encode("ascii", "replace"))


def generate_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(32)}"
