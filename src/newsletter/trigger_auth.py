"""Authenticate whoever is asking for a digest run."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from newsletter.config import Settings

logger = logging.getLogger(__name__)


def _secret_matches(provided: str, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def bearer_token(authorization: str | None) -> str:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip()
    return ""


def _signature_candidates(signature: str) -> list[bytes]:
    """Decode a webhook signature sent as hex or base64, with or without ``sha256=``."""
    raw = signature.strip()
    texts = [raw]
    if raw.startswith("sha256="):
        texts.append(raw[len("sha256="):])
    decoded: list[bytes] = []
    for text in texts:
        try:
            decoded.append(bytes.fromhex(text))
        except ValueError:
            pass
        try:
            decoded.append(base64.b64decode(text, validate=True))
        except (binascii.Error, ValueError):
            pass
    return decoded


def webhook_signature_valid(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 body signature in constant time."""
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return any(hmac.compare_digest(candidate, digest) for candidate in _signature_candidates(signature))


def authorize_run(
    settings: Settings,
    *,
    query_secret: str = "",
    authorization: str | None = None,
    cron_header: str | None = None,
    signature: str | None = None,
    body: bytes = b"",
) -> bool:
    """True if the request carries the operator secret or a signed cron webhook."""
    manual = _secret_matches(query_secret, settings.run_secret) or _secret_matches(
        bearer_token(authorization), settings.run_secret
    )
    cron = bool(cron_header) and webhook_signature_valid(body, signature, settings.webhook_secret)
    logger.info(
        "Digest run auth: manual=%s cron=%s signature_present=%s run_secret_configured=%s",
        manual, cron, bool(signature), bool(settings.run_secret),
    )
    return manual or cron
