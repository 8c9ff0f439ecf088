"""HMAC-signed capability tokens for links in outgoing email.

Wire format: ``<base64url(payload json)>.<base64url(hmac-sha256)>``, both
halves unpadded. The MAC is computed over the base64url *text* of the
payload, so verification never has to decode untrusted bytes first.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import secrets
import time
from typing import Any

from newsletter.config import Settings
from newsletter.errors import LinkError, LinkErrorKind
from newsletter.models import CapabilityPayload

NONCE_BYTES = 16

_B64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _mac(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


def encode(payload: dict[str, Any], secret: str) -> str:
    """Sign ``payload`` with ``secret`` and return the token string."""
    if not secret:
        raise LinkError(LinkErrorKind.MISCONFIGURED, "empty signing secret")
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    payload_b64 = b64url_encode(body)
    return f"{payload_b64}.{_mac(payload_b64, secret)}"


def decode(token: str, secret: str, now: float | None = None) -> dict[str, Any]:
    """Verify ``token`` against one secret and return its payload.

    Raises:
        LinkError: ``BAD_FORMAT``, ``BAD_SIGNATURE``, ``BAD_PAYLOAD`` or
            ``EXPIRED``. Expiry is only looked at once the signature checks
            out, so a forged token never learns anything about its ``exp``.
    """
    payload_b64, sep, sig_b64 = token.partition(".")
    if not sep or not payload_b64 or not sig_b64:
        raise LinkError(LinkErrorKind.BAD_FORMAT, "token must have two parts")
    if not _B64URL.match(payload_b64) or not _B64URL.match(sig_b64):
        raise LinkError(LinkErrorKind.BAD_FORMAT, "token is not base64url")

    # Compare the canonical encodings rather than decoded bytes: unpadded
    # base64 ignores the trailing bits of the last character.
    expected = _mac(payload_b64, secret)
    if not hmac.compare_digest(expected, sig_b64):
        raise LinkError(LinkErrorKind.BAD_SIGNATURE)

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise LinkError(LinkErrorKind.BAD_PAYLOAD, "payload is not JSON") from None
    if not isinstance(payload, dict):
        raise LinkError(LinkErrorKind.BAD_PAYLOAD, "payload is not an object")

    exp = payload.get("exp")
    if exp is not None:
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise LinkError(LinkErrorKind.BAD_PAYLOAD, "exp is not a number")
        current = int(time.time() if now is None else now)
        if current > exp:
            raise LinkError(LinkErrorKind.EXPIRED)
    return payload


def new_nonce() -> str:
    """Random URL-safe nonce with 128 bits of entropy."""
    return secrets.token_urlsafe(NONCE_BYTES)


class SecretRotation:
    """Which secret signs new tokens and which ones are accepted.

    A primary and an optional alternate secret can be live at the same time,
    so links already sitting in inboxes keep working while a new secret is
    phased in.
    """

    def __init__(self, primary: str = "", alternate: str = "", sign_with_alt: bool = False) -> None:
        self.primary = primary
        self.alternate = alternate
        self.sign_with_alt = sign_with_alt

    @classmethod
    def from_settings(cls, settings: Settings) -> SecretRotation:
        return cls(settings.secret, settings.secret_alt, settings.sign_with_alt)

    @property
    def configured(self) -> bool:
        return bool(self.primary or self.alternate)

    def signing_secret(self) -> str:
        if self.sign_with_alt and self.alternate:
            return self.alternate
        secret = self.primary or self.alternate
        if not secret:
            raise LinkError(LinkErrorKind.MISCONFIGURED, "no token secret configured")
        return secret

    def verification_secrets(self) -> list[str]:
        candidates = [s for s in (self.primary, self.alternate) if s]
        if not candidates:
            raise LinkError(LinkErrorKind.MISCONFIGURED, "no token secret configured")
        return candidates


class TokenMinter:
    """Mints single-use capability tokens for one subscriber at a time."""

    def __init__(self, rotation: SecretRotation, ttl_seconds: int) -> None:
        self.rotation = rotation
        self.ttl_seconds = ttl_seconds

    def mint(self, user_id: str, now: float | None = None, single_use: bool = True) -> str:
        if not user_id:
            raise ValueError("user_id required")
        issued = int(time.time() if now is None else now)
        payload = CapabilityPayload(
            user_id=user_id,
            exp=issued + self.ttl_seconds,
            nonce=new_nonce() if single_use else None,
        )
        return encode(payload.to_dict(), self.rotation.signing_secret())
