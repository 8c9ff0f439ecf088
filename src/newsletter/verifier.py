"""The one place capability links are checked.

Every link handler calls :meth:`CapabilityVerifier.verify_and_consume`;
none of them do their own signature or nonce work.
"""

from __future__ import annotations

import logging
from typing import Sequence

from newsletter import tokens
from newsletter.errors import LinkError, LinkErrorKind, NonceStoreError
from newsletter.models import CapabilityPayload
from newsletter.nonces import NonceLedger, NonceStatus
from newsletter.tokens import SecretRotation

logger = logging.getLogger(__name__)

# Least sensitive first: format errors say nothing about the secret, a
# signature failure is what a forger most wants to learn about.
_FAILURE_PREFERENCE = (
    LinkErrorKind.BAD_FORMAT,
    LinkErrorKind.EXPIRED,
    LinkErrorKind.BAD_SIGNATURE,
)


class CapabilityVerifier:
    def __init__(self, rotation: SecretRotation, ledger: NonceLedger) -> None:
        self.rotation = rotation
        self.ledger = ledger

    def _decode(self, token: str, now: float | None) -> dict:
        secrets = self.rotation.verification_secrets()
        failures: list[LinkError] = []
        for secret in secrets:
            try:
                return tokens.decode(token, secret, now=now)
            except LinkError as exc:
                if exc.kind != LinkErrorKind.BAD_SIGNATURE:
                    # Anything past the signature check is definitive for
                    # this token; format errors are the same for every secret.
                    raise
                failures.append(exc)
        raise _most_informative(failures)

    def verify(
        self,
        token: str,
        required_fields: Sequence[str] = ("user_id",),
        now: float | None = None,
    ) -> CapabilityPayload:
        """Check signature, expiry and required fields without consuming."""
        if not token:
            raise LinkError(LinkErrorKind.BAD_FORMAT, "missing token")
        data = self._decode(token, now)
        for name in required_fields:
            value = data.get(name)
            if value is None or value == "":
                raise LinkError(LinkErrorKind.INVALID_PAYLOAD, f"missing {name}")
        payload = CapabilityPayload.from_dict(data)
        if not payload.user_id:
            raise LinkError(LinkErrorKind.INVALID_PAYLOAD, "user_id is not a string")
        return payload

    def verify_and_consume(
        self,
        token: str,
        required_fields: Sequence[str] = ("user_id",),
        now: float | None = None,
    ) -> CapabilityPayload:
        """Verify ``token`` and burn its nonce.

        Returns the payload only once both the signature and the nonce check
        have passed. Tokens without a nonce are replayable and skip the ledger.

        Raises:
            LinkError: with the failing :class:`LinkErrorKind`.
        """
        payload = self.verify(token, required_fields, now=now)
        if payload.nonce is None:
            return payload
        try:
            status = self.ledger.consume(payload.nonce)
        except NonceStoreError as exc:
            raise LinkError(LinkErrorKind.STORAGE_UNAVAILABLE, str(exc)) from exc
        if status is NonceStatus.ALREADY_USED:
            raise LinkError(LinkErrorKind.LINK_ALREADY_USED)
        return payload


def _most_informative(failures: list[LinkError]) -> LinkError:
    for kind in _FAILURE_PREFERENCE:
        for exc in failures:
            if exc.kind == kind:
                return exc
    return LinkError(LinkErrorKind.BAD_SIGNATURE)
