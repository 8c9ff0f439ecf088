"""Typed failures for capability links, the nonce ledger and digest runs."""

from __future__ import annotations

import enum


class LinkErrorKind(enum.Enum):
    BAD_FORMAT = "bad_format"
    BAD_SIGNATURE = "bad_signature"
    BAD_PAYLOAD = "bad_payload"
    EXPIRED = "expired"
    INVALID_PAYLOAD = "invalid_payload"
    LINK_ALREADY_USED = "link_already_used"
    MISCONFIGURED = "misconfigured"
    STORAGE_UNAVAILABLE = "storage_unavailable"


# What the person clicking the link gets to see. Forgery-related kinds all
# share one message so the response never says which check failed.
_USER_MESSAGES = {
    LinkErrorKind.BAD_FORMAT: "This link is invalid.",
    LinkErrorKind.BAD_SIGNATURE: "This link is invalid.",
    LinkErrorKind.BAD_PAYLOAD: "This link is invalid.",
    LinkErrorKind.INVALID_PAYLOAD: "This link is invalid.",
    LinkErrorKind.EXPIRED: "This link has expired.",
    LinkErrorKind.LINK_ALREADY_USED: "This link has already been used.",
    LinkErrorKind.MISCONFIGURED: "Something went wrong on our side. Please try again later.",
    LinkErrorKind.STORAGE_UNAVAILABLE: "Something went wrong on our side. Please try again later.",
}

_HTTP_STATUS = {
    LinkErrorKind.LINK_ALREADY_USED: 410,
    LinkErrorKind.MISCONFIGURED: 500,
    LinkErrorKind.STORAGE_UNAVAILABLE: 503,
}


class LinkError(Exception):
    """A capability link could not be honoured."""

    def __init__(self, kind: LinkErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self.kind]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.kind, 400)

    @property
    def is_server_fault(self) -> bool:
        return self.kind in (LinkErrorKind.MISCONFIGURED, LinkErrorKind.STORAGE_UNAVAILABLE)


class NonceStoreError(Exception):
    """The nonce ledger could not record or check a nonce. Retryable."""


class DigestRunError(Exception):
    """A scheduler run had to abort before sending anything."""


class EmailSendError(Exception):
    """The mailer refused, failed or timed out for one message."""
