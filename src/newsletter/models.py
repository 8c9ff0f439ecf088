from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any

DEFAULT_TIMEZONE = "UTC"
DEFAULT_SEND_HOUR = 9
DEFAULT_SEND_MINUTE = 0


@dataclass(frozen=True)
class CapabilityPayload:
    """The signed body of a capability link.

    Field names on the wire are contractual: ``user_id``, ``exp`` and ``n``.
    """

    user_id: str
    exp: int | None = None
    nonce: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilityPayload:
        user_id = data.get("user_id")
        exp = data.get("exp")
        nonce = data.get("n")
        extra = {k: v for k, v in data.items() if k not in ("user_id", "exp", "n")}
        return cls(
            user_id=user_id if isinstance(user_id, str) else "",
            exp=exp if isinstance(exp, int) and not isinstance(exp, bool) else None,
            nonce=nonce if isinstance(nonce, str) and nonce else None,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON object that gets signed."""
        data: dict[str, Any] = {"user_id": self.user_id}
        if self.exp is not None:
            data["exp"] = self.exp
        if self.nonce is not None:
            data["n"] = self.nonce
        data.update(self.extra)
        return data


@dataclass
class SubscriberPreference:
    """A row of ``user_prefs`` as seen by the scheduler."""

    user_id: str
    send_timezone: str = DEFAULT_TIMEZONE
    send_hour: int = DEFAULT_SEND_HOUR
    send_minute: int = DEFAULT_SEND_MINUTE
    unsubscribed: bool = False
    interests: str | None = None
    timeline: str | None = None


@dataclass
class Article:
    """An entry in the shared article pool."""

    id: str
    title: str
    url: str
    summary: str | None = None
    created_at: datetime.datetime | None = None


@dataclass
class SendResult:
    """Outcome of one subscriber's digest attempt."""

    user_id: str
    status: str  # "sent", "skipped", "dry"
    email: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = {"user_id": self.user_id, "status": self.status}
        if self.email is not None:
            data["email"] = self.email
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RunReport:
    """Aggregate result of one scheduler invocation."""

    window_minutes: int
    dry_run: bool
    results: list[SendResult] = field(default_factory=list)
    message: str | None = None

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.status == "sent")

    @property
    def dry(self) -> list[SendResult]:
        return [r for r in self.results if r.status == "dry"]

    @property
    def skipped(self) -> list[SendResult]:
        return [r for r in self.results if r.status == "skipped"]

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dict."""
        data = {
            "ok": True,
            "sent": self.sent,
            "dryRun": self.dry_run,
            "windowMinutes": self.window_minutes,
            "skipped": [r.to_dict() for r in self.skipped],
        }
        if self.dry_run:
            data["wouldSend"] = [r.to_dict() for r in self.dry]
        if self.message:
            data["message"] = self.message
        return data
