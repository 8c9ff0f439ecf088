"""One pass of the digest dispatcher.

Each invocation is independent: load who is subscribed, keep whoever's local
send time is within the tolerance window, mint fresh links and send one email
each. Delivery is capped at one digest per subscriber per local day through a
claim row in ``digest_deliveries``; a failed send releases the claim so a later
run inside the same window can try again.
"""

from __future__ import annotations

import datetime
import logging
from typing import Protocol

from newsletter.config import Settings
from newsletter.email_template import render_digest
from newsletter.errors import DigestRunError, EmailSendError, LinkError
from newsletter.links import build_digest_links
from newsletter.models import Article, RunReport, SendResult, SubscriberPreference
from newsletter.send_window import DEFAULT_TOLERANCE, is_due, local_time, slot_date
from newsletter.tokens import TokenMinter

logger = logging.getLogger(__name__)


class DigestStore(Protocol):
    def get_active_preferences(self) -> list[SubscriberPreference]: ...

    def get_recent_articles(self, limit: int) -> list[Article]: ...

    def get_email_lookup(self) -> dict[str, str]: ...

    def has_delivery(self, user_id: str, local_date: datetime.date) -> bool: ...

    def claim_delivery(self, user_id: str, local_date: datetime.date) -> bool: ...

    def release_delivery(self, user_id: str, local_date: datetime.date) -> None: ...


class DigestMailer(Protocol):
    def send_digest(
        self, to_email: str, subject: str, html_content: str, unsubscribe_url: str | None = None
    ) -> None: ...


class DigestScheduler:
    def __init__(
        self,
        settings: Settings,
        store: DigestStore,
        mailer: DigestMailer,
        minter: TokenMinter,
    ) -> None:
        self.settings = settings
        self.store = store
        self.mailer = mailer
        self.minter = minter

    def due_subscribers(
        self,
        now: datetime.datetime,
        tolerance_minutes: int = DEFAULT_TOLERANCE,
    ) -> list[SubscriberPreference]:
        """Active subscribers whose preferred local time is within the window."""
        try:
            candidates = self.store.get_active_preferences()
        except Exception as exc:
            logger.exception("Could not load subscriber preferences")
            raise DigestRunError("could not load subscribers") from exc
        return [
            p for p in candidates
            if not p.unsubscribed
            and is_due(p.send_hour, p.send_minute, p.send_timezone, now, tolerance_minutes)
        ]

    def _load_content(self) -> tuple[list[Article], dict[str, str]]:
        try:
            articles = self.store.get_recent_articles(self.settings.article_pool_size)
        except Exception as exc:
            logger.exception("Could not load the article pool")
            raise DigestRunError("could not load articles") from exc
        try:
            emails = self.store.get_email_lookup()
        except Exception as exc:
            logger.exception("Could not load subscriber addresses")
            raise DigestRunError("could not load subscriber addresses") from exc
        return articles, emails

    def _check_ready(self, dry_run: bool) -> None:
        try:
            self.minter.rotation.signing_secret()
        except LinkError as exc:
            raise DigestRunError("no token secret configured") from exc
        if not dry_run and not (self.settings.sendgrid_api_key and self.settings.email_from):
            raise DigestRunError("mailer not configured")

    def run(
        self,
        now: datetime.datetime | None = None,
        tolerance_minutes: int = DEFAULT_TOLERANCE,
        dry_run: bool = False,
    ) -> RunReport:
        """Send digests to everyone due at ``now``.

        Raises:
            DigestRunError: subscribers, articles or addresses could not be
                loaded, or the run is misconfigured. Nothing has been minted
                or sent when this is raised.
        """
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        report = RunReport(window_minutes=tolerance_minutes, dry_run=dry_run)

        self._check_ready(dry_run)
        due = self.due_subscribers(now, tolerance_minutes)
        if not due:
            report.message = "No users within window"
            logger.info("No subscribers due at %s (window %d min)", now.isoformat(), tolerance_minutes)
            return report

        articles, emails = self._load_content()
        logger.info("%d subscribers due, %d articles in pool", len(due), len(articles))

        for pref in due:
            report.results.append(self._deliver(pref, articles, emails, now, dry_run))

        logger.info(
            "Digest run finished: %d sent, %d skipped, %d dry",
            report.sent, len(report.skipped), len(report.dry),
        )
        return report

    def _deliver(
        self,
        pref: SubscriberPreference,
        articles: list[Article],
        emails: dict[str, str],
        now: datetime.datetime,
        dry_run: bool,
    ) -> SendResult:
        email = emails.get(pref.user_id)
        if not email:
            return SendResult(pref.user_id, "skipped", error="No email")
        local_date = slot_date(pref.send_hour, pref.send_minute, pref.send_timezone, now)
        if dry_run:
            return self._preview(pref, email, local_date)

        try:
            claimed = self.store.claim_delivery(pref.user_id, local_date)
        except Exception:
            logger.exception("Could not claim delivery for %s", pref.user_id)
            return SendResult(pref.user_id, "skipped", email=email, error="Delivery log unavailable")
        if not claimed:
            return SendResult(pref.user_id, "skipped", email=email, error="Already sent today")

        links = build_digest_links(
            self.minter, self.settings.base_url, pref.user_id, articles, now=now.timestamp()
        )
        html = render_digest(pref, articles, links, title=self.settings.email_subject)
        try:
            self.mailer.send_digest(
                email, self.settings.email_subject, html, unsubscribe_url=links.unsubscribe_url
            )
        except EmailSendError as exc:
            logger.error("Digest to %s not sent: %s", email, exc)
            self._release(pref.user_id, local_date)
            return SendResult(pref.user_id, "skipped", email=email, error=str(exc))

        logger.info(
            "Sent digest to %s (local %s)", email,
            local_time(now, pref.send_timezone).strftime("%H:%M"),
        )
        return SendResult(pref.user_id, "sent", email=email)

    def _preview(self, pref: SubscriberPreference, email: str, local_date: datetime.date) -> SendResult:
        """What a real run would do, without claiming the day."""
        try:
            delivered = self.store.has_delivery(pref.user_id, local_date)
        except Exception:
            logger.exception("Could not check delivery for %s", pref.user_id)
            return SendResult(pref.user_id, "skipped", email=email, error="Delivery log unavailable")
        if delivered:
            return SendResult(pref.user_id, "skipped", email=email, error="Already sent today")
        return SendResult(pref.user_id, "dry", email=email)

    def _release(self, user_id: str, local_date: datetime.date) -> None:
        try:
            self.store.release_delivery(user_id, local_date)
        except Exception:
            logger.exception("Could not release delivery claim for %s", user_id)
