from __future__ import annotations

import datetime
import threading

import pytest

from newsletter.config import Settings
from newsletter.errors import EmailSendError, NonceStoreError
from newsletter.models import Article, SubscriberPreference
from newsletter.nonces import NonceLedger
from newsletter.tokens import SecretRotation, TokenMinter
from newsletter.verifier import CapabilityVerifier

PRIMARY = "primary-secret"
ALTERNATE = "alternate-secret"


class FakeStore:
    """In-memory stand-in for the Supabase-backed Database."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.nonces: set[str] = set()
        self.prefs: dict[str, SubscriberPreference] = {}
        self.emails: dict[str, str] = {}
        self.articles: list[Article] = []
        self.surveys: list[dict] = []
        self.deliveries: set[tuple[str, datetime.date]] = set()
        self.nonce_store_down = False
        self.prefs_down = False
        self.prefs_write_down = False
        self.articles_down = False
        self.calls: list[str] = []

    # nonce ledger
    def insert_nonce(self, nonce: str) -> bool:
        if self.nonce_store_down:
            raise NonceStoreError("connection refused")
        with self._lock:
            if nonce in self.nonces:
                return False
            self.nonces.add(nonce)
            return True

    # preferences
    def add_subscriber(self, user_id, email=None, hour=9, minute=0, tz="UTC", unsubscribed=False):
        self.prefs[user_id] = SubscriberPreference(
            user_id=user_id, send_timezone=tz, send_hour=hour, send_minute=minute,
            unsubscribed=unsubscribed,
        )
        if email:
            self.emails[user_id] = email

    def get_active_preferences(self):
        self.calls.append("get_active_preferences")
        if self.prefs_down:
            raise RuntimeError("user_prefs unavailable")
        return [p for p in self.prefs.values() if not p.unsubscribed]

    def get_preference(self, user_id):
        return self.prefs.get(user_id)

    def set_unsubscribed(self, user_id, unsubscribed):
        pref = self.prefs.setdefault(user_id, SubscriberPreference(user_id=user_id))
        pref.unsubscribed = unsubscribed

    def update_preferences(self, user_id, interests, timeline, unsubscribed,
                           send_timezone=None, send_hour=None, send_minute=None):
        if self.prefs_write_down:
            raise RuntimeError("user_prefs write failed")
        pref = self.prefs.setdefault(user_id, SubscriberPreference(user_id=user_id))
        pref.interests = interests
        pref.timeline = timeline
        pref.unsubscribed = unsubscribed
        if send_timezone:
            pref.send_timezone = send_timezone
        if send_hour is not None:
            pref.send_hour = send_hour
        if send_minute is not None:
            pref.send_minute = send_minute

    # users, articles, surveys
    def get_email_lookup(self):
        self.calls.append("get_email_lookup")
        return dict(self.emails)

    def find_user_id(self, email):
        for user_id, address in self.emails.items():
            if address == email:
                return user_id
        return None

    def get_recent_articles(self, limit):
        self.calls.append("get_recent_articles")
        if self.articles_down:
            raise RuntimeError("articles unavailable")
        return self.articles[:limit]

    def count_articles(self):
        return len(self.articles)

    def insert_survey(self, user_id, article_id, question, answer, meta=None):
        self.surveys.append({
            "user_id": user_id, "article_id": article_id,
            "question": question, "answer": answer, "meta": meta,
        })

    # delivery marker
    def claim_delivery(self, user_id, local_date):
        key = (user_id, local_date)
        if key in self.deliveries:
            return False
        self.deliveries.add(key)
        return True

    def has_delivery(self, user_id, local_date):
        return (user_id, local_date) in self.deliveries

    def release_delivery(self, user_id, local_date):
        self.deliveries.discard((user_id, local_date))


class FakeMailer:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()

    def send_digest(self, to_email, subject, html_content, unsubscribe_url=None):
        if to_email in self.fail_for:
            raise EmailSendError("timed out")
        self.sent.append({
            "to": to_email, "subject": subject, "html": html_content,
            "unsubscribe_url": unsubscribe_url,
        })


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_key="service-role",
        secret=PRIMARY,
        secret_alt=ALTERNATE,
        base_url="https://news.example.com",
        run_secret="run-secret",
        webhook_secret="hook-secret",
        preview_secret="preview-secret",
        sendgrid_api_key="SG.test",
        email_from="digest@example.com",
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def rotation() -> SecretRotation:
    return SecretRotation(PRIMARY, ALTERNATE)


@pytest.fixture
def minter(rotation) -> TokenMinter:
    return TokenMinter(rotation, ttl_seconds=7 * 24 * 3600)


@pytest.fixture
def verifier(rotation, store) -> CapabilityVerifier:
    return CapabilityVerifier(rotation, NonceLedger(store))
