"""Database layer — Supabase (Postgres) client and the queries the core needs."""

from __future__ import annotations

import datetime
import logging
from typing import Any

from postgrest.exceptions import APIError
from supabase import Client, create_client

from newsletter.config import Settings
from newsletter.errors import NonceStoreError
from newsletter.models import (
    DEFAULT_SEND_HOUR,
    DEFAULT_SEND_MINUTE,
    DEFAULT_TIMEZONE,
    Article,
    SubscriberPreference,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
PREF_COLUMNS = "user_id, interests, timeline, unsubscribed, send_timezone, send_hour, send_minute"
MAX_USERS = 2000


class Database:
    """Thin wrapper around a service-role Supabase client."""

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Client:
        """Return a cached Supabase client, created on first use."""
        if self._client is None:
            if not self.settings.database_configured:
                raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set")
            self._client = create_client(self.settings.supabase_url, self.settings.supabase_key)
        return self._client

    # -----------------------------------------------------------------------
    # Subscriber preferences
    # -----------------------------------------------------------------------

    def get_active_preferences(self) -> list[SubscriberPreference]:
        """Return every preference row that is not unsubscribed."""
        result = self.client.table("user_prefs").select(PREF_COLUMNS).execute()
        prefs = [_row_to_preference(r) for r in (result.data or [])]
        return [p for p in prefs if not p.unsubscribed]

    def get_preference(self, user_id: str) -> SubscriberPreference | None:
        result = (
            self.client.table("user_prefs")
            .select(PREF_COLUMNS)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return _row_to_preference(result.data[0])

    def set_unsubscribed(self, user_id: str, unsubscribed: bool) -> None:
        """Flip the subscription flag, creating the row if needed."""
        self.client.table("user_prefs").upsert(
            {"user_id": user_id, "unsubscribed": unsubscribed}, on_conflict="user_id"
        ).execute()
        logger.info("%s %s", "Unsubscribed" if unsubscribed else "Resubscribed", user_id)

    def update_preferences(
        self,
        user_id: str,
        interests: str,
        timeline: str,
        unsubscribed: bool,
        send_timezone: str | None = None,
        send_hour: int | None = None,
        send_minute: int | None = None,
    ) -> None:
        row: dict[str, Any] = {
            "user_id": user_id,
            "interests": interests,
            "timeline": timeline,
            "unsubscribed": unsubscribed,
        }
        if send_timezone:
            row["send_timezone"] = send_timezone
        if send_hour is not None:
            row["send_hour"] = send_hour
        if send_minute is not None:
            row["send_minute"] = send_minute
        self.client.table("user_prefs").upsert(row, on_conflict="user_id").execute()
        logger.info("Updated preferences for %s", user_id)

    # -----------------------------------------------------------------------
    # Users (auth schema)
    # -----------------------------------------------------------------------

    def get_email_lookup(self) -> dict[str, str]:
        """Map user id -> email address for every auth user."""
        users = self.client.auth.admin.list_users(page=1, per_page=MAX_USERS)
        return {u.id: u.email for u in (users or []) if u.id and u.email}

    def find_user_id(self, email: str) -> str | None:
        email = email.strip().lower()
        for user_id, address in self.get_email_lookup().items():
            if address.lower() == email:
                return user_id
        return None

    # -----------------------------------------------------------------------
    # Articles and surveys
    # -----------------------------------------------------------------------

    def get_recent_articles(self, limit: int) -> list[Article]:
        """Return the newest ``limit`` articles, most recent first."""
        result = (
            self.client.table("articles")
            .select("id, title, url, summary, created_at")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [_row_to_article(r) for r in (result.data or [])]

    def count_articles(self) -> int:
        result = self.client.table("articles").select("id", count="exact", head=True).execute()
        return result.count or 0

    def insert_survey(
        self,
        user_id: str,
        article_id: str | None,
        question: str | None,
        answer: str | None,
        meta: Any = None,
    ) -> None:
        row: dict[str, Any] = {
            "user_id": user_id,
            "question": question,
            "answer": answer,
            "meta": meta,
        }
        if article_id:
            row["article_id"] = article_id
        self.client.table("surveys").insert(row).execute()
        logger.info("Recorded survey answer %r from %s", answer, user_id)

    # -----------------------------------------------------------------------
    # Nonce ledger
    # -----------------------------------------------------------------------

    def insert_nonce(self, nonce: str) -> bool:
        """Insert into ``used_nonces``. False if the nonce is already there."""
        try:
            self.client.table("used_nonces").insert({"nonce": nonce}).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                return False
            raise NonceStoreError(f"used_nonces insert failed: {exc.message}") from exc
        except Exception as exc:
            raise NonceStoreError(f"used_nonces insert failed: {exc}") from exc
        return True

    def prune_nonces(self, older_than: datetime.datetime) -> int:
        """Delete ledger rows consumed before ``older_than``.

        Only safe once every token that could carry those nonces has expired.
        """
        result = (
            self.client.table("used_nonces")
            .delete()
            .lt("used_at", older_than.isoformat())
            .execute()
        )
        count = len(result.data) if result.data else 0
        logger.info("Pruned %d used nonces older than %s", count, older_than.isoformat())
        return count

    # -----------------------------------------------------------------------
    # Per-day delivery marker
    # -----------------------------------------------------------------------

    def claim_delivery(self, user_id: str, local_date: datetime.date) -> bool:
        """Record that today's digest is going out. False if already claimed."""
        try:
            self.client.table("digest_deliveries").insert(
                {"user_id": user_id, "local_date": local_date.isoformat()}
            ).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                return False
            raise
        return True

    def has_delivery(self, user_id: str, local_date: datetime.date) -> bool:
        """True if the digest for ``user_id`` on ``local_date`` was already claimed."""
        result = (
            self.client.table("digest_deliveries")
            .select("user_id")
            .eq("user_id", user_id)
            .eq("local_date", local_date.isoformat())
            .limit(1)
            .execute()
        )
        return bool(result.data)

    def release_delivery(self, user_id: str, local_date: datetime.date) -> None:
        """Undo a claim after a failed send so a later run can retry."""
        (
            self.client.table("digest_deliveries")
            .delete()
            .eq("user_id", user_id)
            .eq("local_date", local_date.isoformat())
            .execute()
        )


# ---------------------------------------------------------------------------
# Row → dataclass helpers
# ---------------------------------------------------------------------------

def _row_to_preference(row: dict) -> SubscriberPreference:
    hour = row.get("send_hour")
    minute = row.get("send_minute")
    return SubscriberPreference(
        user_id=row["user_id"],
        send_timezone=row.get("send_timezone") or DEFAULT_TIMEZONE,
        send_hour=hour if isinstance(hour, int) else DEFAULT_SEND_HOUR,
        send_minute=minute if isinstance(minute, int) else DEFAULT_SEND_MINUTE,
        unsubscribed=bool(row.get("unsubscribed")),
        interests=row.get("interests"),
        timeline=row.get("timeline"),
    )


def _row_to_article(row: dict) -> Article:
    created = row.get("created_at")
    return Article(
        id=str(row["id"]),
        title=row["title"],
        url=row["url"],
        summary=row.get("summary"),
        created_at=datetime.datetime.fromisoformat(created) if created else None,
    )
