"""Process-wide settings, read from the environment once at start-up."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_BASE_URL = "http://localhost:5000"
DEFAULT_SUBJECT = "Your Newsletter"


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Explicit configuration passed into every component that needs it."""

    supabase_url: str = ""
    supabase_key: str = ""
    secret: str = ""
    secret_alt: str = ""
    sign_with_alt: bool = False
    base_url: str = DEFAULT_BASE_URL
    run_secret: str = ""
    webhook_secret: str = ""
    preview_secret: str = ""
    sendgrid_api_key: str = ""
    email_from: str = ""
    email_subject: str = DEFAULT_SUBJECT
    token_ttl_days: int = 7
    article_pool_size: int = 5
    mailer_timeout_seconds: int = 10

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``env`` (defaults to ``os.environ``).

        Call this once at process start; nothing below the entry points
        should look at the environment directly.
        """
        if env is None:
            env = os.environ
        run_secret = env.get("DIGEST_RUN_SECRET") or env.get("CRON_SECRET") or ""
        return cls(
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_key=env.get("SUPABASE_KEY", ""),
            secret=env.get("UNSUBSCRIBE_SECRET", ""),
            secret_alt=env.get("UNSUBSCRIBE_SECRET_ALT", ""),
            sign_with_alt=_flag(env, "SIGN_WITH_ALT"),
            base_url=(env.get("APP_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            run_secret=run_secret,
            webhook_secret=env.get("CRON_WEBHOOK_SECRET") or run_secret,
            preview_secret=env.get("DIGEST_PREVIEW_SECRET", ""),
            sendgrid_api_key=env.get("SENDGRID_API_KEY", ""),
            email_from=env.get("EMAIL_FROM", ""),
            email_subject=env.get("EMAIL_SUBJECT") or DEFAULT_SUBJECT,
            token_ttl_days=_int(env, "TOKEN_TTL_DAYS", 7),
            article_pool_size=_int(env, "ARTICLE_POOL_SIZE", 5),
            mailer_timeout_seconds=_int(env, "MAILER_TIMEOUT_SECONDS", 10),
        )

    @property
    def database_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def token_ttl_seconds(self) -> int:
        return self.token_ttl_days * 24 * 3600
