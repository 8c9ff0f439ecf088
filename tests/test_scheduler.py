import dataclasses
import datetime
import re

import pytest

from newsletter import tokens
from newsletter.errors import DigestRunError
from newsletter.models import Article
from newsletter.scheduler import DigestScheduler
from newsletter.tokens import SecretRotation, TokenMinter

from conftest import PRIMARY

RUN_AT = datetime.datetime(2024, 6, 1, 9, 5, tzinfo=datetime.timezone.utc)
TOKEN_RE = re.compile(r"token=([A-Za-z0-9_.\-]+)")


@pytest.fixture
def scheduler(settings, store, mailer, minter):
    return DigestScheduler(settings, store, mailer, minter)


@pytest.fixture
def three_subscribers(store):
    store.add_subscriber("u-0900", "a@example.com", 9, 0)
    store.add_subscriber("u-0920", "b@example.com", 9, 20)
    store.add_subscriber("u-1400", "c@example.com", 14, 0)
    store.articles = [
        Article(id="art-1", title="First", url="https://example.com/1", summary="One"),
        Article(id="art-2", title="Second", url="https://example.com/2"),
    ]


def test_dry_run_reports_due_subscribers_only(scheduler, mailer, store, three_subscribers):
    report = scheduler.run(now=RUN_AT, tolerance_minutes=15, dry_run=True)

    assert [r.user_id for r in report.dry] == ["u-0900", "u-0920"]
    assert report.sent == 0
    assert mailer.sent == []
    assert not store.deliveries
    assert report.to_dict()["dryRun"] is True


def test_sends_one_email_per_due_subscriber(scheduler, mailer, three_subscribers):
    report = scheduler.run(now=RUN_AT, tolerance_minutes=15)

    assert report.sent == 2
    assert [m["to"] for m in mailer.sent] == ["a@example.com", "b@example.com"]
    assert report.skipped == []


def test_every_link_gets_its_own_fresh_token(scheduler, mailer, three_subscribers):
    scheduler.run(now=RUN_AT, tolerance_minutes=15)
    html = mailer.sent[0]["html"]

    found = TOKEN_RE.findall(html)
    # manage + unsubscribe + resubscribe + a yes/no pair per article
    assert len(found) == 3 + 2 * 2
    payloads = [tokens.decode(t, PRIMARY, now=RUN_AT.timestamp()) for t in found]
    assert {p["user_id"] for p in payloads} == {"u-0900"}
    assert len({p["n"] for p in payloads}) == len(payloads)
    assert all(p["exp"] == int(RUN_AT.timestamp()) + 7 * 24 * 3600 for p in payloads)
    assert "action=subscribe" in html
    assert html.count("/api/survey?") == 4
    assert mailer.sent[0]["unsubscribe_url"].startswith("https://news.example.com/unsubscribe?token=")


def test_mailer_failure_does_not_abort_run(scheduler, mailer, store, three_subscribers):
    mailer.fail_for.add("a@example.com")
    report = scheduler.run(now=RUN_AT, tolerance_minutes=15)

    assert report.sent == 1
    assert [(r.user_id, r.error) for r in report.skipped] == [("u-0900", "timed out")]
    # the failed claim is released so the next run can retry
    assert ("u-0900", RUN_AT.date()) not in store.deliveries
    assert ("u-0920", RUN_AT.date()) in store.deliveries


def test_missing_address_is_skipped(scheduler, store, mailer):
    store.add_subscriber("u-noemail", None, 9, 0)
    store.add_subscriber("u-ok", "ok@example.com", 9, 0)
    report = scheduler.run(now=RUN_AT)

    assert report.sent == 1
    assert report.skipped[0].user_id == "u-noemail"
    assert report.skipped[0].error == "No email"


def test_overlapping_runs_send_once_per_day(scheduler, store, mailer):
    store.add_subscriber("u-1", "one@example.com", 9, 0)
    scheduler.run(now=RUN_AT)
    report = scheduler.run(now=RUN_AT + datetime.timedelta(minutes=10))

    assert len(mailer.sent) == 1
    assert report.skipped[0].error == "Already sent today"


def test_unsubscribed_never_considered(scheduler, store, mailer):
    store.add_subscriber("u-1", "one@example.com", 9, 0, unsubscribed=True)
    report = scheduler.run(now=RUN_AT)
    assert report.results == []
    assert mailer.sent == []


def test_no_one_due_skips_content_load(scheduler, store, mailer):
    store.add_subscriber("u-1", "one@example.com", 18, 0)
    report = scheduler.run(now=RUN_AT)

    assert report.sent == 0
    assert report.message == "No users within window"
    assert "get_recent_articles" not in store.calls
    assert "get_email_lookup" not in store.calls


def test_local_timezone_respected(scheduler, store, mailer):
    store.add_subscriber("u-hel", "hel@example.com", 12, 0, tz="Europe/Helsinki")
    store.add_subscriber("u-utc", "utc@example.com", 12, 0)
    scheduler.run(now=RUN_AT)
    assert [m["to"] for m in mailer.sent] == ["hel@example.com"]


def test_candidate_load_failure_is_fatal(scheduler, store, mailer):
    store.prefs_down = True
    with pytest.raises(DigestRunError):
        scheduler.run(now=RUN_AT)
    assert mailer.sent == []


def test_article_load_failure_is_fatal_before_minting(settings, store, mailer, three_subscribers):
    store.articles_down = True
    minted = []

    class CountingMinter(TokenMinter):
        def mint(self, *args, **kwargs):
            minted.append(args)
            return super().mint(*args, **kwargs)

    scheduler = DigestScheduler(settings, store, mailer, CountingMinter(SecretRotation(PRIMARY), 60))
    with pytest.raises(DigestRunError):
        scheduler.run(now=RUN_AT)
    assert minted == []
    assert mailer.sent == []
    assert not store.deliveries


def test_missing_secret_is_fatal(settings, store, mailer, three_subscribers):
    scheduler = DigestScheduler(settings, store, mailer, TokenMinter(SecretRotation(), 60))
    with pytest.raises(DigestRunError):
        scheduler.run(now=RUN_AT)
    assert store.calls == []


def test_unconfigured_mailer_only_allows_dry_run(settings, store, mailer, minter, three_subscribers):
    scheduler = DigestScheduler(dataclasses.replace(settings, sendgrid_api_key=""), store, mailer, minter)
    with pytest.raises(DigestRunError):
        scheduler.run(now=RUN_AT)
    assert len(scheduler.run(now=RUN_AT, dry_run=True).dry) == 2


def test_window_across_midnight_sends_once(scheduler, store, mailer):
    store.add_subscriber("u-1", "one@example.com", 0, 5)
    late = datetime.datetime(2024, 6, 1, 23, 55, tzinfo=datetime.timezone.utc)
    early = datetime.datetime(2024, 6, 2, 0, 10, tzinfo=datetime.timezone.utc)

    scheduler.run(now=late)
    report = scheduler.run(now=early)

    assert len(mailer.sent) == 1
    assert report.skipped[0].error == "Already sent today"
    assert store.deliveries == {("u-1", datetime.date(2024, 6, 2))}


def test_dry_run_after_real_run_reports_skip(scheduler, store, mailer, three_subscribers):
    scheduler.run(now=RUN_AT)
    report = scheduler.run(now=RUN_AT + datetime.timedelta(minutes=5), dry_run=True)

    assert report.dry == []
    assert [(r.user_id, r.error) for r in report.skipped] == [
        ("u-0900", "Already sent today"),
        ("u-0920", "Already sent today"),
    ]
    assert len(mailer.sent) == 2
