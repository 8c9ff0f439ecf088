"""Flask app for capability links and the digest trigger."""

from __future__ import annotations

import hmac
import json
import logging
import os
import sys
from urllib.parse import urlparse

# Add src/ to path so we can import newsletter.* modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, redirect, render_template, request

load_dotenv()  # for local development; production sets env vars on the host

from newsletter.config import Settings
from newsletter.db import Database
from newsletter.email_sender import Mailer
from newsletter.email_template import render_digest
from newsletter.errors import DigestRunError, LinkError, LinkErrorKind
from newsletter.links import build_digest_links
from newsletter.models import (
    DEFAULT_SEND_HOUR,
    DEFAULT_SEND_MINUTE,
    DEFAULT_TIMEZONE,
    SubscriberPreference,
)
from newsletter.nonces import NonceLedger
from newsletter.scheduler import DigestScheduler
from newsletter.send_window import clamp_tolerance
from newsletter.tokens import SecretRotation, TokenMinter
from newsletter.trigger_auth import authorize_run
from newsletter.verifier import CapabilityVerifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "..", "templates")


def create_app(settings: Settings | None = None, database=None, mailer=None) -> Flask:
    """Wire the components once; every route reuses them."""
    if settings is None:
        settings = Settings.from_env()
    if database is None:
        database = Database(settings)
    if mailer is None:
        mailer = Mailer(settings)

    rotation = SecretRotation.from_settings(settings)
    verifier = CapabilityVerifier(rotation, NonceLedger(database))
    minter = TokenMinter(rotation, settings.token_ttl_seconds)
    scheduler = DigestScheduler(settings, database, mailer, minter)

    app = Flask(__name__, template_folder=TEMPLATE_DIR)
    app.config["NEWSLETTER_SETTINGS"] = settings

    def link_error_page(title: str, exc: LinkError):
        if exc.is_server_fault:
            logger.error("%s link failed: %s (%s)", title, exc.kind.value, exc.detail)
        else:
            logger.info("%s link rejected: %s", title, exc.kind.value)
        if exc.kind is LinkErrorKind.LINK_ALREADY_USED:
            return redirect("/link/used")
        return render_template("error.html", title=title, message=exc.user_message), exc.http_status

    def link_error_json(exc: LinkError):
        if exc.is_server_fault:
            logger.error("Survey link failed: %s (%s)", exc.kind.value, exc.detail)
        return jsonify({"ok": False, "error": exc.user_message, "kind": exc.kind.value}), exc.http_status

    # -----------------------------------------------------------------------
    # Unsubscribe / resubscribe
    # -----------------------------------------------------------------------

    @app.route("/unsubscribe")
    def unsubscribe():
        token = request.args.get("token", "")
        unsubscribed = request.args.get("action", "unsubscribe") != "subscribe"
        try:
            payload = verifier.verify_and_consume(token)
        except LinkError as exc:
            return link_error_page("Unsubscribe", exc)

        try:
            database.set_unsubscribed(payload.user_id, unsubscribed)
        except Exception:
            logger.exception("Failed to update subscription for %s", payload.user_id)
            return render_template(
                "error.html", title="Unsubscribe",
                message=LinkError(LinkErrorKind.STORAGE_UNAVAILABLE).user_message,
            ), 503

        if unsubscribed:
            return redirect("/unsubscribe/thanks")
        return render_template("success.html", title="Subscription", message="You have been resubscribed.")

    @app.route("/unsubscribe/thanks")
    def unsubscribe_thanks():
        return render_template("unsubscribed.html")

    # -----------------------------------------------------------------------
    # Manage preferences
    # -----------------------------------------------------------------------

    @app.route("/manage", methods=["GET"])
    def manage_form():
        token = request.args.get("token", "")
        saved = request.args.get("ok")
        if saved is not None:
            # Back from a save: the form token was burnt, so only show the outcome.
            message = "Preferences saved." if saved == "1" else "Failed to save preferences."
            template = "success.html" if saved == "1" else "error.html"
            return render_template(template, title="Manage Preferences", message=message)

        try:
            payload = verifier.verify_and_consume(token)
        except LinkError as exc:
            return link_error_page("Manage Preferences", exc)

        try:
            pref = database.get_preference(payload.user_id)
            # A new single-use token authorizes exactly one save from this page.
            form_token = minter.mint(payload.user_id)
        except LinkError as exc:
            return link_error_page("Manage Preferences", exc)
        except Exception:
            logger.exception("Failed to load preferences for %s", payload.user_id)
            return render_template(
                "error.html", title="Manage Preferences",
                message=LinkError(LinkErrorKind.STORAGE_UNAVAILABLE).user_message,
            ), 503
        return render_template("manage.html", token=form_token, pref=pref)

    @app.route("/manage", methods=["POST"])
    def manage_save():
        token = request.form.get("token", "")
        try:
            send_hour = _optional_int(request.form.get("send_hour"), 0, 23)
            send_minute = _optional_int(request.form.get("send_minute"), 0, 59)
        except ValueError:
            return redirect("/manage?ok=0")

        try:
            payload = verifier.verify_and_consume(token)
        except LinkError as exc:
            return link_error_page("Manage Preferences", exc)

        try:
            database.update_preferences(
                payload.user_id,
                interests=request.form.get("interests", ""),
                timeline=request.form.get("timeline", ""),
                unsubscribed=request.form.get("unsubscribed", "false") == "true",
                send_timezone=request.form.get("send_timezone") or None,
                send_hour=send_hour,
                send_minute=send_minute,
            )
        except Exception:
            logger.exception("Failed to save preferences for %s", payload.user_id)
            # The form token is spent; hand back a fresh one so the user can resubmit.
            try:
                retry_token = minter.mint(payload.user_id)
            except LinkError:
                return redirect("/manage?ok=0")
            pref = SubscriberPreference(
                user_id=payload.user_id,
                interests=request.form.get("interests", ""),
                timeline=request.form.get("timeline", ""),
                unsubscribed=request.form.get("unsubscribed", "false") == "true",
                send_timezone=request.form.get("send_timezone") or DEFAULT_TIMEZONE,
                send_hour=DEFAULT_SEND_HOUR if send_hour is None else send_hour,
                send_minute=DEFAULT_SEND_MINUTE if send_minute is None else send_minute,
            )
            return render_template(
                "manage.html", token=retry_token, pref=pref,
                error="Failed to save preferences. Please try again.",
            ), 503
        return redirect("/manage?ok=1")

    # -----------------------------------------------------------------------
    # Survey answers
    # -----------------------------------------------------------------------

    def record_survey(token, article_id, question, answer, meta):
        # The nonce is burnt before the insert; a failed insert loses that one
        # answer (logged by the caller) rather than letting the link be replayed.
        payload = verifier.verify_and_consume(token)
        database.insert_survey(payload.user_id, article_id, question, answer, meta)

    @app.route("/api/survey", methods=["GET"])
    def survey_get():
        redirect_to = request.args.get("redirect")
        meta = None
        if request.args.get("meta"):
            try:
                meta = json.loads(request.args["meta"])
            except ValueError:
                meta = None
        try:
            record_survey(
                request.args.get("token", ""),
                request.args.get("article_id"),
                request.args.get("q"),
                request.args.get("a"),
                meta,
            )
        except LinkError as exc:
            if redirect_to and exc.kind is LinkErrorKind.LINK_ALREADY_USED:
                return redirect("/link/used")
            return link_error_json(exc)
        except Exception:
            logger.exception("Failed to record survey answer; its link is already consumed")
            return jsonify({"ok": False, "error": "Server error"}), 500

        if redirect_to and _same_site(redirect_to, settings.base_url):
            return redirect(redirect_to)
        return jsonify({"ok": True})

    @app.route("/api/survey", methods=["POST"])
    def survey_post():
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            return jsonify({"ok": False, "error": "Expected a JSON object"}), 400
        try:
            record_survey(
                str(body.get("token") or ""),
                str(body["article_id"]) if body.get("article_id") else None,
                str(body["question"]) if body.get("question") else None,
                str(body["answer"]) if body.get("answer") else None,
                body.get("meta"),
            )
        except LinkError as exc:
            return link_error_json(exc)
        except Exception:
            logger.exception("Failed to record survey answer; its link is already consumed")
            return jsonify({"ok": False, "error": "Server error"}), 500
        return jsonify({"ok": True})

    @app.route("/survey/thanks")
    def survey_thanks():
        return render_template("success.html", title="Thanks!", message="Your feedback has been recorded.")

    @app.route("/link/used")
    def link_used():
        return render_template("link_used.html"), 410

    # -----------------------------------------------------------------------
    # Digest trigger and preview
    # -----------------------------------------------------------------------

    @app.route("/api/digest/run", methods=["GET", "POST"])
    def digest_run():
        authorized = authorize_run(
            settings,
            query_secret=request.args.get("secret", ""),
            authorization=request.headers.get("Authorization"),
            cron_header=request.headers.get("x-vercel-cron"),
            signature=request.headers.get("x-vercel-signature"),
            body=request.get_data(),
        )
        if not authorized:
            return jsonify({"ok": False, "error": "Unauthorized"}), 401

        tolerance = clamp_tolerance(request.args.get("window"))
        dry_run = request.args.get("dry") == "1"
        try:
            report = scheduler.run(tolerance_minutes=tolerance, dry_run=dry_run)
        except DigestRunError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 500
        return jsonify(report.to_dict())

    @app.route("/api/digest/preview")
    def digest_preview():
        secret = request.args.get("secret", "")
        if not settings.preview_secret or not hmac.compare_digest(secret.encode(), settings.preview_secret.encode()):
            return jsonify({"ok": False, "error": "Unauthorized"}), 401
        if not rotation.configured:
            return jsonify({"ok": False, "error": "Server not configured"}), 500

        user_id = request.args.get("user_id", "")
        email = request.args.get("email", "")
        if not user_id and not email:
            return jsonify({"ok": False, "error": "Provide user_id or email"}), 400
        try:
            if not user_id:
                user_id = database.find_user_id(email) or ""
                if not user_id:
                    return jsonify({"ok": False, "error": "User not found"}), 404
            pref = database.get_preference(user_id)
            articles = database.get_recent_articles(settings.article_pool_size)
        except Exception:
            logger.exception("Preview failed for %s", user_id or email)
            return jsonify({"ok": False, "error": "Server error"}), 500

        if pref is None:
            pref = SubscriberPreference(user_id=user_id)
        links = build_digest_links(minter, settings.base_url, user_id, articles)
        html = render_digest(pref, articles, links, title=settings.email_subject)
        return Response(html, mimetype="text/html")

    @app.route("/api/health")
    def health():
        try:
            count = database.count_articles()
        except Exception:
            logger.exception("Health check failed")
            return jsonify({"ok": False, "error": "Database unreachable"}), 500
        return jsonify({"ok": True, "articlesCount": count})

    return app


def _optional_int(raw: str | None, low: int, high: int) -> int | None:
    if raw is None or raw == "":
        return None
    value = int(raw)
    if not low <= value <= high:
        raise ValueError(f"{value} outside {low}-{high}")
    return value


def _same_site(target: str, base_url: str) -> bool:
    """Only follow survey redirects back to our own site."""
    parsed = urlparse(target)
    if not parsed.netloc:
        return target.startswith("/")
    return parsed.netloc == urlparse(base_url).netloc


app = create_app()
