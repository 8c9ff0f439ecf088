"""Send emails via SendGrid API."""

from __future__ import annotations

import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Header, Mail

from newsletter.config import Settings
from newsletter.errors import EmailSendError

logger = logging.getLogger(__name__)

OK_STATUSES = (200, 201, 202)


class Mailer:
    """Sends one digest per call, with a timeout on the HTTP request."""

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.sendgrid_api_key
        self.from_email = settings.email_from
        self.timeout = settings.mailer_timeout_seconds

    def _client(self) -> SendGridAPIClient:
        sg = SendGridAPIClient(self.api_key)
        # python_http_client passes this through to urlopen for every request
        sg.client.timeout = self.timeout
        return sg

    def send_digest(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        unsubscribe_url: str | None = None,
    ) -> None:
        """Send a digest email via SendGrid.

        Raises:
            EmailSendError: SendGrid rejected the message, errored or timed out.
        """
        if not self.api_key or not self.from_email:
            raise EmailSendError("SENDGRID_API_KEY and EMAIL_FROM must be set")

        message = Mail(
            from_email=self.from_email,
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
        )
        # List-Unsubscribe header for email client "unsubscribe" buttons
        if unsubscribe_url:
            message.header = Header("List-Unsubscribe", f"<{unsubscribe_url}>")

        try:
            response = self._client().send(message)
        except Exception as exc:
            logger.exception("Failed to send email to %s", to_email)
            raise EmailSendError(f"{type(exc).__name__}: {exc}") from exc

        logger.info("Email sent to %s — status %d", to_email, response.status_code)
        if response.status_code not in OK_STATUSES:
            raise EmailSendError(f"SendGrid returned status {response.status_code}")
