import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import resend
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class EmailResult:
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _resend_api_key() -> str:
    return os.getenv("RESEND_API_KEY", "").strip()


def _sender() -> str:
    from_email = os.getenv("RESEND_FROM_EMAIL", "billing@rupietimes.com").strip() or "billing@rupietimes.com"
    from_name = os.getenv("RESEND_FROM_NAME", "Rupie Times").strip() or "Rupie Times"
    # Resend's sandbox sender works without domain verification.
    if os.getenv("USE_TEST_EMAIL", "false").lower() == "true":
        from_email = "delivered@resend.dev"
    return f"{from_name} <{from_email}>"


def generate_email_template(content_html: str, title: str = "Rupie Times") -> str:
    """Wrap a content block in the shared Rupie Times email chrome."""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{title}</title>
    </head>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #1f4235; padding: 24px; text-align: center; border-radius: 8px 8px 0 0;">
            <h1 style="color: #c29854; margin: 0; font-size: 24px;">Rupie Times</h1>
        </div>
        <div style="background: #ffffff; padding: 32px; border: 1px solid #e5e7eb; border-top: none; border-radius: 0 0 8px 8px;">
            {content_html}
        </div>
        <div style="text-align: center; margin-top: 24px; color: #9ca3af; font-size: 12px;">
            <p style="margin: 0;">&copy; Rupie Times. All rights reserved.</p>
        </div>
    </body>
    </html>
    """


def send_email(
    to: list[str],
    subject: str,
    html: str,
    attachments: Optional[list[dict[str, Any]]] = None,
) -> EmailResult:
    """
    Send a transactional email through Resend.

    Attachments are ``{"filename", "content": bytes, "content_type"}`` dicts. Transport
    problems are returned in ``EmailResult.error`` rather than raised.
    """
    api_key = _resend_api_key()
    if not api_key:
        logger.error("Cannot send email %r: RESEND_API_KEY is not configured", subject)
        return EmailResult(error="Email service is not configured")
    resend.api_key = api_key

    params: dict[str, Any] = {
        "from": _sender(),
        "to": to,
        "subject": subject,
        "html": html,
    }
    if attachments:
        params["attachments"] = [
            {
                "filename": attachment["filename"],
                "content": list(attachment["content"]),
                "content_type": attachment.get("content_type", "application/octet-stream"),
            }
            for attachment in attachments
        ]

    try:
        response = resend.Emails.send(params)
    except Exception as exc:
        logger.exception("Error sending email %r to %s", subject, to)
        return EmailResult(error=str(exc))

    if not response or not response.get("id"):
        logger.error("Resend did not accept email %r to %s: %s", subject, to, response)
        return EmailResult(error="Email provider rejected the message")

    logger.info("Email %r sent to %s id=%s", subject, to, response.get("id"))
    return EmailResult(data=dict(response))
