import asyncio
import re
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional
from urllib.parse import quote

from itsdangerous import URLSafeTimedSerializer

from journey_engine.config import (
    API_PUBLIC_URL,
    EMAIL_SENDER_NAME,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USERNAME,
    TRACKING_SECRET_KEY,
)

logger = logging.getLogger(__name__)

# Shared with api/tracking.py, which verifies the same tokens.
serializer = URLSafeTimedSerializer(TRACKING_SECRET_KEY)

LINK_PATTERN = re.compile(r'href=["\']([^"\']+)["\']')


def make_tracking_token(execution_id: str, kind: str) -> str:
    return serializer.dumps({"execution_id": execution_id, "type": kind})


def get_tracking_url(endpoint: str, token: str, **params) -> str:
    query_params = "&".join([f"{k}={quote(str(v), safe='')}" for k, v in params.items()])
    query_string = f"?token={token}&{query_params}" if params else f"?token={token}"
    return f"{API_PUBLIC_URL}{endpoint}{query_string}"


def add_tracking(html_content: str, execution_id: str) -> str:
    """Route links through the click tracker and append the open pixel."""
    if not html_content:
        return html_content

    click_token = make_tracking_token(execution_id, "click")
    open_token = make_tracking_token(execution_id, "open")

    def replace_link(match):
        original_url = match.group(1)
        if "/api/track/" in original_url or original_url.startswith("mailto:"):
            return match.group(0)
        return f'href="{get_tracking_url("/api/track/click", click_token, url=original_url)}"'

    tracked = LINK_PATTERN.sub(replace_link, html_content)
    pixel_url = get_tracking_url("/api/track/open", open_token)
    return f'{tracked}<img src="{pixel_url}" width="1" height="1" alt="" style="display:none" />'


class SmtpEmailSender:
    """Email collaborator backed by an SMTP relay."""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: Optional[str] = SMTP_USERNAME,
        password: Optional[str] = SMTP_PASSWORD,
        sender_name: str = EMAIL_SENDER_NAME,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender_name = sender_name

    async def send(self, to: str, subject: str, html_content: str, recipient_name: str = "", tracking_id: Optional[str] = None) -> str:
        if not to or not to.strip():
            raise ValueError("Recipient email is required")
        if not subject or not subject.strip():
            raise ValueError("Email subject is required")

        if tracking_id:
            html_content = add_tracking(html_content, tracking_id)
        return await asyncio.to_thread(self._send_sync, to, subject, html_content, recipient_name)

    def _send_sync(self, to: str, subject: str, html_content: str, recipient_name: str) -> str:
        if not self.username or not self.password:
            logger.error(f"[EMAIL] SMTP_USERNAME: {'SET' if self.username else 'MISSING'}")
            logger.error(f"[EMAIL] SMTP_PASSWORD: {'SET' if self.password else 'MISSING'}")
            raise EnvironmentError("Missing SMTP credentials")

        message_id = make_msgid(domain=self.username.split("@")[-1])

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name, self.username))
        msg["To"] = formataddr((recipient_name, to)) if recipient_name else to
        msg["Reply-To"] = self.username
        msg["Message-ID"] = message_id
        msg["List-Unsubscribe"] = f"<mailto:{self.username}?subject=unsubscribe>"
        msg.attach(MIMEText(html_content, "html", "utf-8"))

        try:
            logger.info(f"[EMAIL] Sending '{subject}' to {to} via {self.host}:{self.port}")
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                server.login(self.username, self.password)
                server.send_message(msg)
            logger.info(f"[EMAIL] Sent {message_id} to {to}")
            return message_id
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP Authentication failed: {e}")
            raise
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"[EMAIL] SMTP Recipients refused for {to}: {e}")
            raise
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP Exception for {to}: {e}", exc_info=True)
            raise
