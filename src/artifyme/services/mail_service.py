"""Transactional mail over the SendGrid v3 HTTP API.

Learn: Without SENDGRID_API_KEY / MAIL_FROM the mailer only logs the
message, so local and staging setups keep working. SendGrid requires a
text/plain part; when only HTML is given, a rough plain-text version is
derived from it.
"""

import html as html_lib
import re
from typing import Optional

import httpx
import structlog

from artifyme.config import settings
from artifyme.errors import ProviderError

logger = structlog.get_logger()

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

_STRIP_BLOCKS = re.compile(r"<(style|script)[\s\S]*?</\1>", re.IGNORECASE)
_PARAGRAPH_END = re.compile(r"</p>", re.IGNORECASE)
_LINE_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


class MailError(ProviderError):
    """SendGrid refused the message."""


def html_to_text(html: str) -> str:
    text = _STRIP_BLOCKS.sub("", html)
    text = _PARAGRAPH_END.sub("\n\n", text)
    text = _LINE_BREAK.sub("\n", text)
    text = _TAG.sub("", text)
    return html_lib.unescape(text).replace("\xa0", " ").strip()


class Mailer:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(settings.sendgrid_api_key and settings.mail_from)

    async def send(
        self,
        to: str | list[str],
        subject: str,
        html: Optional[str] = None,
        text: Optional[str] = None,
        categories: Optional[list[str]] = None,
    ) -> None:
        if not html and not text:
            raise ValueError("send() requires at least one of: html, text")
        if text is None:
            text = html_to_text(html)

        recipients = [to] if isinstance(to, str) else list(to)

        if not self.configured:
            logger.warning("mail.fallback", to=recipients, subject=subject, text=text)
            return

        content = [{"type": "text/plain", "value": text}]
        if html:
            content.append({"type": "text/html", "value": html})
        body = {
            "personalizations": [{"to": [{"email": r} for r in recipients]}],
            "from": {"email": settings.mail_from},
            "subject": subject,
            "content": content,
        }
        if categories:
            body["categories"] = categories

        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            resp = await client.post(
                SENDGRID_URL,
                json=body,
                headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
            )
        if not resp.is_success:
            logger.error("mail.send.failed", status=resp.status_code, body=resp.text[:500])
            raise MailError(f"SendGrid send failed: {resp.status_code}")

        logger.info("mail.sent", to=recipients, subject=subject)


_mailer = Mailer()


def get_mailer() -> Mailer:
    """FastAPI dependency — the process-wide mailer."""
    return _mailer
