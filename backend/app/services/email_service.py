"""
Keystone Backend — E-mail Service (SendGrid)
============================================

What:  Transactional e-mail through the SendGrid v3 REST API.
How:   One shared httpx.AsyncClient per process (closed on shutdown). Any
       non-2xx provider response or transport failure becomes BadGatewayError.
When:  Welcome e-mail after an account is created by the identity webhook
       (normally via the `emails` job queue so the webhook returns quickly).
"""

import html as html_lib
import logging
import re
from typing import Any, Dict, Optional

import httpx

from app.config import Settings
from app.exceptions import BadGatewayError

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"

_TAG = re.compile(r"<[^>]+>")
_BLANKS = re.compile(r"[ \t]+")


def strip_html(markup: str) -> str:
    """Plain-text fallback for an HTML body."""
    return _BLANKS.sub(" ", html_lib.unescape(_TAG.sub(" ", markup))).strip()


def render_welcome(name: str) -> str:
    return (
        "<!DOCTYPE html><html><body>"
        f"<h1>Welcome, {html_lib.escape(name)}!</h1>"
        "<p>Thanks for joining us.</p>"
        "</body></html>"
    )


class EmailService:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._from_email = settings.sendgrid_from_email
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0),
            headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text if text is not None else strip_html(html)},
                {"type": "text/html", "value": html},
            ],
        }
        try:
            response = await self._client.post(SENDGRID_SEND_URL, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("SendGrid rejected e-mail to %s: %s %s", to, e.response.status_code, e.response.text)
            raise BadGatewayError("E-mail provider rejected the message", context={"status": e.response.status_code})
        except httpx.HTTPError as e:
            logger.error("SendGrid unreachable: %s", e)
            raise BadGatewayError("E-mail provider unavailable")
        logger.info("E-mail sent to %s: %s", to, subject)

    async def send_welcome_email(self, to: str, name: Optional[str] = None) -> None:
        display = name or "there"
        await self.send_email(to, "Welcome!", render_welcome(display))
