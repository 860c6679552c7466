"""
Ticket email dispatch through the Resend HTTP API.

The mailer never raises for delivery problems; callers get a SendResult and
decide what to log. Nothing here retries.
"""
from __future__ import annotations
import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from jinja2 import Environment, StrictUndefined

log = logging.getLogger(__name__)

RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com")
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "Tickets <no-reply@example.com>")
EVENT_NAME = os.environ.get("EVENT_NAME", "the event")
POSTER_PATH = os.environ.get("POSTER_PATH", "")

_jinja = Environment(
    autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True
)

TICKET_TEXT = _jinja.from_string("""\
Hey {{ name }}!

Your {{ "ticket" if quantity == 1 else "tickets" }} for {{ event }} \
{{ "is" if quantity == 1 else "are" }} ready.

TICKET CODE: {{ code }}
Guests: {{ quantity }}

Show this code at the door.
""")


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class PosterCache:
    """
    Event poster attached to every ticket email. Read from disk once per
    process; a missing file is remembered too, so it's not retried per mail.
    """
    CANDIDATES = ("poster.jpg", "poster.jpeg", "poster.png")

    def __init__(self, path: str = POSTER_PATH) -> None:
        self.path = path
        self.buffer: Optional[bytes] = None
        self.filename: Optional[str] = None
        self.content_type = "image/jpeg"
        self.loaded = False

    def _candidates(self):
        if not self.path:
            return []
        p = Path(self.path)
        if p.is_dir():
            return [p / name for name in self.CANDIDATES]
        return [p]

    def ensure_loaded(self) -> None:
        if self.loaded:
            return
        self.loaded = True
        for candidate in self._candidates():
            if not candidate.is_file():
                continue
            try:
                self.buffer = candidate.read_bytes()
            except OSError:
                log.exception("failed to read poster %s", candidate)
                continue
            self.filename = candidate.name
            self.content_type = (
                "image/png" if candidate.suffix.lower() == ".png"
                else "image/jpeg"
            )
            log.info(
                "poster cached: %s (%dKB)",
                candidate.name, len(self.buffer) // 1024,
            )
            return
        if self.path:
            log.warning("no poster found at %s", self.path)


class ResendMailer:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str = RESEND_API_KEY,
        sender: str = MAIL_FROM,
        event_name: str = EVENT_NAME,
        poster: Optional[PosterCache] = None,
        base_url: str = RESEND_API_URL,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender
        self.event_name = event_name
        self.poster = poster or PosterCache()
        self.base_url = base_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _message(self, to: str, customer_name: Optional[str], code: str,
                 quantity: int) -> dict:
        msg = {
            "from": self.sender,
            "to": [to],
            "subject": f"Your ticket for {self.event_name}",
            "text": TICKET_TEXT.render(
                name=(customer_name or "").strip() or "there",
                event=self.event_name,
                code=code,
                quantity=quantity,
            ),
        }
        self.poster.ensure_loaded()
        if self.poster.buffer:
            msg["attachments"] = [{
                "filename": self.poster.filename,
                "content": base64.b64encode(self.poster.buffer).decode(),
                "content_type": self.poster.content_type,
            }]
        return msg

    async def send_ticket(self, to: str, customer_name: Optional[str],
                          code: str, quantity: int) -> SendResult:
        if not self.enabled:
            return SendResult(False, error="RESEND_API_KEY not configured")
        try:
            r = await self.http.post(
                f"{self.base_url}/emails",
                json=self._message(to, customer_name, code, quantity),
                headers={"authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            return SendResult(False, error=f"mail transport error: {e}")
        if r.status_code >= 400:
            try:
                detail = r.json().get("message") or r.text
            except ValueError:
                detail = r.text
            return SendResult(
                False, error=f"mail API {r.status_code}: {detail}"
            )
        message_id = r.json().get("id")
        log.info("ticket %s mailed to %s (id=%s)", code, to, message_id)
        return SendResult(True, message_id=message_id)
