"""
auth/email.py -- Outbound email for verification and password reset links.

The provider depends on the EmailSender protocol only. Three implementations,
selected by EMAIL_BACKEND in auth/factory.py:

  ResendEmailSender   -- HTTP POST to the Resend API (production)
  ConsoleEmailSender  -- logs the link at INFO (local development)
  MemoryEmailSender   -- appends to an outbox list (tests)

Every failure to hand a message to the service raises EmailDeliveryError.
Callers treat dispatch as best-effort: the token row is already committed, so
the user can simply request another link.

Security: ConsoleEmailSender logs the full link, which contains a live token.
It must never be selected in production.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Protocol

import requests

from auth.errors import EmailDeliveryError

logger = logging.getLogger("gatehouse.auth.email")

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class EmailLink:
    token: str
    url: str  # full link the user clicks, token included
    name: str | None = None  # recipient display name, when known


@dataclass(frozen=True)
class SentEmail:
    kind: str  # "verification" or "password_reset"
    to: str
    link: EmailLink


class EmailSender(Protocol):
    def send_verification_email(self, email: str, link: EmailLink) -> None: ...

    def send_password_reset_email(self, email: str, link: EmailLink) -> None: ...


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if name else "Hi,"


def render_verification_email(link: EmailLink) -> tuple[str, str, str]:
    """Return (subject, text, html) for an email verification message."""
    subject = "Verify your email address"
    text = (
        f"{_greeting(link.name)}\n\n"
        f"Confirm your email address by opening this link:\n{link.url}\n\n"
        "If you did not create an account, you can ignore this email."
    )
    body = (
        f"<p>{html.escape(_greeting(link.name))}</p>"
        f'<p>Confirm your email address by opening <a href="{html.escape(link.url)}">this link</a>.</p>'
        "<p>If you did not create an account, you can ignore this email.</p>"
    )
    return subject, text, body


def render_password_reset_email(link: EmailLink) -> tuple[str, str, str]:
    """Return (subject, text, html) for a password reset message."""
    subject = "Reset your password"
    text = (
        f"{_greeting(link.name)}\n\n"
        f"Reset your password by opening this link:\n{link.url}\n\n"
        "The link can be used once. If you did not ask for a reset, you can ignore this email."
    )
    body = (
        f"<p>{html.escape(_greeting(link.name))}</p>"
        f'<p>Reset your password by opening <a href="{html.escape(link.url)}">this link</a>.</p>'
        "<p>The link can be used once. If you did not ask for a reset, you can ignore this email.</p>"
    )
    return subject, text, body


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class ResendEmailSender:
    """Send through the Resend HTTP API with a pooled requests.Session."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str = "Gatehouse",
        session: requests.Session | None = None,
        timeout: float = 10,
    ) -> None:
        self._api_key = api_key
        self.sender = f"{from_name} <{from_address}>"
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send_verification_email(self, email: str, link: EmailLink) -> None:
        self._send(email, *render_verification_email(link))

    def send_password_reset_email(self, email: str, link: EmailLink) -> None:
        self._send(email, *render_password_reset_email(link))

    def _send(self, to: str, subject: str, text: str, body: str) -> None:
        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text, "html": body}
        try:
            resp = self._session.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise EmailDeliveryError(f"Resend rejected {subject!r}: {e}") from e
        logger.info("Sent %r via Resend (id=%s)", subject, resp.json().get("id"))


class ConsoleEmailSender:
    """Development sender: writes the link to the log instead of sending it."""

    def send_verification_email(self, email: str, link: EmailLink) -> None:
        logger.info("[dev email] verification for %s: %s", email, link.url)

    def send_password_reset_email(self, email: str, link: EmailLink) -> None:
        logger.info("[dev email] password reset for %s: %s", email, link.url)


class MemoryEmailSender:
    """Test sender: records every message in self.outbox.

    Set fail=True to make every send raise EmailDeliveryError.
    """

    def __init__(self, fail: bool = False) -> None:
        self.outbox: list[SentEmail] = []
        self.fail = fail

    def send_verification_email(self, email: str, link: EmailLink) -> None:
        self._record("verification", email, link)

    def send_password_reset_email(self, email: str, link: EmailLink) -> None:
        self._record("password_reset", email, link)

    def _record(self, kind: str, to: str, link: EmailLink) -> None:
        if self.fail:
            raise EmailDeliveryError(f"{kind} email to {to} failed (simulated)")
        self.outbox.append(SentEmail(kind=kind, to=to, link=link))

    def last(self, kind: str | None = None) -> SentEmail | None:
        for sent in reversed(self.outbox):
            if kind is None or sent.kind == kind:
                return sent
        return None
