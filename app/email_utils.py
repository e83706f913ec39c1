"""
Mail transports used by the alert dispatcher.

`send(to, subject, html_body)` either returns or raises DeliveryFailure.
Timeouts and SMTP errors both surface as DeliveryFailure so the queue's retry
policy handles them.
"""
from __future__ import annotations

import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Tuple

from core.config import Settings
from core.errors import DeliveryFailure

log = logging.getLogger(__name__)


def _effective_from(email_from: str | None, email_user: str | None, smtp_server: str) -> str:
    # Gmail rewrites or rejects a From that differs from the login.
    if "gmail" in (smtp_server or "").lower() and email_user:
        return email_user
    return email_from or email_user or "noreply@bazar.local"


def build_message(sender: str, to_email: str, subject: str, html_body: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


class SmtpMailTransport:
    name = "smtp"

    def __init__(
        self,
        *,
        server: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        email_from: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.server = server
        self.port = port
        self.user = user
        self.password = password
        self.sender = _effective_from(email_from, user, server)
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpMailTransport":
        return cls(
            server=settings.smtp_server,
            port=settings.smtp_port,
            user=settings.email_user,
            password=settings.email_password,
            email_from=settings.email_from,
            timeout=settings.smtp_timeout_seconds,
        )

    def send(self, to_email: str, subject: str, html_body: str) -> None:
        if not (self.user and self.password):
            raise DeliveryFailure("Email credentials not configured. Set EMAIL_USER and EMAIL_PASSWORD.")

        msg = build_message(self.sender, to_email, subject, html_body)
        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.sender, [to_email], msg.as_string())
        except socket.timeout as exc:
            raise DeliveryFailure(f"SMTP timeout after {self.timeout}s") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(f"SMTP error: {exc}") from exc
        log.info("Email sent", extra={"to": to_email, "from": self.sender})


class LogMailTransport:
    """Logs instead of sending; keeps what it 'sent' for local inspection."""

    name = "log"

    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []

    def send(self, to_email: str, subject: str, html_body: str) -> None:
        self.sent.append((to_email, subject, html_body))
        log.info("Email logged (not sent)", extra={"to": to_email, "subject": subject})


def build_transport(settings: Settings):
    if settings.mail_transport == "log":
        return LogMailTransport()
    return SmtpMailTransport.from_settings(settings)


__all__ = ["SmtpMailTransport", "LogMailTransport", "build_transport", "build_message"]
