"""
mailer/transport.py -- Delivery backends for rendered messages.

SmtpTransport: smtplib with STARTTLS (or implicit TLS) and optional login.
    send() raises on any failure; MailQueue decides whether to retry.

LogTransport: used when SMTP_HOST is not configured (development). Logs the
    recipient (redacted) and subject instead of sending. Never logs the body,
    which contains single-use links.

Both are synchronous; MailQueue runs them in a worker thread via
asyncio.to_thread so a slow SMTP server never blocks the event loop.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings
from core.redact import redact_email
from mailer.render import MailMessage

logger = logging.getLogger("latchkey.mailer.transport")


class Transport(Protocol):
    def send(self, message: MailMessage) -> None: ...


class SmtpTransport:
    def __init__(self, settings: Settings, timeout: float = 30.0) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.sender = f"{settings.mail_from_name} <{settings.mail_from}>"
        self.timeout = timeout

    def build(self, message: MailMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = message.to
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
        return msg

    def send(self, message: MailMessage) -> None:
        msg = self.build(message)
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        logger.info("Mail sent to %s (%s)", redact_email(message.to), message.subject)


class LogTransport:
    def send(self, message: MailMessage) -> None:
        logger.info("SMTP not configured; mail to %s not sent (%s)", redact_email(message.to), message.subject)


def build_transport(settings: Settings) -> Transport:
    if settings.smtp_configured:
        return SmtpTransport(settings)
    return LogTransport()
