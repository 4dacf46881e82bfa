from __future__ import annotations

import logging
import smtplib
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from growthengine.core.config import Settings, get_settings
from growthengine.metrics import observe_email


logger = logging.getLogger("growthengine.mailer")


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    html: str


OUTBOX_LIMIT = 500

# Most recent messages handled by the log-only sender, kept for local inspection and tests.
outbox: deque[OutboundEmail] = deque(maxlen=OUTBOX_LIMIT)


class EmailSender(Protocol):
    def send(self, message: OutboundEmail) -> bool: ...


class LogEmailSender:
    """Used when no SMTP host is configured; the message is only logged."""

    def send(self, message: OutboundEmail) -> bool:
        outbox.append(message)
        logger.info("email.logged", extra={"status": "logged"})
        logger.debug("email.logged.detail to=%s subject=%s", message.to, message.subject)
        return True


class SmtpEmailSender:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host or ""
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from

    def send(self, message: OutboundEmail) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_email
        msg["To"] = message.to
        msg.attach(MIMEText(message.html, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.from_email, [message.to], msg.as_string())
        return True


def get_email_sender(settings: Settings | None = None) -> EmailSender:
    resolved = settings or get_settings()
    if resolved.smtp_host:
        return SmtpEmailSender(resolved)
    return LogEmailSender()


def send_email(*, to: str, subject: str, html: str, sender: EmailSender | None = None) -> bool:
    """Deliver one email. Failures are logged and reported as ``False``."""
    if not to:
        return False
    message = OutboundEmail(to=to, subject=subject, html=html)
    try:
        delivered = (sender or get_email_sender()).send(message)
    except (smtplib.SMTPException, OSError) as exc:
        observe_email("failed")
        logger.warning("email.failed", extra={"error": str(exc)})
        return False
    except Exception as exc:
        observe_email("failed")
        logger.exception("email.failed", extra={"error": str(exc)})
        return False
    observe_email("sent" if delivered else "failed")
    return delivered
