from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional, Protocol

from portal.config import AppConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailMessage:
    to: str
    from_addr: str
    subject: str
    text: str


class MailDeliveryError(Exception):
    pass


class Mailer(Protocol):
    def send(self, message: MailMessage) -> None:
        ...


class LoggingMailer:
    """Used when no SMTP host is configured: records the message instead of sending it."""

    def __init__(self) -> None:
        self.sent: List[MailMessage] = []

    def send(self, message: MailMessage) -> None:
        self.sent.append(message)
        logger.info("Mail (not delivered, SMTP not configured): to=%s subject=%s", message.to, message.subject)


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout

    def send(self, message: MailMessage) -> None:
        msg = EmailMessage()
        msg["To"] = message.to
        msg["From"] = message.from_addr
        msg["Subject"] = message.subject
        msg.set_content(message.text)
        try:
            with smtplib.SMTP(host=self._host, port=self._port, timeout=self._timeout) as conn:
                if self._use_tls:
                    conn.starttls()
                if self._username and self._password:
                    conn.login(self._username, self._password)
                conn.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(str(e)) from e


def mailer_from_config(cfg: AppConfig) -> Mailer:
    if not cfg.smtp_host:
        return LoggingMailer()
    return SmtpMailer(
        cfg.smtp_host,
        cfg.smtp_port,
        username=cfg.smtp_username,
        password=cfg.smtp_password,
        use_tls=cfg.smtp_use_tls,
    )
