from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_config
from portal.services.mail import LoggingMailer, MailDeliveryError, MailMessage, SmtpMailer, mailer_from_config

MSG = MailMessage(to="owner@example.com", from_addr="Ann <a@example.com>", subject="Contact Form | Portal", text="hi")


def test_without_smtp_host_mail_is_only_logged(tmp_path) -> None:  # type: ignore[no-untyped-def]
    mailer = mailer_from_config(make_config(tmp_path))
    assert isinstance(mailer, LoggingMailer)
    mailer.send(MSG)
    assert mailer.sent == [MSG]


def test_smtp_mailer_sends_with_tls_and_login() -> None:
    with patch("portal.services.mail.smtplib.SMTP") as smtp_cls:
        conn = MagicMock()
        smtp_cls.return_value.__enter__.return_value = conn
        SmtpMailer("smtp.example.com", 587, username="u", password="p").send(MSG)

    smtp_cls.assert_called_once_with(host="smtp.example.com", port=587, timeout=10)
    conn.starttls.assert_called_once()
    conn.login.assert_called_once_with("u", "p")
    sent = conn.send_message.call_args[0][0]
    assert sent["Subject"] == "Contact Form | Portal"
    assert sent["To"] == "owner@example.com"


def test_smtp_failure_becomes_delivery_error() -> None:
    with patch("portal.services.mail.smtplib.SMTP") as smtp_cls:
        smtp_cls.return_value.__enter__.return_value.send_message.side_effect = smtplib.SMTPException("nope")
        with pytest.raises(MailDeliveryError):
            SmtpMailer("smtp.example.com", use_tls=False).send(MSG)
