import smtplib
from email import message_from_string
from unittest.mock import MagicMock, patch

import pytest

from tripgate.service.email import EmailService


def _configured(**overrides) -> EmailService:
    options = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="no-reply@example.com",
        frontend_url="https://trips.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def _smtp_mock():
    server = MagicMock()
    factory = MagicMock()
    factory.return_value.__enter__.return_value = server
    return factory, server


class TestLinks:
    def test_links_point_at_frontend_pages(self):
        service = _configured()

        assert service.verification_url("abc") == "https://trips.example.com/verify-email?token=abc"
        assert service.reset_url("a b") == "https://trips.example.com/reset-password?token=a%20b"


class TestDevMode:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()

        with patch("tripgate.service.email.smtplib.SMTP") as smtp:
            assert service.send_verification_email("alice@x.com", "tok") is True

        smtp.assert_not_called()
        assert service.is_configured is False


class TestDelivery:
    def test_starttls_delivery(self):
        factory, server = _smtp_mock()
        service = _configured()

        with patch("tripgate.service.email.smtplib.SMTP", factory):
            assert service.send_verification_email("alice@x.com", "tok123") is True

        factory.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "hunter2")
        sender, recipient, raw = server.sendmail.call_args.args
        assert (sender, recipient) == ("no-reply@example.com", "alice@x.com")
        message = message_from_string(raw)
        assert message["Subject"] == "Verify your Trip Planner email"
        assert message["From"] == "Trip Planner <no-reply@example.com>"
        plain = message.get_payload()[0].get_payload(decode=True).decode()
        assert "https://trips.example.com/verify-email?token=tok123" in plain
        assert "24 hours" in plain

    def test_implicit_tls_delivery(self):
        factory, server = _smtp_mock()
        service = _configured(smtp_port=465, smtp_use_tls=False)

        with patch("tripgate.service.email.smtplib.SMTP_SSL", factory):
            assert service.send_password_reset_email("bob@x.com", "r") is True

        assert factory.call_args.args == ("smtp.example.com", 465)
        server.starttls.assert_not_called()
        subject = message_from_string(server.sendmail.call_args.args[2])["Subject"]
        assert subject == "Reset your Trip Planner password"

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
            smtplib.SMTPRecipientsRefused({"alice@x.com": (550, b"no such user")}),
            smtplib.SMTPServerDisconnected("gone"),
            ConnectionRefusedError("refused"),
        ],
    )
    def test_failures_return_false(self, error):
        factory, server = _smtp_mock()
        server.sendmail.side_effect = error

        with patch("tripgate.service.email.smtplib.SMTP", factory):
            assert _configured().send_verification_email("alice@x.com", "tok") is False
