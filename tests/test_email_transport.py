import smtplib
import socket

import pytest

import app.email_utils as email_utils
from app.email_utils import LogMailTransport, SmtpMailTransport, build_message, build_transport
from core.errors import DeliveryFailure


def _transport(**overrides):
    kwargs = dict(server="smtp.example.com", port=587, user="alerts@example.com", password="pw", timeout=5)
    kwargs.update(overrides)
    return SmtpMailTransport(**kwargs)


class FakeSMTP:
    instances = []

    def __init__(self, server, port, timeout=None):
        self.server, self.port, self.timeout = server, port, timeout
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        self.login_user = user

    def sendmail(self, sender, recipients, message):
        self.sent.append((sender, recipients, message))


def test_send_uses_starttls_login_and_timeout(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_utils.smtplib, "SMTP", FakeSMTP)

    _transport().send("buyer@example.com", "New items", "<p>hi</p>")

    smtp = FakeSMTP.instances[0]
    assert smtp.timeout == 5
    assert smtp.login_user == "alerts@example.com"
    sender, recipients, message = smtp.sent[0]
    assert recipients == ["buyer@example.com"]
    assert "Subject: New items" in message


def test_missing_credentials_is_delivery_failure():
    with pytest.raises(DeliveryFailure):
        _transport(user=None).send("buyer@example.com", "s", "b")


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPRecipientsRefused({"buyer@example.com": (550, b"no such user")}),
        socket.timeout("timed out"),
        ConnectionRefusedError("refused"),
    ],
)
def test_smtp_errors_become_delivery_failure(monkeypatch, error):
    class Failing(FakeSMTP):
        def sendmail(self, sender, recipients, message):
            raise error

    monkeypatch.setattr(email_utils.smtplib, "SMTP", Failing)
    with pytest.raises(DeliveryFailure):
        _transport().send("buyer@example.com", "s", "b")


def test_gmail_sends_from_login_address():
    transport = _transport(server="smtp.gmail.com", email_from="noreply@bazar.si")
    assert transport.sender == "alerts@example.com"
    assert _transport(email_from="noreply@bazar.si").sender == "noreply@bazar.si"


def test_build_message_is_html():
    msg = build_message("a@example.com", "b@example.com", "Subject", "<b>x</b>")
    assert msg["To"] == "b@example.com"
    assert msg.get_payload()[0].get_content_type() == "text/html"


def test_build_transport(settings):
    assert isinstance(build_transport(settings), LogMailTransport)
    assert isinstance(build_transport(settings.with_overrides(mail_transport="smtp")), SmtpMailTransport)
