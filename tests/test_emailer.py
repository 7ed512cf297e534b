from fixrez import config, emailer


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


class TestEmailDelivery:
    def enable_smtp(self, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(config, "SMTP_EMAIL_SENDING_ENABLED", True)
        monkeypatch.setattr(config, "EMAIL_SMTP_PORT", 587)
        monkeypatch.setattr(config, "EMAIL_SMTP_USE_SSL", False)
        monkeypatch.setattr(emailer.smtplib, "SMTP", FakeSMTP)

    def test_smtp_send(self, monkeypatch):
        self.enable_smtp(monkeypatch)

        assert emailer.send_email_message_smtp("Jane@Example.com", "Hello", "Body") is None
        assert FakeSMTP.sent[0]["To"] == "jane@example.com"
        assert FakeSMTP.sent[0]["Subject"] == "Hello"

    def test_header_with_line_break_is_reported_not_raised(self, monkeypatch):
        self.enable_smtp(monkeypatch)

        error = emailer.send_email_message_smtp("jane@example.com", "Hi\nBcc: x@y.z", "Body")

        assert error == "Unexpected SMTP delivery error. Check server logs for details."
        assert FakeSMTP.sent == []

    def test_unexpected_resend_failure_is_reported(self, monkeypatch):
        monkeypatch.setattr(config, "RESEND_EMAIL_SENDING_ENABLED", True)

        def broken_urlopen(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(emailer.urllib.request, "urlopen", broken_urlopen)

        error = emailer.send_email_message_resend("jane@example.com", "Hello", "Body")
        assert error == "Unexpected Resend delivery error. Check server logs for details."
