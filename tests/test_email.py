"""
Tests for the email dispatchers in `storefront_otp.services.email`.

Network transports are mocked: `urlopen` for the Gmail REST API and
`smtplib.SMTP` for the SMTP fallback.
"""

import base64
import json
import smtplib
from urllib.error import URLError

from storefront_otp.services.email import (
    FallbackDispatcher,
    GmailDispatcher,
    SmtpDispatcher,
    build_body,
    build_subject,
)


class TestMessageContent:
    """
    Test suite for subject and body helpers.
    """

    def test_body_mentions_code_store_and_expiry(self):
        """
        The plain-text body carries the code, the store name and the TTL.
        """

        body = build_body(
            "0093",
            "registration",
            {"business_name": "Green Shop", "support_email": "help@green.shop"},
            300,
        )

        assert "Your Green Shop code is 0093." in body
        assert "verify your email address" in body
        assert "5 minute(s)" in body
        assert "help@green.shop" in body

    def test_subject_depends_on_purpose(self):
        """
        Password reset mails get their own subject; the store name falls back
        to the configured default.
        """

        assert build_subject("password_reset", {}) == "Store: password reset code"
        assert build_subject("registration", {"store_name": "Kiosk"}).startswith("Kiosk:")


class TestGmailDispatcher:
    """
    Test suite for `GmailDispatcher`.
    """

    def test_send_posts_raw_message(self, tmp_path, mocker):
        """
        A cached, unexpired token is used to post a base64url message.
        """

        token_file = tmp_path / "token.json"
        token_file.write_text(
            json.dumps({"token": "abc", "expiry": "2999-01-01T00:00:00+00:00"}),
            encoding="utf-8",
        )
        mock_urlopen = mocker.patch("storefront_otp.services.email.urlopen")

        dispatcher = GmailDispatcher(
            sender="noreply@store.test", token_file=str(token_file), credentials_file=""
        )
        sent = dispatcher.send("alice@example.com", "4821", "registration", {})

        assert sent is True
        request = mock_urlopen.call_args.args[0]
        assert request.get_header("Authorization") == "Bearer abc"
        raw = json.loads(request.data.decode("utf-8"))["raw"]
        message = base64.urlsafe_b64decode(raw.encode("ascii")).decode("utf-8")
        assert "To: alice@example.com" in message
        assert "4821" in message

    def test_missing_sender_returns_false(self, mocker):
        """
        Without a sender nothing is posted and the failure is reported.
        """

        mock_urlopen = mocker.patch("storefront_otp.services.email.urlopen")

        dispatcher = GmailDispatcher(sender="", token_file="", credentials_file="")

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False
        mock_urlopen.assert_not_called()

    def test_network_error_returns_false(self, tmp_path, mocker):
        """
        Transport errors are absorbed into a False result.
        """

        token_file = tmp_path / "token.json"
        token_file.write_text(
            json.dumps({"token": "abc", "expiry": "2999-01-01T00:00:00+00:00"}),
            encoding="utf-8",
        )
        mocker.patch(
            "storefront_otp.services.email.urlopen", side_effect=URLError("offline")
        )

        dispatcher = GmailDispatcher(
            sender="noreply@store.test", token_file=str(token_file), credentials_file=""
        )

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False

    def test_socket_timeout_returns_false(self, tmp_path, mocker):
        """
        A read timeout is not wrapped in `URLError` by urllib; it is still
        reported as a failed send.
        """

        token_file = tmp_path / "token.json"
        token_file.write_text(
            json.dumps({"token": "abc", "expiry": "2999-01-01T00:00:00+00:00"}),
            encoding="utf-8",
        )
        mocker.patch(
            "storefront_otp.services.email.urlopen",
            side_effect=TimeoutError("read timed out"),
        )

        dispatcher = GmailDispatcher(
            sender="noreply@store.test", token_file=str(token_file), credentials_file=""
        )

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False

    def test_malformed_token_file_returns_false(self, tmp_path, mocker):
        """
        A token file that is not valid JSON fails the send without posting.
        """

        token_file = tmp_path / "token.json"
        token_file.write_text("{not json", encoding="utf-8")
        mock_urlopen = mocker.patch("storefront_otp.services.email.urlopen")

        dispatcher = GmailDispatcher(
            sender="noreply@store.test", token_file=str(token_file), credentials_file=""
        )

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False
        mock_urlopen.assert_not_called()

    def test_bad_token_refresh_response_returns_false(self, tmp_path, mocker):
        """
        A refresh response with a non-numeric `expires_in` fails the send.
        """

        token_file = tmp_path / "token.json"
        token_file.write_text(
            json.dumps(
                {
                    "refresh_token": "r",
                    "client_id": "id",
                    "client_secret": "secret",
                }
            ),
            encoding="utf-8",
        )
        mock_urlopen = mocker.patch("storefront_otp.services.email.urlopen")
        response = mock_urlopen.return_value.__enter__.return_value
        response.read.return_value = json.dumps(
            {"access_token": "abc", "expires_in": "soon"}
        ).encode("utf-8")

        dispatcher = GmailDispatcher(
            sender="noreply@store.test", token_file=str(token_file), credentials_file=""
        )

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False


class TestSmtpDispatcher:
    """
    Test suite for `SmtpDispatcher`.
    """

    def _dispatcher(self):
        return SmtpDispatcher(
            host="smtp.store.test",
            port=587,
            user="mailer",
            password="secret",
            from_email="noreply@store.test",
            from_name="",
        )

    def test_send_uses_starttls(self, mocker):
        """
        The message is sent over STARTTLS after logging in.
        """

        mock_smtp = mocker.patch("storefront_otp.services.email.smtplib.SMTP")
        server = mock_smtp.return_value.__enter__.return_value

        sent = self._dispatcher().send(
            "alice@example.com", "4821", "password_reset", {"business_name": "Green"}
        )

        assert sent is True
        server.starttls.assert_called_once_with()
        server.login.assert_called_once_with("mailer", "secret")
        from_addr, to_addrs, payload = server.sendmail.call_args.args
        assert from_addr == "noreply@store.test"
        assert to_addrs == ["alice@example.com"]
        assert "Green <noreply@store.test>" in payload

    def test_smtp_error_returns_false(self, mocker):
        """
        SMTP failures are reported as an unsuccessful send.
        """

        mock_smtp = mocker.patch("storefront_otp.services.email.smtplib.SMTP")
        server = mock_smtp.return_value.__enter__.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"denied")

        assert self._dispatcher().send("alice@example.com", "4821", "registration", {}) is False

    def test_unconfigured_is_skipped(self, mocker):
        """
        Without host and user the dispatcher never opens a connection.
        """

        mock_smtp = mocker.patch("storefront_otp.services.email.smtplib.SMTP")

        dispatcher = SmtpDispatcher(host="", user="")

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is False
        mock_smtp.assert_not_called()


class TestFallbackDispatcher:
    """
    Test suite for `FallbackDispatcher`.
    """

    def test_first_success_wins(self, mocker):
        """
        Later transports are not tried once one succeeds.
        """

        primary = mocker.Mock()
        primary.send.return_value = True
        secondary = mocker.Mock()

        dispatcher = FallbackDispatcher(primary, secondary)

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is True
        secondary.send.assert_not_called()

    def test_falls_back_on_failure(self, mocker):
        """
        A failed primary hands over to the next transport.
        """

        primary = mocker.Mock()
        primary.send.return_value = False
        secondary = mocker.Mock()
        secondary.send.return_value = True

        dispatcher = FallbackDispatcher(primary, secondary)

        assert dispatcher.send("alice@example.com", "4821", "registration", {}) is True
        secondary.send.assert_called_once_with(
            "alice@example.com", "4821", "registration", {}
        )

    def test_all_failed(self, mocker):
        """
        With every transport failing, or none configured, the send fails.
        """

        failing = mocker.Mock()
        failing.send.return_value = False

        assert FallbackDispatcher(failing).send("a@b.c", "1", "registration", {}) is False
        assert FallbackDispatcher().send("a@b.c", "1", "registration", {}) is False
