from __future__ import annotations

import base64
import json
import logging
import smtplib
from datetime import datetime, timedelta, timezone
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from storefront_otp.config import settings
from storefront_otp.schemas.email import EmailSendError

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
REQUEST_TIMEOUT_SECONDS = 10

_PURPOSE_LABELS = {
    "registration": "verify your email address",
    "password_reset": "reset your password",
}


class EmailDispatcher(Protocol):
    def send(
        self, recipient: str, code: str, purpose: str, context: dict[str, Any]
    ) -> bool: ...


def store_name(context: dict[str, Any]) -> str:
    name = (context or {}).get("business_name") or (context or {}).get("store_name")
    return str(name).strip() if name else settings.default_store_name


def build_subject(purpose: str, context: dict[str, Any]) -> str:
    if purpose == "password_reset":
        return f"{store_name(context)}: password reset code"
    return f"{store_name(context)}: {settings.otp_email_subject}"


def build_body(
    code: str, purpose: str, context: dict[str, Any], ttl_seconds: int
) -> str:
    minutes = max(1, ttl_seconds // 60)
    label = _PURPOSE_LABELS.get(purpose, "continue")
    lines = [
        f"Your {store_name(context)} code is {code}.",
        "",
        f"Use it to {label}. It expires in {minutes} minute(s).",
    ]
    support_email = (context or {}).get("support_email")
    if support_email:
        lines.append(f"Questions? Contact {support_email}.")
    lines.extend(["", "If you did not request this code, you can ignore this email."])
    return "\n".join(lines)


class GmailDispatcher:
    """Sends OTP mail through the Gmail REST API using a stored OAuth refresh token."""

    def __init__(
        self,
        sender: Optional[str] = None,
        token_file: Optional[str] = None,
        credentials_file: Optional[str] = None,
    ) -> None:
        self._sender = sender if sender is not None else settings.otp_email_sender
        self._token_file = token_file if token_file is not None else settings.gmail_token_file
        self._credentials_file = (
            credentials_file
            if credentials_file is not None
            else settings.gmail_credentials_file
        )

    @property
    def configured(self) -> bool:
        return bool(self._sender)

    def send(
        self, recipient: str, code: str, purpose: str, context: dict[str, Any]
    ) -> bool:
        try:
            self._deliver(recipient, code, purpose, context)
        except EmailSendError as exc:
            LOGGER.warning("Gmail OTP delivery failed to=%s: %s", recipient, exc)
            return False
        except (OSError, ValueError) as exc:
            # Socket timeouts, unreadable token files and malformed JSON.
            LOGGER.error("Gmail OTP delivery error to=%s: %r", recipient, exc)
            return False
        LOGGER.info("OTP email sent via Gmail to=%s purpose=%s", recipient, purpose)
        return True

    def _deliver(
        self, recipient: str, code: str, purpose: str, context: dict[str, Any]
    ) -> None:
        if not self._sender:
            raise EmailSendError("OTP email sender is not configured")

        body = build_body(code, purpose, context, settings.otp_ttl_seconds)
        raw_message = _build_raw_message(
            self._sender, recipient, build_subject(purpose, context), body
        )
        token = self._access_token()
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
                response.read()
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            LOGGER.error("Gmail API error: %s", error_body)
            raise EmailSendError("Failed to send OTP email") from exc
        except URLError as exc:
            raise EmailSendError("Failed to reach Gmail API") from exc

    def _token_path(self) -> Path:
        if self._token_file:
            return Path(self._token_file)
        return Path.cwd() / "credentials" / "token.json"

    def _credentials_path(self) -> Path:
        if self._credentials_file:
            return Path(self._credentials_file)
        return Path.cwd() / "credentials" / "credentials.json"

    def _access_token(self) -> str:
        token_path = self._token_path()
        token_data = _load_json(token_path)

        cached = token_data.get("token")
        expiry = _parse_expiry(token_data.get("expiry"))
        if cached and expiry and expiry > datetime.now(timezone.utc) + timedelta(minutes=1):
            return cached

        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            raise EmailSendError("Gmail refresh token is missing")

        client_id, client_secret = self._client_details(token_data)
        payload = urlencode(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        request = Request(
            token_data.get("token_uri") or GOOGLE_TOKEN_ENDPOINT,
            data=payload,
            method="POST",
        )
        try:
            with urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
                data = json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            LOGGER.error("Gmail token refresh error: %s", error_body)
            raise EmailSendError("Failed to refresh Gmail token") from exc
        except URLError as exc:
            raise EmailSendError("Failed to reach Gmail token endpoint") from exc

        access_token = data.get("access_token")
        if not access_token:
            raise EmailSendError("Gmail token refresh did not return an access token")

        expires_in = int(data.get("expires_in", 3600))
        token_data["token"] = access_token
        token_data["expiry"] = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        ).isoformat()
        token_path.write_text(json.dumps(token_data), encoding="utf-8")
        return access_token

    def _client_details(self, token_data: dict[str, Any]) -> tuple[str, str]:
        client_id = token_data.get("client_id")
        client_secret = token_data.get("client_secret")
        if client_id and client_secret:
            return client_id, client_secret

        credentials = _load_json(self._credentials_path())
        installed = credentials.get("installed", {})
        client_id = installed.get("client_id") or credentials.get("client_id")
        client_secret = installed.get("client_secret") or credentials.get("client_secret")
        if not client_id or not client_secret:
            raise EmailSendError("Gmail client credentials are missing")
        return client_id, client_secret


class SmtpDispatcher:
    """Plain SMTP + STARTTLS transport, used when the Gmail API is unavailable."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> None:
        self._host = host if host is not None else settings.smtp_host
        self._port = port if port is not None else settings.smtp_port
        self._user = user if user is not None else settings.smtp_user
        self._password = password if password is not None else settings.smtp_password
        self._from_email = (
            from_email if from_email is not None else settings.smtp_from_email
        ) or self._user
        self._from_name = from_name if from_name is not None else settings.smtp_from_name

    @property
    def configured(self) -> bool:
        return bool(self._host and self._user)

    def send(
        self, recipient: str, code: str, purpose: str, context: dict[str, Any]
    ) -> bool:
        if not self.configured:
            LOGGER.warning("SMTP not configured (SMTP_HOST/SMTP_USER). Skipping send.")
            return False

        message = MIMEText(
            build_body(code, purpose, context, settings.otp_ttl_seconds), "plain", "utf-8"
        )
        message["Subject"] = build_subject(purpose, context)
        sender_name = self._from_name or store_name(context)
        message["From"] = f"{sender_name} <{self._from_email}>"
        message["To"] = recipient

        try:
            with smtplib.SMTP(
                self._host, self._port, timeout=REQUEST_TIMEOUT_SECONDS
            ) as server:
                server.starttls()
                server.login(self._user, self._password)
                server.sendmail(self._from_email, [recipient], message.as_string())
        except smtplib.SMTPException as exc:
            LOGGER.error("SMTP error sending OTP to=%s: %s", recipient, exc)
            return False
        except OSError as exc:
            LOGGER.error("SMTP connection error sending OTP to=%s: %s", recipient, exc)
            return False
        LOGGER.info("OTP email sent via SMTP to=%s purpose=%s", recipient, purpose)
        return True


class FallbackDispatcher:
    def __init__(self, *dispatchers: EmailDispatcher) -> None:
        self._dispatchers = dispatchers

    def send(
        self, recipient: str, code: str, purpose: str, context: dict[str, Any]
    ) -> bool:
        for index, dispatcher in enumerate(self._dispatchers):
            if dispatcher.send(recipient, code, purpose, context):
                return True
            if index + 1 < len(self._dispatchers):
                LOGGER.warning(
                    "%s failed for to=%s, trying next transport",
                    type(dispatcher).__name__,
                    recipient,
                )
        LOGGER.error("All email transports failed for to=%s", recipient)
        return False


def build_default_dispatcher() -> FallbackDispatcher:
    dispatchers: list[EmailDispatcher] = []
    gmail = GmailDispatcher()
    if gmail.configured:
        dispatchers.append(gmail)
    smtp = SmtpDispatcher()
    if smtp.configured:
        dispatchers.append(smtp)
    if not dispatchers:
        LOGGER.warning("No email transport configured; OTP codes will not be delivered")
    return FallbackDispatcher(*dispatchers)


def _build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    lines = [
        f"From: {sender}",
        f"To: {recipient}",
        f"Subject: {subject}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "",
        body,
    ]
    message = "\r\n".join(lines)
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode(message.encode("utf-8")).decode("ascii")


def _parse_expiry(raw_value: Optional[str]) -> Optional[datetime]:
    if not raw_value:
        return None
    try:
        return datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise EmailSendError(f"Missing Gmail file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
