import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./otp.db")
    otp_length: int = int(os.getenv("OTP_LENGTH", "4"))
    otp_ttl_seconds: int = int(os.getenv("OTP_TTL_SECONDS", "300"))
    otp_registration_rate_limit_seconds: int = int(
        os.getenv("OTP_REGISTRATION_RATE_LIMIT_SECONDS", "120")
    )
    otp_password_reset_rate_limit_seconds: int = int(
        os.getenv("OTP_PASSWORD_RESET_RATE_LIMIT_SECONDS", "60")
    )
    otp_verify_batch_size: int = int(os.getenv("OTP_VERIFY_BATCH_SIZE", "20"))
    otp_debug: bool = _env_bool("OTP_DEBUG", False)
    otp_email_sender: str = (
        os.getenv("OTP_EMAIL_SENDER")
        or os.getenv("GMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "")
    )
    otp_email_subject: str = os.getenv("OTP_EMAIL_SUBJECT", "Your verification code")
    gmail_token_file: str = os.getenv("GMAIL_TOKEN_FILE", "")
    gmail_credentials_file: str = os.getenv(
        "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    )
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_user: str = os.getenv("SMTP_USER", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "")
    default_store_name: str = os.getenv("DEFAULT_STORE_NAME", "Store").strip()


settings = Settings()
