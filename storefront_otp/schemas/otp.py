from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from storefront_otp.config import settings

OTP_LENGTH = settings.otp_length


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


class IssueStatus(str, Enum):
    ISSUED = "issued"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    STORE_FAILURE = "store_failure"


class VerifyStatus(str, Enum):
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    INVALID_REQUEST = "invalid_request"
    STORE_FAILURE = "store_failure"


def normalize_recipient(recipient: str) -> str:
    return (recipient or "").strip().lower()


@dataclass(frozen=True)
class OtpRecord:
    recipient: str
    purpose: str
    code: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    attempts: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def is_active(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass(frozen=True)
class IssueResult:
    ok: bool
    status: IssueStatus
    message: str
    retry_after_seconds: Optional[int] = None
    expires_at: Optional[datetime] = None
    delivered: Optional[bool] = None
    code: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    status: VerifyStatus
    message: str


class OtpRequest(BaseModel):
    recipient: str = Field(min_length=3, max_length=255)
    purpose: OtpPurpose = OtpPurpose.REGISTRATION
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("recipient", mode="before")
    @classmethod
    def strip_recipient(cls, value):
        return value.strip() if isinstance(value, str) else value


class OtpResponse(BaseModel):
    message: str
    expires_in_seconds: int
    delivered: Optional[bool] = None
    otp: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    recipient: str = Field(min_length=3, max_length=255)
    purpose: OtpPurpose = OtpPurpose.REGISTRATION
    code: str = Field(min_length=OTP_LENGTH, max_length=OTP_LENGTH)

    @field_validator("recipient", mode="before")
    @classmethod
    def strip_recipient(cls, value):
        return value.strip() if isinstance(value, str) else value


class OtpVerifyResponse(BaseModel):
    message: str
    verified: bool
