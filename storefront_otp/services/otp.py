from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
import secrets
from typing import Any, Optional

from storefront_otp.clock import Clock, system_clock
from storefront_otp.config import settings
from storefront_otp.schemas.otp import (
    IssueResult,
    IssueStatus,
    OtpPurpose,
    OtpRecord,
    VerifyResult,
    VerifyStatus,
    normalize_recipient,
)
from storefront_otp.services.email import EmailDispatcher, build_default_dispatcher
from storefront_otp.services.events import EventBus, OtpEvent, OtpEventKind
from storefront_otp.services.store import RecordStore, SqlRecordStore, StoreError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurposePolicy:
    ttl_seconds: int
    rate_limit_seconds: int


def default_policies() -> dict[str, PurposePolicy]:
    return {
        OtpPurpose.REGISTRATION.value: PurposePolicy(
            ttl_seconds=settings.otp_ttl_seconds,
            rate_limit_seconds=settings.otp_registration_rate_limit_seconds,
        ),
        OtpPurpose.PASSWORD_RESET.value: PurposePolicy(
            ttl_seconds=settings.otp_ttl_seconds,
            rate_limit_seconds=settings.otp_password_reset_rate_limit_seconds,
        ),
    }


class OtpService:
    """Issues and verifies short numeric codes for one recipient and purpose.

    Issuing enforces a per-purpose cool-down and keeps a single active code
    per (recipient, purpose) by refreshing a stale record in place. Verifying
    accepts any currently valid code and then purges every record for the
    pair. Neither operation raises; outcomes are returned as results and
    published on the event bus.
    """

    def __init__(
        self,
        store: RecordStore,
        dispatcher: EmailDispatcher,
        clock: Clock = system_clock,
        policies: Optional[dict[str, PurposePolicy]] = None,
        code_length: int = settings.otp_length,
        verify_batch_size: int = settings.otp_verify_batch_size,
        events: Optional[EventBus] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._policies = policies or default_policies()
        self._code_length = code_length
        self._verify_batch_size = verify_batch_size
        self.events = events or EventBus()

    def policy_for(self, purpose) -> PurposePolicy:
        key = _purpose_key(purpose)
        try:
            return self._policies[key]
        except KeyError:
            raise ValueError(f"Unknown OTP purpose: {key}") from None

    def issue(
        self, recipient: str, purpose, context: Optional[dict[str, Any]] = None
    ) -> IssueResult:
        normalized = normalize_recipient(recipient)
        key = _purpose_key(purpose)
        if not normalized:
            return IssueResult(
                ok=False,
                status=IssueStatus.INVALID_REQUEST,
                message="A recipient is required",
            )
        try:
            policy = self.policy_for(key)
        except ValueError as exc:
            return IssueResult(
                ok=False, status=IssueStatus.INVALID_REQUEST, message=str(exc)
            )

        now = self._clock.now()
        try:
            records = self._store.find(normalized, key)
            active = [record for record in records if record.is_active(now)]

            wait_seconds = self._cooldown_remaining(active, now, policy)
            if wait_seconds:
                LOGGER.warning(
                    "OTP rate limited recipient=%s purpose=%s retry_after=%s",
                    normalized,
                    key,
                    wait_seconds,
                )
                self._emit(
                    OtpEventKind.RATE_LIMITED,
                    normalized,
                    key,
                    now,
                    retry_after_seconds=wait_seconds,
                )
                return IssueResult(
                    ok=False,
                    status=IssueStatus.RATE_LIMITED,
                    message=(
                        f"Please wait {wait_seconds} seconds before requesting "
                        "another code"
                    ),
                    retry_after_seconds=wait_seconds,
                )

            self._store.delete_inert(now, recipient=normalized, purpose=key)

            code = self._generate_code()
            expires_at = now + timedelta(seconds=policy.ttl_seconds)
            payload = dict(context or {})
            reissued = self._write_code(normalized, key, code, now, expires_at, payload, active)
        except StoreError:
            LOGGER.exception("OTP issue failed recipient=%s purpose=%s", normalized, key)
            self._emit(OtpEventKind.STORE_FAILED, normalized, key, now, operation="issue")
            return IssueResult(
                ok=False,
                status=IssueStatus.STORE_FAILURE,
                message="Error sending verification code. Please try again.",
            )

        self._emit(
            OtpEventKind.REISSUED if reissued else OtpEventKind.ISSUED,
            normalized,
            key,
            now,
            expires_at=expires_at,
        )

        try:
            delivered = bool(self._dispatcher.send(normalized, code, key, payload))
        except Exception:
            LOGGER.exception(
                "OTP dispatcher raised recipient=%s purpose=%s", normalized, key
            )
            delivered = False
        if not delivered:
            LOGGER.warning(
                "OTP email not delivered recipient=%s purpose=%s; code stays valid",
                normalized,
                key,
            )
            self._emit(OtpEventKind.DISPATCH_FAILED, normalized, key, now)

        return IssueResult(
            ok=True,
            status=IssueStatus.ISSUED,
            message=f"Code sent to {normalized}. Check your email.",
            expires_at=expires_at,
            delivered=delivered,
            code=code,
        )

    def resend(
        self, recipient: str, purpose, context: Optional[dict[str, Any]] = None
    ) -> IssueResult:
        return self.issue(recipient, purpose, context)

    def verify(self, recipient: str, purpose, code: str) -> VerifyResult:
        normalized = normalize_recipient(recipient)
        key = _purpose_key(purpose)
        if not normalized or key not in self._policies:
            return VerifyResult(
                valid=False,
                status=VerifyStatus.INVALID_REQUEST,
                message="A recipient and a known purpose are required",
            )

        now = self._clock.now()
        try:
            records = self._store.find(normalized, key, limit=self._verify_batch_size)
            if not records:
                self._emit(
                    OtpEventKind.VERIFICATION_FAILED,
                    normalized,
                    key,
                    now,
                    reason=VerifyStatus.NOT_FOUND.value,
                )
                return VerifyResult(
                    valid=False,
                    status=VerifyStatus.NOT_FOUND,
                    message="No code found. Please request a new one.",
                )

            match = next(
                (
                    record
                    for record in records
                    if record.is_active(now) and record.code == code
                ),
                None,
            )
            if match is None:
                self._emit(
                    OtpEventKind.VERIFICATION_FAILED,
                    normalized,
                    key,
                    now,
                    reason=VerifyStatus.INVALID.value,
                )
                return VerifyResult(
                    valid=False,
                    status=VerifyStatus.INVALID,
                    message="Invalid or expired code.",
                )

            self._store.delete_by_identity(match.id)
            self._purge(normalized, key, exclude=match.id)
        except StoreError:
            LOGGER.exception("OTP verify failed recipient=%s purpose=%s", normalized, key)
            self._emit(OtpEventKind.STORE_FAILED, normalized, key, now, operation="verify")
            return VerifyResult(
                valid=False,
                status=VerifyStatus.STORE_FAILURE,
                message="Error verifying code. Please try again.",
            )

        LOGGER.info("OTP verified recipient=%s purpose=%s", normalized, key)
        self._emit(OtpEventKind.VERIFIED, normalized, key, now)
        return VerifyResult(
            valid=True,
            status=VerifyStatus.VERIFIED,
            message="Code verified successfully.",
        )

    def sweep(self, recipient: Optional[str] = None, purpose=None) -> int:
        """Delete used and expired records, everywhere or for one recipient/purpose."""
        now = self._clock.now()
        normalized = normalize_recipient(recipient) if recipient is not None else None
        key = _purpose_key(purpose) if purpose is not None else None
        removed = self._store.delete_inert(now, recipient=normalized, purpose=key)
        if removed:
            LOGGER.info("Swept %s inert OTP record(s)", removed)
        return removed

    def has_active_code(self, recipient: str, purpose) -> bool:
        return self.active_code_expiry(recipient, purpose) is not None

    def active_code_expiry(self, recipient: str, purpose) -> Optional[datetime]:
        now = self._clock.now()
        records = self._store.find(normalize_recipient(recipient), _purpose_key(purpose))
        expiries = [record.expires_at for record in records if record.is_active(now)]
        return max(expiries) if expiries else None

    def _cooldown_remaining(
        self, active: list[OtpRecord], now: datetime, policy: PurposePolicy
    ) -> int:
        window = timedelta(seconds=policy.rate_limit_seconds)
        recent = [record for record in active if record.issued_at > now - window]
        if not recent:
            return 0
        newest = max(record.issued_at for record in recent)
        remaining = (newest + window - now).total_seconds()
        return max(1, math.ceil(remaining))

    def _write_code(
        self,
        recipient: str,
        purpose: str,
        code: str,
        now: datetime,
        expires_at: datetime,
        context: dict[str, Any],
        active: list[OtpRecord],
    ) -> bool:
        if not active:
            self._store.insert(
                OtpRecord(
                    recipient=recipient,
                    purpose=purpose,
                    code=code,
                    issued_at=now,
                    expires_at=expires_at,
                    context=context,
                )
            )
            return False

        newest = max(active, key=lambda record: (record.issued_at, record.id))
        for stale in active:
            if stale.id != newest.id:
                self._store.delete_by_identity(stale.id)
        updated = self._store.update_by_identity(
            newest.id,
            code=code,
            issued_at=now,
            expires_at=expires_at,
            used=False,
            attempts=0,
            context=context,
        )
        if not updated:
            # Removed concurrently (e.g. purged by a verification); start a fresh one.
            return self._write_code(recipient, purpose, code, now, expires_at, context, [])
        return True

    def _purge(self, recipient: str, purpose: str, exclude: Optional[int] = None) -> None:
        for record in self._store.find(recipient, purpose):
            if record.id != exclude:
                self._store.delete_by_identity(record.id)

    def _generate_code(self) -> str:
        value = secrets.randbelow(10**self._code_length)
        return str(value).zfill(self._code_length)

    def _emit(
        self, kind: OtpEventKind, recipient: str, purpose: str, now: datetime, **detail
    ) -> None:
        self.events.emit(
            OtpEvent(
                kind=kind,
                recipient=recipient,
                purpose=purpose,
                occurred_at=now,
                detail=detail,
            )
        )


def _purpose_key(purpose) -> str:
    if isinstance(purpose, OtpPurpose):
        return purpose.value
    return str(purpose or "").strip().lower()


def build_otp_service() -> OtpService:
    return OtpService(store=SqlRecordStore(), dispatcher=build_default_dispatcher())


otp_service = build_otp_service()
