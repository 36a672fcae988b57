from dataclasses import replace
from datetime import datetime, timezone
import itertools
import logging
import threading
from typing import Any, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from storefront_otp.database import session_scope
from storefront_otp.models.db_operation import (
    _add_record,
    _delete_inert_records,
    _delete_records,
    _select_records,
    _update_records,
)
from storefront_otp.schemas.otp import OtpRecord

LOGGER = logging.getLogger(__name__)

_MUTABLE_FIELDS = {"code", "issued_at", "expires_at", "used", "attempts", "context"}


class StoreError(RuntimeError):
    pass


class RecordStore(Protocol):
    def find(
        self, recipient: str, purpose: str, limit: Optional[int] = None
    ) -> list[OtpRecord]: ...

    def insert(self, record: OtpRecord) -> OtpRecord: ...

    def update_by_identity(self, record_id: int, **fields: Any) -> bool: ...

    def delete_by_identity(self, record_id: int) -> bool: ...

    def delete_inert(
        self,
        now: datetime,
        recipient: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> int: ...


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update OTP fields: {', '.join(sorted(unknown))}")


def _scope_filters(recipient: Optional[str], purpose: Optional[str]) -> dict:
    filters = {}
    if recipient is not None:
        filters["recipient"] = recipient
    if purpose is not None:
        filters["purpose"] = purpose
    return filters


class InMemoryRecordStore:
    def __init__(self) -> None:
        self._records: dict[int, OtpRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def find(
        self, recipient: str, purpose: str, limit: Optional[int] = None
    ) -> list[OtpRecord]:
        with self._lock:
            matches = [
                record
                for record in self._records.values()
                if record.recipient == recipient and record.purpose == purpose
            ]
        # A bounded batch keeps the newest records, newest first.
        matches.sort(
            key=lambda record: (record.issued_at, record.id), reverse=limit is not None
        )
        if limit is not None:
            matches = matches[:limit]
        return matches

    def insert(self, record: OtpRecord) -> OtpRecord:
        with self._lock:
            stored = replace(record, id=next(self._ids), context=dict(record.context))
            self._records[stored.id] = stored
        return stored

    def update_by_identity(self, record_id: int, **fields: Any) -> bool:
        _check_fields(fields)
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return False
            self._records[record_id] = replace(current, **fields)
        return True

    def delete_by_identity(self, record_id: int) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def delete_inert(
        self,
        now: datetime,
        recipient: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> int:
        filters = _scope_filters(recipient, purpose)
        with self._lock:
            doomed = [
                record_id
                for record_id, record in self._records.items()
                if not record.is_active(now)
                and all(getattr(record, name) == value for name, value in filters.items())
            ]
            for record_id in doomed:
                del self._records[record_id]
        return len(doomed)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(entry) -> OtpRecord:
    return OtpRecord(
        id=entry.id,
        recipient=entry.recipient,
        purpose=entry.purpose,
        code=entry.code,
        issued_at=_as_utc(entry.issued_at),
        expires_at=_as_utc(entry.expires_at),
        used=bool(entry.used),
        attempts=entry.attempts or 0,
        context=dict(entry.context or {}),
    )


class SqlRecordStore:
    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    def find(
        self, recipient: str, purpose: str, limit: Optional[int] = None
    ) -> list[OtpRecord]:
        try:
            with session_scope(self._session_factory) as session:
                entries = _select_records(
                    session,
                    "otp",
                    order_by="issued_at",
                    descending=limit is not None,
                    limit=limit,
                    recipient=recipient,
                    purpose=purpose,
                )
                return [_to_record(entry) for entry in entries]
        except SQLAlchemyError as exc:
            LOGGER.error("OTP lookup failed recipient=%s purpose=%s", recipient, purpose)
            raise StoreError("Failed to read OTP records") from exc

    def insert(self, record: OtpRecord) -> OtpRecord:
        try:
            with session_scope(self._session_factory) as session:
                entry = _add_record(
                    session,
                    "otp",
                    recipient=record.recipient,
                    purpose=record.purpose,
                    code=record.code,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                    used=record.used,
                    attempts=record.attempts,
                    context=dict(record.context),
                )
                return replace(record, id=entry.id)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to create OTP record") from exc

    def update_by_identity(self, record_id: int, **fields: Any) -> bool:
        _check_fields(fields)
        try:
            with session_scope(self._session_factory) as session:
                return _update_records(session, "otp", values=fields, id=record_id) > 0
        except SQLAlchemyError as exc:
            raise StoreError("Failed to update OTP record") from exc

    def delete_by_identity(self, record_id: int) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                return _delete_records(session, "otp", id=record_id) > 0
        except SQLAlchemyError as exc:
            raise StoreError("Failed to delete OTP record") from exc

    def delete_inert(
        self,
        now: datetime,
        recipient: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> int:
        try:
            with session_scope(self._session_factory) as session:
                return _delete_inert_records(
                    session, "otp", now, **_scope_filters(recipient, purpose)
                )
        except SQLAlchemyError as exc:
            raise StoreError("Failed to sweep OTP records") from exc
