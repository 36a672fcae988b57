from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront_otp.database import Base, init_db
from storefront_otp.services.otp import OtpService, PurposePolicy
from storefront_otp.services.store import InMemoryRecordStore, SqlRecordStore

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current = self.current + timedelta(**delta)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def dispatcher(mocker):
    sender = mocker.Mock()
    sender.send.return_value = True
    return sender


@pytest.fixture
def policies():
    return {
        "registration": PurposePolicy(ttl_seconds=300, rate_limit_seconds=120),
        "password_reset": PurposePolicy(ttl_seconds=300, rate_limit_seconds=60),
    }


@pytest.fixture
def service(store, dispatcher, clock, policies):
    return OtpService(
        store=store,
        dispatcher=dispatcher,
        clock=clock,
        policies=policies,
        code_length=4,
        verify_batch_size=20,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlRecordStore(session_factory)
