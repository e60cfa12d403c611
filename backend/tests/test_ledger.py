from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from accountguard import ledger as ledger_module
from accountguard.config import settings
from accountguard.db import get_db, init_db, reset_database_engine
from accountguard.errors import LedgerUnavailable
from accountguard.ledger import AuthEventRecord, AuthEventType, EventLedger
from accountguard.models import AuthEvent
from accountguard.policy import Scope

T0 = datetime(2025, 11, 7, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_url = f"sqlite:///{tmp_path / 'ledger-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _failure(email="a1@example.com", ip="10.0.0.1", at=T0):
    return AuthEventRecord(
        event_type=AuthEventType.LOGIN_FAILURE,
        origin_address=ip,
        email=email,
        metadata={"reason": "invalid_credentials"},
        created_at=at,
    )


def test_login_failure_requires_email_or_account_id():
    with pytest.raises(ValueError):
        AuthEventRecord(event_type=AuthEventType.LOGIN_FAILURE, origin_address="10.0.0.1")

    record = AuthEventRecord(
        event_type="login_failure",
        origin_address="10.0.0.1",
        account_id="acc-1",
    )
    assert record.event_type is AuthEventType.LOGIN_FAILURE
    assert record.security_critical is True


def test_email_is_normalized_on_append():
    ledger = EventLedger()
    event_id = ledger.append(_failure(email="  A1@Example.COM "))

    with get_db() as session:
        row = session.get(AuthEvent, event_id)
        assert row.email == "a1@example.com"
        assert row.event_metadata == {"reason": "invalid_credentials"}


def test_count_since_is_scoped_and_windowed():
    ledger = EventLedger()
    ledger.append(_failure(at=T0 - timedelta(minutes=20)))
    for minute in range(3):
        ledger.append(_failure(at=T0 - timedelta(minutes=minute)))
    ledger.append(_failure(email="someone-else@example.com", ip="10.0.0.1", at=T0))
    ledger.append(
        AuthEventRecord(
            event_type=AuthEventType.LOGIN_SUCCESS,
            origin_address="10.0.0.1",
            email="a1@example.com",
            created_at=T0,
        )
    )

    assert ledger.count_since(Scope.ACCOUNT, "A1@example.com", 900, now=T0) == 3
    assert ledger.count_since(Scope.ORIGIN, "10.0.0.1", 900, now=T0) == 4
    assert ledger.count_since(Scope.ORIGIN, "10.0.0.2", 900, now=T0) == 0


def test_count_since_excludes_event_exactly_at_window_start():
    ledger = EventLedger()
    ledger.append(_failure(at=T0))

    assert ledger.count_since(Scope.ACCOUNT, "a1@example.com", 900, now=T0 + timedelta(seconds=899)) == 1
    assert ledger.count_since(Scope.ACCOUNT, "a1@example.com", 900, now=T0 + timedelta(seconds=900)) == 0


def test_account_scope_matches_account_id_too():
    ledger = EventLedger()
    ledger.append(
        AuthEventRecord(
            event_type=AuthEventType.LOGIN_FAILURE,
            origin_address="10.0.0.9",
            account_id="acc-7",
            created_at=T0,
        )
    )
    assert ledger.count_since(Scope.ACCOUNT, "acc-7", 900, now=T0) == 1


def test_latest_since_returns_aware_timestamp():
    ledger = EventLedger()
    ledger.append(
        AuthEventRecord(
            event_type=AuthEventType.IP_BLOCKED,
            origin_address="10.0.0.1",
            created_at=T0,
        )
    )

    latest = ledger.latest_since(Scope.ORIGIN, "10.0.0.1", AuthEventType.IP_BLOCKED, since=T0 - timedelta(minutes=1))
    assert latest == T0
    assert latest.tzinfo is not None
    assert ledger.latest_since(Scope.ORIGIN, "10.0.0.1", AuthEventType.IP_BLOCKED, since=T0 + timedelta(seconds=1)) is None


def _broken_get_db():
    raise OperationalError("INSERT", {}, Exception("database is locked"))


def test_critical_append_failure_raises(monkeypatch):
    monkeypatch.setattr(ledger_module, "get_db", _broken_get_db)

    with pytest.raises(LedgerUnavailable):
        EventLedger().append(_failure())


def test_informational_append_failure_is_dropped(monkeypatch):
    monkeypatch.setattr(ledger_module, "get_db", _broken_get_db)

    result = EventLedger().append(
        AuthEventRecord(
            event_type=AuthEventType.LOGIN_SUCCESS,
            origin_address="10.0.0.1",
            email="a1@example.com",
        )
    )
    assert result is None


def test_append_with_session_joins_caller_transaction():
    ledger = EventLedger()

    with pytest.raises(RuntimeError):
        with get_db() as session:
            ledger.append(_failure(), session=session)
            raise RuntimeError("caller failed after the append")

    with get_db() as session:
        assert session.execute(select(AuthEvent)).scalars().all() == []
