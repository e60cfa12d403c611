from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import threading

import pytest
from sqlalchemy import func, select

from accountguard.config import settings
from accountguard.db import get_db, init_db, reset_database_engine
from accountguard.idempotency import apply_external_event, apply_once
from accountguard.models import ExternalEventRecord, Profile


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_url = f"sqlite:///{tmp_path / 'idempotency-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _profile_count():
    with get_db() as session:
        return session.execute(select(func.count()).select_from(Profile)).scalar_one()


def test_same_event_applies_once_sequentially():
    calls = []

    def effect(session):
        calls.append(1)
        session.add(Profile(id=f"p{len(calls)}", email=f"p{len(calls)}@example.com"))

    assert apply_once("evt_1", effect) is True
    assert apply_once("evt_1", effect) is False

    assert len(calls) == 1
    assert _profile_count() == 1


def test_distinct_events_both_apply():
    seen = []
    assert apply_external_event("evt_a", lambda session: seen.append("a")) is True
    assert apply_external_event("evt_b", lambda session: seen.append("b")) is True
    assert seen == ["a", "b"]


def test_failed_effect_releases_the_claim():
    def failing(session):
        raise RuntimeError("downstream write failed")

    with pytest.raises(RuntimeError):
        apply_once("evt_retry", failing)

    with get_db() as session:
        assert session.get(ExternalEventRecord, "evt_retry") is None

    applied = []
    assert apply_once("evt_retry", lambda session: applied.append(True)) is True
    assert applied == [True]


def test_concurrent_deliveries_apply_once():
    lock = threading.Lock()
    calls = []

    def effect(session):
        with lock:
            calls.append(1)
        session.add(Profile(id="concurrent", email="concurrent@example.com"))

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: apply_once("evt_dup", effect), range(6)))

    assert results.count(True) == 1
    assert results.count(False) == 5
    assert len(calls) == 1
    assert _profile_count() == 1


def test_empty_external_id_is_rejected():
    with pytest.raises(ValueError):
        apply_once("", lambda session: None)
