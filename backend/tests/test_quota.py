from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import func, select

from accountguard import quota
from accountguard.config import settings
from accountguard.db import get_db, init_db, reset_database_engine
from accountguard.errors import AccountNotFound, QuotaExceeded, UploadNotFound
from accountguard.models import Profile, Upload, UsageCounter

PERIOD = "2025-11"
NOW = datetime(2025, 11, 7, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_url = f"sqlite:///{tmp_path / 'quota-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _make_profile(account_id="a1", plan="free"):
    with get_db() as session:
        session.add(Profile(id=account_id, email=f"{account_id}@example.com", plan=plan))


def _counter(account_id="a1", period=PERIOD):
    with get_db() as session:
        return session.execute(
            select(UsageCounter).where(UsageCounter.account_id == account_id, UsageCounter.period == period)
        ).scalar_one_or_none()


def test_current_period_format():
    assert quota.current_period(NOW) == "2025-11"
    decision = quota.QuotaDecision(allowed=True, current_count=0, limit=10, plan="free", period="2025-12")
    assert decision.reset_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_free_plan_admits_exactly_the_limit():
    _make_profile()

    results = [quota.try_consume("a1", PERIOD) for _ in range(12)]

    assert [r.allowed for r in results].count(True) == 10
    assert results[9].current_count == 10
    assert results[10].allowed is False
    assert _counter().consumed_count == 10


def test_denial_at_limit_reports_current_count_and_limit():
    _make_profile()
    with get_db() as session:
        session.add(UsageCounter(account_id="a1", period=PERIOD, consumed_count=10, consumed_bytes=0))

    decision = quota.try_consume("a1", PERIOD, 1)

    assert decision.allowed is False
    assert decision.current_count == 10
    assert decision.limit == 10


def test_amount_larger_than_remaining_is_refused_whole():
    _make_profile()
    quota.try_consume("a1", PERIOD, 8)

    assert quota.try_consume("a1", PERIOD, 3).allowed is False
    assert quota.try_consume("a1", PERIOD, 2).allowed is True
    assert _counter().consumed_count == 10


def test_unlimited_plan_skips_counter():
    _make_profile(plan="pro")

    decision = quota.try_consume("a1", PERIOD, 50)

    assert decision.allowed is True
    assert decision.limit is None
    assert _counter() is None


def test_missing_account_raises():
    with pytest.raises(AccountNotFound):
        quota.try_consume("ghost", PERIOD)


def test_increment_rolls_back_with_failed_write():
    _make_profile()

    with pytest.raises(RuntimeError):
        with get_db() as session:
            assert quota.try_consume("a1", PERIOD, session=session).allowed
            raise RuntimeError("guarded write failed")

    counter = _counter()
    assert counter is None or counter.consumed_count == 0


def test_concurrent_consumers_never_exceed_limit():
    _make_profile()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: quota.try_consume("a1", PERIOD), range(25)))

    assert sum(1 for r in results if r.allowed) == 10
    assert _counter().consumed_count == 10


def test_record_upload_counts_bytes_and_refuses_over_limit():
    _make_profile()

    for i in range(10):
        quota.record_upload("a1", f"a1/{i}.png", 1000, now=NOW)

    with pytest.raises(QuotaExceeded) as excinfo:
        quota.record_upload("a1", "a1/overflow.png", 1000, now=NOW)

    assert excinfo.value.current_count == 10
    assert excinfo.value.limit == 10
    counter = _counter()
    assert counter.consumed_count == 10
    assert counter.consumed_bytes == 10_000
    with get_db() as session:
        assert session.execute(select(func.count()).select_from(Upload)).scalar_one() == 10


def test_delete_upload_releases_its_unit():
    _make_profile()
    upload_id = quota.record_upload("a1", "a1/one.png", 2048, now=NOW)

    path = quota.delete_upload("a1", upload_id)

    assert path == "a1/one.png"
    counter = _counter()
    assert counter.consumed_count == 0
    assert counter.consumed_bytes == 0


def test_delete_upload_of_another_account_is_not_found():
    _make_profile()
    upload_id = quota.record_upload("a1", "a1/one.png", 2048, now=NOW)

    with pytest.raises(UploadNotFound) as excinfo:
        quota.delete_upload("someone-else", upload_id)

    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Upload not found."
    assert _counter().consumed_count == 1


def test_release_never_goes_below_zero():
    _make_profile()
    quota.try_consume("a1", PERIOD, 1, size_bytes=10)

    quota.release("a1", PERIOD, amount=5, size_bytes=100)

    counter = _counter()
    assert counter.consumed_count == 0
    assert counter.consumed_bytes == 0


def test_check_quota_is_read_only():
    _make_profile()
    quota.try_consume("a1", PERIOD, 4)

    decision = quota.check_quota("a1", PERIOD)

    assert decision.allowed is True
    assert decision.current_count == 4
    assert _counter().consumed_count == 4
