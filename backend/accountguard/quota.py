from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Iterator, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .errors import AccountNotFound, QuotaExceeded, UploadNotFound
from .metrics import QUOTA_DENIALS_TOTAL
from .models import Profile, Upload, UsageCounter

logger = logging.getLogger("accountguard.quota")

# None means unlimited.
PLAN_LIMITS: dict[str, Optional[int]] = {
    "free": settings.free_monthly_uploads,
    "pro": None,
    "team": None,
}


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    current_count: int
    limit: Optional[int]
    plan: str
    period: str

    @property
    def reset_at(self) -> datetime:
        year, month = (int(part) for part in self.period.split("-"))
        if month == 12:
            return datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(year, month + 1, 1, tzinfo=timezone.utc)


def current_period(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.astimezone(timezone.utc).strftime("%Y-%m")


@contextmanager
def _transaction(session: Optional[Session]) -> Iterator[Session]:
    if session is not None:
        yield session
        return
    with get_db() as own_session:
        yield own_session


def _lock_profile(session: Session, account_id: str) -> Profile:
    profile = session.execute(
        select(Profile).where(Profile.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if profile is None:
        raise AccountNotFound(account_id)
    return profile


def _lock_counter(session: Session, account_id: str, period: str) -> Optional[UsageCounter]:
    return session.execute(
        select(UsageCounter)
        .where(UsageCounter.account_id == account_id, UsageCounter.period == period)
        .with_for_update()
    ).scalar_one_or_none()


def try_consume(
    account_id: str,
    period: str,
    amount: int = 1,
    size_bytes: int = 0,
    session: Optional[Session] = None,
) -> QuotaDecision:
    """Admit and count ``amount`` units for ``account_id`` in ``period``.

    Pass the session of the write being guarded so the increment commits or
    rolls back with it. Locks are taken profile first, then counter; the
    profile lock also serializes lazy creation of the counter row.
    """
    if amount < 1:
        raise ValueError("amount must be positive")

    with _transaction(session) as tx:
        profile = _lock_profile(tx, account_id)
        limit = PLAN_LIMITS.get(profile.plan, PLAN_LIMITS["free"])
        if limit is None:
            return QuotaDecision(allowed=True, current_count=0, limit=None, plan=profile.plan, period=period)

        counter = _lock_counter(tx, account_id, period)
        if counter is None:
            counter = UsageCounter(account_id=account_id, period=period, consumed_count=0, consumed_bytes=0)
            tx.add(counter)
            tx.flush()

        if counter.consumed_count + amount > limit:
            QUOTA_DENIALS_TOTAL.labels(plan=profile.plan).inc()
            logger.info(
                "Quota admission refused",
                extra={"event": "quota_denied", "account_id": account_id, "period": period},
            )
            return QuotaDecision(
                allowed=False,
                current_count=counter.consumed_count,
                limit=limit,
                plan=profile.plan,
                period=period,
            )

        counter.consumed_count += amount
        counter.consumed_bytes += max(0, size_bytes)
        tx.flush()
        return QuotaDecision(
            allowed=True,
            current_count=counter.consumed_count,
            limit=limit,
            plan=profile.plan,
            period=period,
        )


def check_quota(account_id: str, period: str) -> QuotaDecision:
    """Read-only view of the counter; takes no locks."""
    with get_db() as session:
        profile = session.get(Profile, account_id)
        if profile is None:
            raise AccountNotFound(account_id)
        limit = PLAN_LIMITS.get(profile.plan, PLAN_LIMITS["free"])
        if limit is None:
            return QuotaDecision(allowed=True, current_count=0, limit=None, plan=profile.plan, period=period)
        consumed = session.execute(
            select(UsageCounter.consumed_count).where(
                UsageCounter.account_id == account_id, UsageCounter.period == period
            )
        ).scalar_one_or_none()
        current = consumed or 0
        return QuotaDecision(
            allowed=current < limit,
            current_count=current,
            limit=limit,
            plan=profile.plan,
            period=period,
        )


def release(
    account_id: str,
    period: str,
    amount: int = 1,
    size_bytes: int = 0,
    session: Optional[Session] = None,
) -> None:
    with _transaction(session) as tx:
        _lock_profile(tx, account_id)
        counter = _lock_counter(tx, account_id, period)
        if counter is None:
            return
        counter.consumed_count = max(0, counter.consumed_count - amount)
        counter.consumed_bytes = max(0, counter.consumed_bytes - max(0, size_bytes))
        tx.flush()


def record_upload(
    account_id: str,
    storage_path: str,
    file_size: int,
    now: Optional[datetime] = None,
) -> str:
    """Insert an upload row and consume one unit of quota atomically."""
    period = current_period(now)
    with get_db() as session:
        decision = try_consume(account_id, period, amount=1, size_bytes=file_size, session=session)
        if not decision.allowed:
            raise QuotaExceeded(decision.current_count, decision.limit or 0, period)

        upload = Upload(
            id=str(uuid.uuid4()),
            account_id=account_id,
            storage_path=storage_path,
            file_size=file_size,
            period=period,
            created_at=now or datetime.now(timezone.utc),
        )
        session.add(upload)
        session.flush()
        return upload.id


def delete_upload(account_id: str, upload_id: str) -> str:
    """Remove an upload row, give its unit back, and return its storage path."""
    with get_db() as session:
        upload = session.execute(
            select(Upload).where(Upload.id == upload_id, Upload.account_id == account_id)
        ).scalar_one_or_none()
        if upload is None:
            raise UploadNotFound(upload_id)
        storage_path = upload.storage_path
        release(account_id, upload.period, amount=1, size_bytes=upload.file_size, session=session)
        session.delete(upload)
        return storage_path
