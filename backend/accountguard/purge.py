from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .errors import AccountNotFound, IdentityRemovalFailed, PurgeFailed
from .ledger import AuthEventRecord, AuthEventType, EventLedger
from .metrics import ARTIFACT_CLEANUP_FAILURES_TOTAL, PURGES_TOTAL
from .models import AuthEvent, Profile, Subscription, SubscriptionEvent, Upload, UsageCounter
from .reconciliation import IDENTITY, STORAGE, enqueue
from .services.identity_service import IdentityServiceError, IdentityVerifier
from .services.storage_service import ObjectStorage

logger = logging.getLogger("accountguard.purge")


@dataclass
class PurgeResult:
    deleted_counts: dict[str, int] = field(default_factory=dict)
    artifact_refs: list[str] = field(default_factory=list)


def _lock_profile(session: Session, account_id: str) -> Profile:
    profile = session.execute(
        select(Profile).where(Profile.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if profile is None:
        raise AccountNotFound(account_id)
    return profile


def _collect_artifacts(session: Session, account_id: str) -> list[str]:
    rows = session.execute(
        select(Upload.storage_path).where(Upload.account_id == account_id).order_by(Upload.created_at)
    ).scalars()
    return [path for path in rows if path]


def _delete_uploads(session: Session, account_id: str) -> int:
    return session.execute(delete(Upload).where(Upload.account_id == account_id)).rowcount


def _delete_usage_counters(session: Session, account_id: str) -> int:
    return session.execute(delete(UsageCounter).where(UsageCounter.account_id == account_id)).rowcount


def _delete_subscription_events(session: Session, account_id: str) -> int:
    return session.execute(delete(SubscriptionEvent).where(SubscriptionEvent.account_id == account_id)).rowcount


def _delete_subscriptions(session: Session, account_id: str) -> int:
    return session.execute(delete(Subscription).where(Subscription.account_id == account_id)).rowcount


def _delete_auth_events(session: Session, account_id: str, email: str) -> int:
    return session.execute(
        delete(AuthEvent).where(or_(AuthEvent.account_id == account_id, AuthEvent.email == email.lower()))
    ).rowcount


def _delete_profile(session: Session, account_id: str) -> int:
    return session.execute(delete(Profile).where(Profile.id == account_id)).rowcount


def _drain_uploads(account_id: str, batch_size: int) -> int:
    """Delete uploads beyond ``batch_size`` in bounded transactions of their own.

    Each batch hands its storage paths to the cleanup queue in the same
    transaction that deletes the rows.
    """
    drained = 0
    while True:
        with get_db() as session:
            _lock_profile(session, account_id)
            total = session.execute(
                select(func.count()).select_from(Upload).where(Upload.account_id == account_id)
            ).scalar_one()
            if total <= batch_size:
                return drained

            batch = session.execute(
                select(Upload.id, Upload.storage_path)
                .where(Upload.account_id == account_id)
                .order_by(Upload.created_at, Upload.id)
                .limit(min(batch_size, total - batch_size))
            ).all()
            enqueue(session, STORAGE, [path for _, path in batch if path], error="drained before purge")
            session.execute(delete(Upload).where(Upload.id.in_([upload_id for upload_id, _ in batch])))
            drained += len(batch)

        logger.info(
            "Drained upload batch ahead of purge",
            extra={"event": "purge_batch_drained", "account_id": account_id, "status": drained},
        )


def purge_account(
    account_id: str,
    origin_address: str = "internal",
    now: Optional[datetime] = None,
    ledger: Optional[EventLedger] = None,
) -> PurgeResult:
    """Delete every first-party row for ``account_id`` in one transaction.

    Returns the storage paths the caller must remove once the transaction has
    committed. Any database failure rolls the whole purge back and surfaces as
    ``PurgeFailed``.
    """
    ledger = ledger or EventLedger()
    current = now or datetime.now(timezone.utc)
    result = PurgeResult()

    try:
        drained = _drain_uploads(account_id, settings.purge_batch_size)
        with get_db() as session:
            profile = _lock_profile(session, account_id)
            result.artifact_refs = _collect_artifacts(session, account_id)
            result.deleted_counts["uploads"] = _delete_uploads(session, account_id) + drained
            result.deleted_counts["usage_counters"] = _delete_usage_counters(session, account_id)
            result.deleted_counts["subscription_events"] = _delete_subscription_events(session, account_id)
            result.deleted_counts["subscriptions"] = _delete_subscriptions(session, account_id)
            result.deleted_counts["auth_events"] = _delete_auth_events(session, account_id, profile.email)
            result.deleted_counts["profiles"] = _delete_profile(session, account_id)
            # The tombstone is written after the account's events are gone and
            # carries no account key, so it outlives the purge.
            ledger.append(
                AuthEventRecord(
                    event_type=AuthEventType.ACCOUNT_DELETED,
                    origin_address=origin_address,
                    metadata={"deleted_account_id": account_id, "deleted_counts": dict(result.deleted_counts)},
                    created_at=current,
                ),
                session=session,
            )
    except SQLAlchemyError as exc:
        PURGES_TOTAL.labels(outcome="failed").inc()
        logger.error(
            "Account purge rolled back",
            exc_info=True,
            extra={"event": "purge_failed", "account_id": account_id},
        )
        raise PurgeFailed("Account deletion failed; no data was removed.") from exc

    PURGES_TOTAL.labels(outcome="committed").inc()
    logger.info(
        "Account purged",
        extra={"event": "account_deleted", "account_id": account_id, "status": result.deleted_counts},
    )
    return result


class AccountDeletionService:
    """Purge first, then clean up what lives outside the database."""

    def __init__(
        self,
        storage: ObjectStorage,
        identity: IdentityVerifier,
        ledger: Optional[EventLedger] = None,
    ) -> None:
        self.storage = storage
        self.identity = identity
        self.ledger = ledger or EventLedger()

    def _queue(self, kind: str, targets: list[str], error: str) -> None:
        try:
            with get_db() as session:
                enqueue(session, kind, targets, error=error)
        except SQLAlchemyError:
            logger.error(
                "Could not queue cleanup work",
                exc_info=True,
                extra={"event": "cleanup_enqueue_failed", "reason": kind, "status": targets},
            )

    async def _remove_artifacts(self, account_id: str, refs: list[str]) -> None:
        if not refs:
            return
        results = await self.storage.remove_objects(refs)
        failed = [ref for ref in refs if not results.get(ref)]
        if not failed:
            return
        ARTIFACT_CLEANUP_FAILURES_TOTAL.inc(len(failed))
        logger.warning(
            "Artifact cleanup incomplete; queued for reconciliation",
            extra={"event": "artifact_cleanup_failed", "account_id": account_id, "status": len(failed)},
        )
        self._queue(STORAGE, failed, "storage removal failed after purge")

    async def delete_account(
        self,
        account_id: str,
        origin_address: str = "internal",
        now: Optional[datetime] = None,
    ) -> PurgeResult:
        result = purge_account(account_id, origin_address=origin_address, now=now, ledger=self.ledger)

        await self._remove_artifacts(account_id, result.artifact_refs)

        try:
            await self.identity.remove_account(account_id)
        except IdentityServiceError as exc:
            self._queue(IDENTITY, [account_id], str(exc))
            logger.error(
                "Identity removal failed after purge",
                exc_info=True,
                extra={"event": "identity_removal_failed", "account_id": account_id},
            )
            raise IdentityRemovalFailed(
                "Account data was deleted but sign-in removal is pending. Support has been notified."
            ) from exc

        return result
