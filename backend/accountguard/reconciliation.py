from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .metrics import ARTIFACT_CLEANUP_FAILURES_TOTAL
from .models import CleanupTask, utcnow
from .services.identity_service import IdentityServiceError, IdentityVerifier
from .services.storage_service import ObjectStorage

logger = logging.getLogger("accountguard.reconciliation")

STORAGE = "storage"
IDENTITY = "identity"


def enqueue(session: Session, kind: str, targets: Iterable[str], error: Optional[str] = None) -> int:
    """Queue cleanup work in the caller's transaction."""
    if kind not in (STORAGE, IDENTITY):
        raise ValueError(f"unknown cleanup kind: {kind}")
    queued = 0
    for target in targets:
        session.add(CleanupTask(kind=kind, target=target, status="pending", attempts=0, last_error=error))
        queued += 1
    if queued:
        session.flush()
    return queued


def pending_targets(kind: str, limit: int = 100) -> list[str]:
    with get_db() as session:
        rows = session.execute(
            select(CleanupTask.target)
            .where(CleanupTask.kind == kind, CleanupTask.status == "pending")
            .order_by(CleanupTask.created_at, CleanupTask.id)
            .limit(limit)
        ).scalars()
        return list(rows)


def _mark(task_ids: list[int], ok: bool, error: Optional[str]) -> None:
    if not task_ids:
        return
    with get_db() as session:
        for task in session.execute(select(CleanupTask).where(CleanupTask.id.in_(task_ids))).scalars():
            task.attempts += 1
            task.updated_at = utcnow()
            if ok:
                task.status = "done"
                task.last_error = None
            else:
                task.last_error = error


async def sweep_pending(
    storage: ObjectStorage,
    identity: Optional[IdentityVerifier] = None,
    limit: int = 100,
) -> dict[str, int]:
    """Retry queued cleanup. Tasks that fail again stay pending for the next sweep."""
    with get_db() as session:
        tasks = [
            (task.id, task.kind, task.target)
            for task in session.execute(
                select(CleanupTask)
                .where(CleanupTask.status == "pending")
                .order_by(CleanupTask.created_at, CleanupTask.id)
                .limit(limit)
            ).scalars()
        ]

    summary = {"done": 0, "failed": 0}

    storage_tasks = [(task_id, target) for task_id, kind, target in tasks if kind == STORAGE]
    if storage_tasks:
        results = await storage.remove_objects([target for _, target in storage_tasks])
        removed = [task_id for task_id, target in storage_tasks if results.get(target)]
        failed = [task_id for task_id, target in storage_tasks if not results.get(target)]
        _mark(removed, True, None)
        _mark(failed, False, "storage removal failed")
        summary["done"] += len(removed)
        summary["failed"] += len(failed)
        if failed:
            ARTIFACT_CLEANUP_FAILURES_TOTAL.inc(len(failed))

    for task_id, kind, target in tasks:
        if kind != IDENTITY:
            continue
        if identity is None:
            summary["failed"] += 1
            continue
        try:
            await identity.remove_account(target)
        except IdentityServiceError as exc:
            _mark([task_id], False, str(exc))
            summary["failed"] += 1
            continue
        _mark([task_id], True, None)
        summary["done"] += 1

    logger.info(
        "Reconciliation sweep finished",
        extra={"event": "reconciliation_sweep", "status": f"{summary['done']} done, {summary['failed']} failed"},
    )
    return summary
