from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import get_db
from .errors import DuplicateExternalEvent
from .metrics import EXTERNAL_EVENTS_TOTAL
from .models import ExternalEventRecord, utcnow

logger = logging.getLogger("accountguard.idempotency")

T = TypeVar("T")


def _claim(session: Session, external_id: str) -> None:
    session.add(ExternalEventRecord(external_id=external_id, processed_at=utcnow()))
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateExternalEvent(external_id) from exc


def apply_once(external_id: str, effect: Callable[[Session], Optional[T]]) -> bool:
    """Run ``effect`` exactly once per ``external_id``.

    The claim row and the effect share a transaction: if the effect raises,
    the claim rolls back too and a redelivery will run it again. Returns
    ``False`` when the id was already claimed.
    """
    if not external_id:
        raise ValueError("external_id is required")

    try:
        with get_db() as session:
            _claim(session, external_id)
            effect(session)
    except DuplicateExternalEvent:
        EXTERNAL_EVENTS_TOTAL.labels(outcome="duplicate").inc()
        logger.info(
            "External event already applied",
            extra={"event": "external_event_duplicate", "external_id": external_id},
        )
        return False
    except IntegrityError as exc:
        # A concurrent claim can also surface at commit time.
        if not _already_claimed(external_id):
            raise
        EXTERNAL_EVENTS_TOTAL.labels(outcome="duplicate").inc()
        logger.info(
            "External event claimed concurrently",
            extra={"event": "external_event_duplicate", "external_id": external_id, "reason": str(exc.orig)},
        )
        return False

    EXTERNAL_EVENTS_TOTAL.labels(outcome="applied").inc()
    logger.info(
        "External event applied",
        extra={"event": "external_event_applied", "external_id": external_id},
    )
    return True


def _already_claimed(external_id: str) -> bool:
    with get_db() as session:
        return session.get(ExternalEventRecord, external_id) is not None


apply_external_event = apply_once
