from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .ledger import AuthEventRecord, AuthEventType, EventLedger
from .metrics import LOCKOUTS_TOTAL
from .policy import AdmissionPolicy, Scope, normalize_identifier

logger = logging.getLogger("accountguard.lockout")

_LOCK_EVENT = {
    Scope.ACCOUNT: AuthEventType.ACCOUNT_LOCKED,
    Scope.ORIGIN: AuthEventType.IP_BLOCKED,
}


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutDecision:
    scope: Scope
    identifier: str
    state: LockState
    failure_count: int
    threshold: int
    evaluated_at: datetime
    locked_until: Optional[datetime] = None
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.state is LockState.UNLOCKED

    @property
    def retry_after_seconds(self) -> int:
        if self.locked_until is None:
            return 0
        return max(1, int((self.locked_until - self.evaluated_at).total_seconds()))


class LockoutStateMachine:
    """Derives lock state from login_failure counts in the trailing window.

    Nothing is stored besides the ledger: a lock expires when the failures
    that caused it age out of the window.
    """

    def __init__(self, ledger: EventLedger, policy: AdmissionPolicy) -> None:
        self.ledger = ledger
        self.policy = policy

    def evaluate(self, scope: Scope, identifier: str, now: Optional[datetime] = None) -> LockoutDecision:
        scope = Scope(scope)
        current = now or datetime.now(timezone.utc)
        scope_policy = self.policy.for_scope(scope)
        window = timedelta(seconds=scope_policy.lock_window_seconds)

        try:
            failures = self.ledger.count_since(
                scope,
                identifier,
                scope_policy.lock_window_seconds,
                now=current,
            )
        except SQLAlchemyError:
            logger.error(
                "Lockout evaluation failed; denying",
                exc_info=True,
                extra={"event": "lockout_fail_closed", "scope": scope.value},
            )
            return LockoutDecision(
                scope=scope,
                identifier=identifier,
                state=LockState.LOCKED,
                failure_count=-1,
                threshold=scope_policy.lock_threshold,
                evaluated_at=current,
                locked_until=current + window,
                degraded=True,
            )

        if failures < scope_policy.lock_threshold:
            return LockoutDecision(
                scope=scope,
                identifier=identifier,
                state=LockState.UNLOCKED,
                failure_count=failures,
                threshold=scope_policy.lock_threshold,
                evaluated_at=current,
            )

        return LockoutDecision(
            scope=scope,
            identifier=identifier,
            state=LockState.LOCKED,
            failure_count=failures,
            threshold=scope_policy.lock_threshold,
            evaluated_at=current,
            locked_until=current + window,
        )

    def ensure_lock_recorded(
        self,
        decision: LockoutDecision,
        origin_address: str,
        user_agent: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> bool:
        """Append the lock event for ``decision`` unless this lock is already in the ledger."""
        if decision.allowed or decision.degraded:
            return False

        event_type = _LOCK_EVENT[decision.scope]
        window = timedelta(seconds=self.policy.for_scope(decision.scope).lock_window_seconds)
        already = self.ledger.latest_since(
            decision.scope,
            decision.identifier,
            event_type,
            since=decision.evaluated_at - window,
        )
        if already is not None:
            return False

        locked_until = decision.locked_until.isoformat() if decision.locked_until else None
        if decision.scope is Scope.ACCOUNT:
            record = AuthEventRecord(
                event_type=event_type,
                origin_address=origin_address,
                email=normalize_identifier(Scope.ACCOUNT, decision.identifier),
                account_id=account_id,
                user_agent=user_agent,
                metadata={"failed_attempts": decision.failure_count, "locked_until": locked_until},
                created_at=decision.evaluated_at,
            )
        else:
            record = AuthEventRecord(
                event_type=event_type,
                origin_address=decision.identifier,
                user_agent=user_agent,
                metadata={"failed_attempts": decision.failure_count, "blocked_until": locked_until},
                created_at=decision.evaluated_at,
            )

        self.ledger.append(record)
        LOCKOUTS_TOTAL.labels(scope=decision.scope.value).inc()
        logger.warning(
            "Lockout threshold reached",
            extra={
                "event": event_type.value,
                "scope": decision.scope.value,
                "identifier": decision.identifier,
                "ip": origin_address,
            },
        )
        return True
