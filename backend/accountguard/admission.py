from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import AccountLocked, InvalidCredentials, LedgerUnavailable, OriginBlocked, ThrottleExceeded
from .ledger import AuthEventRecord, AuthEventType, EventLedger
from .lockout import LockoutDecision, LockoutStateMachine, LockState
from .metrics import ADMISSION_DENIALS_TOTAL
from .policy import AdmissionPolicy, Scope, normalize_identifier
from .rate_limit import CounterService, DualScopeThrottle
from .services.identity_service import IdentityVerifier

logger = logging.getLogger("accountguard.admission")


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    scope: Scope
    retry_after_seconds: Optional[int] = None
    mechanism: Optional[str] = None


@dataclass(frozen=True)
class AuthenticatedAccount:
    account_id: str
    email: str


class AdmissionController:
    """Decides whether an authentication attempt may reach credential checks."""

    def __init__(
        self,
        ledger: EventLedger,
        counter: CounterService,
        policy: Optional[AdmissionPolicy] = None,
        identity: Optional[IdentityVerifier] = None,
    ) -> None:
        self.policy = policy or AdmissionPolicy.from_settings()
        self.ledger = ledger
        self.lockout = LockoutStateMachine(ledger, self.policy)
        self.throttle = DualScopeThrottle(counter, self.policy)
        self.identity = identity

    def lock_state(self, scope: Scope, identifier: str, now: Optional[datetime] = None) -> LockState:
        return self.lockout.evaluate(scope, identifier, now=now).state

    def check_admission(
        self,
        scope: Scope,
        identifier: str,
        origin_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Lockout first (confirmed failures), then the attempt throttle."""
        scope = Scope(scope)
        current = now or datetime.now(timezone.utc)

        decision = self.lockout.evaluate(scope, identifier, now=current)
        if not decision.allowed:
            mechanism = "lockout_degraded" if decision.degraded else "lockout"
            ADMISSION_DENIALS_TOTAL.labels(scope=scope.value, mechanism=mechanism).inc()
            self._record_lock(decision, origin_address or "unknown", user_agent)
            return AdmissionDecision(
                allowed=False,
                scope=scope,
                retry_after_seconds=decision.retry_after_seconds,
                mechanism="lockout",
            )

        window = self.throttle.check(scope, identifier, now=current.timestamp())
        if not window.allowed:
            logger.info(
                "Attempt throttled",
                extra={"event": "throttled", "scope": scope.value, "identifier": identifier},
            )
            return AdmissionDecision(
                allowed=False,
                scope=scope,
                retry_after_seconds=window.retry_after_seconds(now=current.timestamp()),
                mechanism="throttle",
            )

        return AdmissionDecision(allowed=True, scope=scope)

    def admit(
        self,
        scope: Scope,
        identifier: str,
        origin_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        decision = self.check_admission(scope, identifier, origin_address, user_agent, now)
        if decision.allowed:
            return
        retry_after = decision.retry_after_seconds or 1
        if decision.mechanism == "throttle":
            raise ThrottleExceeded(decision.scope.value, retry_after)
        if decision.scope is Scope.ORIGIN:
            raise OriginBlocked(retry_after)
        raise AccountLocked(retry_after)

    def _record_lock(self, decision: LockoutDecision, origin_address: str, user_agent: Optional[str]) -> None:
        # The denial stands whether or not the lock event could be written.
        try:
            self.lockout.ensure_lock_recorded(decision, origin_address, user_agent=user_agent)
        except (LedgerUnavailable, SQLAlchemyError):
            logger.error(
                "Could not record lockout event",
                exc_info=True,
                extra={"event": "lock_record_failed", "scope": decision.scope.value},
            )

    def record_outcome(self, event: AuthEventRecord, now: Optional[datetime] = None) -> Optional[str]:
        """Append ``event`` and fire lock transitions a failure may have caused."""
        event_id = self.ledger.append(event, now=now)
        if event.event_type is not AuthEventType.LOGIN_FAILURE:
            return event_id

        current = event.created_at or now or datetime.now(timezone.utc)
        account_key = event.email or event.account_id
        for scope, identifier in ((Scope.ACCOUNT, account_key), (Scope.ORIGIN, event.origin_address)):
            decision = self.lockout.evaluate(scope, identifier, now=current)
            if decision.state is LockState.LOCKED:
                self.lockout.ensure_lock_recorded(
                    decision,
                    event.origin_address,
                    user_agent=event.user_agent,
                    account_id=event.account_id if scope is Scope.ACCOUNT else None,
                )
        return event_id

    async def authenticate(
        self,
        email: str,
        password: str,
        origin_address: str,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuthenticatedAccount:
        if self.identity is None:
            raise RuntimeError("AdmissionController.authenticate needs an identity verifier")

        current = now or datetime.now(timezone.utc)
        email_key = normalize_identifier(Scope.ACCOUNT, email)

        # Lock state is checked before the credential so a correct password
        # cannot short-circuit an active lock.
        self.admit(Scope.ORIGIN, origin_address, origin_address, user_agent, now=current)
        self.admit(Scope.ACCOUNT, email_key, origin_address, user_agent, now=current)

        account_id = await self.identity.verify_credentials(email_key, password)
        if account_id is None:
            failure = AuthEventRecord(
                event_type=AuthEventType.LOGIN_FAILURE,
                origin_address=origin_address,
                email=email_key,
                user_agent=user_agent,
                metadata={"reason": "invalid_credentials"},
                created_at=current,
            )
            try:
                self.record_outcome(failure)
            except LedgerUnavailable as exc:
                # An unrecorded failure would not count toward the lock.
                ADMISSION_DENIALS_TOTAL.labels(scope=Scope.ACCOUNT.value, mechanism="ledger_unavailable").inc()
                raise AccountLocked(self.policy.account.lock_window_seconds) from exc
            raise InvalidCredentials()

        self.record_outcome(
            AuthEventRecord(
                event_type=AuthEventType.LOGIN_SUCCESS,
                origin_address=origin_address,
                account_id=account_id,
                email=email_key,
                user_agent=user_agent,
                metadata={"method": "password"},
                created_at=current,
            )
        )
        return AuthenticatedAccount(account_id=account_id, email=email_key)
