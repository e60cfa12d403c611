from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, Iterable, Optional
import uuid

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import get_db
from .errors import LedgerUnavailable
from .models import AuthEvent
from .policy import Scope, normalize_identifier

logger = logging.getLogger("accountguard.ledger")


class AuthEventType(str, Enum):
    SIGNUP_SUCCESS = "signup_success"
    SIGNUP_FAILURE = "signup_failure"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_LOCKED = "account_locked"
    IP_BLOCKED = "ip_blocked"
    ACCOUNT_DELETED = "account_deleted"


# Appends of these must not be lost: a dropped failure or lock event would
# hand an attacker extra attempts.
SECURITY_CRITICAL_EVENTS = frozenset(
    {
        AuthEventType.LOGIN_FAILURE,
        AuthEventType.ACCOUNT_LOCKED,
        AuthEventType.IP_BLOCKED,
        AuthEventType.ACCOUNT_DELETED,
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class AuthEventRecord:
    event_type: AuthEventType
    origin_address: str
    account_id: Optional[str] = None
    email: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", AuthEventType(self.event_type))
        if self.email is not None:
            object.__setattr__(self, "email", normalize_identifier(Scope.ACCOUNT, self.email))
        if self.event_type is AuthEventType.LOGIN_FAILURE and not (self.email or self.account_id):
            raise ValueError("login_failure events need an email or an account id")
        if not self.origin_address:
            raise ValueError("origin_address is required")

    @property
    def security_critical(self) -> bool:
        return self.event_type in SECURITY_CRITICAL_EVENTS


class EventLedger:
    """Append-only store of authentication events."""

    def append(
        self,
        event: AuthEventRecord,
        session: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Write ``event`` and return its id.

        With ``session`` the row joins the caller's transaction and any database
        error propagates to the caller. Without it the append commits on its own:
        a failed security-critical append raises ``LedgerUnavailable`` while a
        failed informational append is logged and ``None`` is returned.
        """
        row = AuthEvent(
            id=str(uuid.uuid4()),
            event_type=event.event_type.value,
            account_id=event.account_id,
            email=event.email,
            origin_address=event.origin_address,
            user_agent=event.user_agent,
            event_metadata=dict(event.metadata),
            created_at=event.created_at or now or _utc_now(),
        )

        if session is not None:
            session.add(row)
            session.flush()
            return row.id

        try:
            with get_db() as own_session:
                own_session.add(row)
        except SQLAlchemyError as exc:
            if event.security_critical:
                logger.error(
                    "Security-critical auth event could not be recorded",
                    exc_info=True,
                    extra={
                        "event": "ledger_append_failed",
                        "reason": event.event_type.value,
                        "ip": event.origin_address,
                    },
                )
                raise LedgerUnavailable("Authentication audit store is unavailable.") from exc
            logger.warning(
                "Informational auth event dropped",
                exc_info=True,
                extra={
                    "event": "ledger_append_dropped",
                    "reason": event.event_type.value,
                    "ip": event.origin_address,
                },
            )
            return None
        return row.id

    def _scope_filter(self, scope: Scope, identifier: str):
        key = normalize_identifier(scope, identifier)
        if Scope(scope) is Scope.ACCOUNT:
            return or_(AuthEvent.email == key, AuthEvent.account_id == identifier.strip())
        return AuthEvent.origin_address == key

    def count_since(
        self,
        scope: Scope,
        identifier: str,
        window_seconds: int,
        now: Optional[datetime] = None,
        event_types: Iterable[AuthEventType] = (AuthEventType.LOGIN_FAILURE,),
    ) -> int:
        window_start = (now or _utc_now()) - timedelta(seconds=window_seconds)
        query = (
            select(func.count())
            .select_from(AuthEvent)
            .where(
                AuthEvent.event_type.in_([AuthEventType(item).value for item in event_types]),
                self._scope_filter(scope, identifier),
                AuthEvent.created_at > window_start,
            )
        )
        with get_db() as session:
            return int(session.execute(query).scalar_one())

    def latest_since(
        self,
        scope: Scope,
        identifier: str,
        event_type: AuthEventType,
        since: datetime,
    ) -> Optional[datetime]:
        query = select(func.max(AuthEvent.created_at)).where(
            AuthEvent.event_type == AuthEventType(event_type).value,
            self._scope_filter(scope, identifier),
            AuthEvent.created_at >= since,
        )
        with get_db() as session:
            latest = session.execute(query).scalar_one_or_none()
        if latest is None:
            return None
        if isinstance(latest, str):
            latest = datetime.fromisoformat(latest)
        return _as_utc(latest)

