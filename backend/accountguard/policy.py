from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .config import Settings, settings


class Scope(str, Enum):
    ACCOUNT = "account"
    ORIGIN = "origin"


@dataclass(frozen=True)
class ScopePolicy:
    """Limits for one scope, shared by the throttle and the lockout machine."""

    scope: Scope
    lock_threshold: int
    lock_window_seconds: int
    throttle_capacity: int
    throttle_window_seconds: int


@dataclass(frozen=True)
class AdmissionPolicy:
    account: ScopePolicy
    origin: ScopePolicy
    throttle_fail_open: bool = False

    def for_scope(self, scope: Scope) -> ScopePolicy:
        return self.account if Scope(scope) is Scope.ACCOUNT else self.origin

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "AdmissionPolicy":
        return cls(
            account=ScopePolicy(
                scope=Scope.ACCOUNT,
                lock_threshold=cfg.account_lock_threshold,
                lock_window_seconds=cfg.lockout_window_seconds,
                throttle_capacity=cfg.account_throttle_capacity,
                throttle_window_seconds=cfg.throttle_window_seconds,
            ),
            origin=ScopePolicy(
                scope=Scope.ORIGIN,
                lock_threshold=cfg.origin_lock_threshold,
                lock_window_seconds=cfg.lockout_window_seconds,
                throttle_capacity=cfg.origin_throttle_capacity,
                throttle_window_seconds=cfg.throttle_window_seconds,
            ),
            throttle_fail_open=cfg.throttle_fail_open,
        )


def normalize_identifier(scope: Scope, identifier: str) -> str:
    value = identifier.strip()
    if Scope(scope) is Scope.ACCOUNT:
        return value.lower()
    return value
