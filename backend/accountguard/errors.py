from __future__ import annotations

from typing import Optional


class AccountGuardError(Exception):
    """Base class for failures surfaced to the route layer."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds


class ThrottleExceeded(AccountGuardError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    retryable = True

    def __init__(self, scope: str, retry_after_seconds: int) -> None:
        super().__init__("Too many attempts. Please try again later.", retry_after_seconds)
        self.scope = scope


class AccountLocked(AccountGuardError):
    code = "ACCOUNT_LOCKED"
    status_code = 429
    retryable = True

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "Too many failed login attempts. Your account is temporarily locked.",
            retry_after_seconds,
        )


class OriginBlocked(AccountGuardError):
    code = "IP_BLOCKED"
    status_code = 429
    retryable = True

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "Your IP has been temporarily blocked due to too many failed login attempts.",
            retry_after_seconds,
        )


class InvalidCredentials(AccountGuardError):
    code = "INVALID_CREDENTIALS"
    status_code = 401

    def __init__(self) -> None:
        # Same message for unknown account and wrong password.
        super().__init__("Invalid email or password.")


class QuotaExceeded(AccountGuardError):
    code = "QUOTA_EXCEEDED"
    status_code = 403

    def __init__(self, current_count: int, limit: int, period: str) -> None:
        super().__init__(f"Monthly upload limit of {limit} reached for {period}.")
        self.current_count = current_count
        self.limit = limit
        self.period = period


class AccountNotFound(AccountGuardError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, account_id: str) -> None:
        super().__init__("Account not found.")
        self.account_id = account_id


class UploadNotFound(AccountGuardError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, upload_id: str) -> None:
        super().__init__("Upload not found.")
        self.upload_id = upload_id


class PurgeFailed(AccountGuardError):
    """The purge transaction rolled back; nothing was deleted."""

    code = "PURGE_FAILED"
    status_code = 500


class IdentityRemovalFailed(AccountGuardError):
    """Raised after a committed purge when the identity provider refused removal."""

    code = "IDENTITY_REMOVAL_FAILED"
    status_code = 502


class LedgerUnavailable(AccountGuardError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class InvalidWebhookSignature(AccountGuardError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class DuplicateExternalEvent(Exception):
    """Not a failure: the event id is already in the idempotency ledger."""

    def __init__(self, external_id: str) -> None:
        super().__init__(external_id)
        self.external_id = external_id
