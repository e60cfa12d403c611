from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
ADMISSION_DENIALS_TOTAL = Counter(
    "admission_denials_total",
    "Authentication attempts denied before credential verification",
    ["scope", "mechanism"],
)
LOCKOUTS_TOTAL = Counter("lockouts_total", "Lockout transitions written to the ledger", ["scope"])
QUOTA_DENIALS_TOTAL = Counter("quota_denials_total", "Quota admissions refused", ["plan"])
PURGES_TOTAL = Counter("purges_total", "Account purge transactions", ["outcome"])
ARTIFACT_CLEANUP_FAILURES_TOTAL = Counter(
    "artifact_cleanup_failures_total",
    "Storage artifacts left for the reconciliation sweep",
)
EXTERNAL_EVENTS_TOTAL = Counter(
    "external_events_total",
    "Externally delivered lifecycle events",
    ["outcome"],
)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "ADMISSION_DENIALS_TOTAL",
    "LOCKOUTS_TOTAL",
    "QUOTA_DENIALS_TOTAL",
    "PURGES_TOTAL",
    "ARTIFACT_CLEANUP_FAILURES_TOTAL",
    "EXTERNAL_EVENTS_TOTAL",
    "generate_latest",
]
