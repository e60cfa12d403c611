from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from starlette.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .admission import AdmissionController
from .billing import apply_billing_event, verify_signature
from .config import settings
from .db import check_db_connection, get_db, init_db
from .errors import AccountGuardError
from .idempotency import apply_external_event
from .ledger import EventLedger
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, REQUESTS_TOTAL, generate_latest
from .policy import Scope
from .purge import AccountDeletionService
from .quota import check_quota, current_period, record_upload
from .rate_limit import build_counter_service
from .schemas import (
    ConsumeRequest,
    ConsumeResponse,
    DeleteAccountResponse,
    LockStatusResponse,
    SigninRequest,
    SigninResponse,
    UsageResponse,
    WebhookResponse,
)
from .security import AuthContext, auth_context_from_header, create_access_token, require_recent_signin
from .services.identity_service import HttpIdentityProvider, IdentityServiceError, IdentityVerifier
from .services.storage_service import HttpObjectStorage, ObjectStorage

configure_logging()
logger = logging.getLogger("accountguard.app")

app = FastAPI(title="AccountGuard API", version="1.0.0")
api_router = APIRouter(prefix="/api")

ledger = EventLedger()
counter_service = build_counter_service()
identity_provider = HttpIdentityProvider()
object_storage = HttpObjectStorage()


@app.on_event("startup")
async def startup_event() -> None:
    check_db_connection()
    init_db()
    logger.info(
        "Backend startup complete",
        extra={
            "event": "startup",
            "db_backend": "sqlite" if settings.is_sqlite else "postgres",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Forwarded headers are honoured only from trusted proxies; the origin scope
# keys on the resulting peer address.
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.forwarded_allow_ips)


def _client_ip_from_request(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    response = await call_next(request)
    REQUESTS_TOTAL.labels(method=request.method, path=request.url.path, status=str(response.status_code)).inc()
    return response


@app.exception_handler(AccountGuardError)
async def account_guard_error_handler(request: Request, exc: AccountGuardError) -> JSONResponse:
    headers = {}
    if exc.retry_after_seconds:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    logger.info(
        "Request refused",
        extra={
            "event": "request_refused",
            "reason": exc.code,
            "path": request.url.path,
            "status": exc.status_code,
            "ip": _client_ip_from_request(request),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "retry_after": exc.retry_after_seconds},
        headers=headers,
    )


def get_identity() -> IdentityVerifier:
    return identity_provider


def get_storage() -> ObjectStorage:
    return object_storage


def get_admission(identity: IdentityVerifier = Depends(get_identity)) -> AdmissionController:
    return AdmissionController(ledger=ledger, counter=counter_service, identity=identity)


def _auth_user_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    return auth_context_from_header(authorization)


@api_router.get("/")
async def root() -> dict[str, str]:
    return {"message": "AccountGuard API"}


@api_router.post("/auth/signin", response_model=SigninResponse)
async def signin(
    payload: SigninRequest,
    request: Request,
    admission: AdmissionController = Depends(get_admission),
) -> SigninResponse:
    try:
        account = await admission.authenticate(
            email=payload.email,
            password=payload.password,
            origin_address=_client_ip_from_request(request),
            user_agent=request.headers.get("user-agent"),
        )
    except IdentityServiceError as exc:
        logger.error("Identity provider unavailable", exc_info=True, extra={"event": "identity_unavailable"})
        raise HTTPException(status_code=503, detail="Authentication service unavailable") from exc

    return SigninResponse(
        account_id=account.account_id,
        email=account.email,
        access_token=create_access_token(account.account_id, account.email),
    )


@api_router.get("/auth/status", response_model=LockStatusResponse)
async def lock_status(
    identifier: str = Query(..., min_length=1, max_length=320),
    scope: Scope = Query(default=Scope.ACCOUNT),
    admission: AdmissionController = Depends(get_admission),
) -> LockStatusResponse:
    decision = admission.lockout.evaluate(scope, identifier)
    return LockStatusResponse(
        scope=decision.scope.value,
        identifier=decision.identifier,
        state=decision.state.value,
        retry_after=decision.retry_after_seconds or None,
    )


@api_router.delete("/auth/account", response_model=DeleteAccountResponse)
async def delete_account(
    request: Request,
    auth: AuthContext = Depends(_auth_user_from_header),
    identity: IdentityVerifier = Depends(get_identity),
    storage: ObjectStorage = Depends(get_storage),
) -> DeleteAccountResponse:
    require_recent_signin(auth, settings.delete_reauth_seconds)
    logger.info(
        "Account deletion requested",
        extra={"event": "account_delete_requested", "account_id": auth.account_id, "token_id": auth.token_id},
    )
    service = AccountDeletionService(storage=storage, identity=identity, ledger=ledger)
    result = await service.delete_account(auth.account_id, origin_address=_client_ip_from_request(request))
    return DeleteAccountResponse(deleted_counts=result.deleted_counts)


@api_router.get("/usage", response_model=UsageResponse)
async def usage(auth: AuthContext = Depends(_auth_user_from_header)) -> UsageResponse:
    decision = check_quota(auth.account_id, current_period())
    return UsageResponse(
        allowed=decision.allowed,
        current_count=decision.current_count,
        limit=decision.limit,
        plan=decision.plan,
        period=decision.period,
        reset_at=decision.reset_at.isoformat(),
    )


@api_router.post("/usage/consume", response_model=ConsumeResponse)
async def consume(
    payload: ConsumeRequest,
    auth: AuthContext = Depends(_auth_user_from_header),
) -> ConsumeResponse:
    now = datetime.now(timezone.utc)
    upload_id = record_upload(auth.account_id, payload.storage_path, payload.file_size, now=now)
    return ConsumeResponse(upload_id=upload_id, period=current_period(now))


@api_router.post("/billing/webhook", response_model=WebhookResponse)
async def billing_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="Billing-Signature"),
) -> WebhookResponse:
    body = await request.body()
    verify_signature(
        body,
        signature,
        settings.billing_webhook_secret,
        tolerance_seconds=settings.billing_webhook_tolerance_seconds,
    )

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    event_id = event.get("id") if isinstance(event, dict) else None
    if not event_id:
        raise HTTPException(status_code=400, detail="Event id is required")

    try:
        applied = apply_external_event(event_id, lambda session: apply_billing_event(session, event))
    except ValueError as exc:
        logger.warning(
            "Billing event rejected",
            extra={"event": "billing_event_rejected", "external_id": event_id, "reason": str(exc)},
        )
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return WebhookResponse(applied=applied)


@api_router.get("/health")
async def api_healthcheck() -> dict[str, str]:
    with get_db() as session:
        session.execute(text("SELECT 1"))
    return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}


@app.get("/health")
async def healthcheck() -> dict[str, str]:
    with get_db() as session:
        session.execute(text("SELECT 1"))
    return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}


@app.get("/metrics")
async def metrics() -> Response:
    if not settings.enable_prometheus_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(api_router)
