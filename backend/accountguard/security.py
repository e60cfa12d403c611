from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from fastapi import Header, HTTPException
import jwt

from .config import settings

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    email: str
    token_id: str
    issued_at: datetime

    def signed_in_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return current - self.issued_at <= timedelta(seconds=seconds)


def create_access_token(account_id: str, email: str, now: Optional[datetime] = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": account_id,
        "email": email,
        "typ": ACCESS_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.jwt_exp_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthContext:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "iat", "exp", "jti"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise HTTPException(status_code=401, detail="Not an access token")

    account_id = payload.get("sub")
    email = payload.get("email")
    if not account_id or not email:
        raise HTTPException(status_code=401, detail="Malformed token payload")

    return AuthContext(
        account_id=account_id,
        email=email,
        token_id=payload["jti"],
        issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
    )


def get_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return parts[1].strip()


def auth_context_from_header(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    token = get_bearer_token(authorization)
    return decode_token(token)


def require_recent_signin(auth: AuthContext, max_age_seconds: int) -> AuthContext:
    """Irreversible actions need a token minted by a fresh sign-in."""
    if not auth.signed_in_within(max_age_seconds):
        raise HTTPException(status_code=401, detail="Recent sign-in required")
    return auth
