from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SigninRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class SigninResponse(BaseModel):
    account_id: str
    email: str
    access_token: str
    token_type: str = "bearer"


class LockStatusResponse(BaseModel):
    scope: Literal["account", "origin"]
    identifier: str
    state: Literal["unlocked", "locked"]
    retry_after: Optional[int] = None


class ConsumeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    storage_path: str = Field(min_length=1, max_length=1024)
    file_size: int = Field(default=0, ge=0)


class ConsumeResponse(BaseModel):
    upload_id: str
    period: str


class UsageResponse(BaseModel):
    allowed: bool
    current_count: int
    limit: Optional[int] = None
    plan: str
    period: str
    reset_at: str


class DeleteAccountResponse(BaseModel):
    deleted: bool = True
    deleted_counts: dict[str, int]


class WebhookResponse(BaseModel):
    received: bool = True
    applied: bool
