from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import aiohttp

from ..config import settings

logger = logging.getLogger("accountguard.identity")


class IdentityServiceError(RuntimeError):
    """The identity provider could not be reached or refused the call."""


class IdentityVerifier(Protocol):
    async def verify_credentials(self, email: str, password: str) -> Optional[str]:
        ...

    async def remove_account(self, account_id: str) -> None:
        ...


class HttpIdentityProvider:
    """Password grant and admin deletion against a GoTrue-style auth API."""

    def __init__(
        self,
        base_url: str = "",
        service_key: str = "",
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._base_url = (base_url or settings.identity_url).rstrip("/")
        self._service_key = service_key or settings.identity_service_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.integration_timeout)

    def _headers(self) -> dict[str, str]:
        if not self._service_key:
            return {}
        return {"apikey": self._service_key, "Authorization": f"Bearer {self._service_key}"}

    def _require_config(self) -> None:
        if not self._base_url:
            raise IdentityServiceError("IDENTITY_URL is not configured")

    async def verify_credentials(self, email: str, password: str) -> Optional[str]:
        self._require_config()
        url = f"{self._base_url}/token?grant_type=password"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    url,
                    json={"email": email, "password": password},
                    headers=self._headers(),
                ) as response:
                    if response.status in {400, 401, 403, 404, 422}:
                        return None
                    if response.status >= 400:
                        raise IdentityServiceError(f"identity provider returned {response.status}")
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise IdentityServiceError("identity provider timed out") from exc
        except aiohttp.ClientError as exc:
            raise IdentityServiceError("identity provider request failed") from exc

        user = data.get("user") if isinstance(data, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            return None
        # Unverified addresses are treated like bad credentials.
        if not user.get("email_confirmed_at"):
            return None
        return str(user["id"])

    async def remove_account(self, account_id: str) -> None:
        self._require_config()
        url = f"{self._base_url}/admin/users/{account_id}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.delete(url, headers=self._headers()) as response:
                    # 404: already removed by an earlier attempt.
                    if response.status >= 400 and response.status != 404:
                        body = await response.text()
                        raise IdentityServiceError(
                            f"identity provider returned {response.status}: {body[:200]}"
                        )
        except asyncio.TimeoutError as exc:
            raise IdentityServiceError("identity provider timed out") from exc
        except aiohttp.ClientError as exc:
            raise IdentityServiceError("identity provider request failed") from exc

        logger.info(
            "Identity removed",
            extra={"event": "identity_removed", "account_id": account_id},
        )
