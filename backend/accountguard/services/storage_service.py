from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

import aiohttp

from ..config import settings

logger = logging.getLogger("accountguard.storage")

_REMOVE_CHUNK = 100


class ObjectStorage(Protocol):
    async def remove_objects(self, refs: Sequence[str]) -> dict[str, bool]:
        ...


class HttpObjectStorage:
    """Bulk object removal against a storage REST API."""

    def __init__(
        self,
        base_url: str = "",
        service_key: str = "",
        bucket: str = "",
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._base_url = (base_url or settings.storage_url).rstrip("/")
        self._service_key = service_key or settings.storage_service_key
        self._bucket = bucket or settings.storage_bucket
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.integration_timeout)

    async def _remove_chunk(self, session: aiohttp.ClientSession, chunk: list[str]) -> bool:
        url = f"{self._base_url}/object/{self._bucket}"
        headers = {"Authorization": f"Bearer {self._service_key}"} if self._service_key else {}
        try:
            async with session.delete(url, json={"prefixes": chunk}, headers=headers) as response:
                if response.status >= 400:
                    logger.warning(
                        "Storage removal rejected",
                        extra={"event": "storage_remove_rejected", "status": response.status},
                    )
                    return False
                return True
        except asyncio.TimeoutError:
            logger.warning("Storage removal timed out", extra={"event": "storage_remove_timeout"})
            return False
        except aiohttp.ClientError:
            logger.warning(
                "Storage removal failed",
                exc_info=True,
                extra={"event": "storage_remove_failed"},
            )
            return False

    async def remove_objects(self, refs: Sequence[str]) -> dict[str, bool]:
        results = {ref: False for ref in refs}
        if not refs:
            return results
        if not self._base_url:
            logger.error(
                "STORAGE_URL is not configured; artifacts left in place",
                extra={"event": "storage_not_configured"},
            )
            return results

        pending = list(results)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            for start in range(0, len(pending), _REMOVE_CHUNK):
                chunk = pending[start : start + _REMOVE_CHUNK]
                ok = await self._remove_chunk(session, chunk)
                for ref in chunk:
                    results[ref] = ok
        return results
