"""
HTTP manifest fetcher.

Thin httpx wrapper: one GET per refresh with ETag revalidation, bounded by
the caller's timeout. It returns bytes and headers only; it never parses or
trusts the body.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..core.errors import OperationTimeoutError, RegistryFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    status_code: int
    body: str = ""
    etag: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


class ManifestFetcher:
    """Fetches manifest documents over HTTP."""

    name = "registry"

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def fetch(self, url: str, etag: Optional[str] = None) -> FetchResult:
        headers = {"Accept": "application/json"}
        if etag:
            headers["If-None-Match"] = etag

        try:
            response = await asyncio.wait_for(
                self._get(url, headers),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError("registry fetch", self.timeout_seconds) from e
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("registry fetch", self.timeout_seconds) from e
        except httpx.HTTPError as e:
            raise RegistryFetchError(url, str(e) or type(e).__name__, cause=e) from e

        if response.status_code == 304:
            logger.debug(f"Registry not modified at {url}")
            return FetchResult(status_code=304, etag=etag)

        if response.status_code != 200:
            raise RegistryFetchError(url, f"{response.status_code} {response.reason_phrase}")

        return FetchResult(
            status_code=200,
            body=response.text,
            etag=response.headers.get("ETag"),
        )

    async def _get(self, url: str, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, headers=headers, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(url, headers=headers)
