from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import httpx

from backend.app.core.log import get_logger
from backend.app.core.settings import settings

logger = get_logger(__name__)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class FetchError(Exception):
    """Base exception for page, feed and image fetch failures."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FetchNotFoundError(FetchError):
    """Raised on a 404/410, which ends pagination past the first page."""


class FetchRetryableError(FetchError):
    """Raised on timeouts, connection errors and retryable HTTP statuses."""


@dataclass
class FetchResult:
    url: str
    status_code: int
    content: bytes
    headers: Dict[str, str]

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding, errors="replace")

    @property
    def encoding(self) -> str:
        content_type = self.headers.get("content-type", "")
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                return part.split("=", 1)[1].strip() or "utf-8"
        return "utf-8"


class AsyncTransport(Protocol):
    async def get(self, url: str, headers: Dict[str, str], timeout: float) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """httpx-based transport with connection pooling."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(timeout=None, follow_redirects=True, transport=transport)

    async def get(self, url: str, headers: Dict[str, str], timeout: float) -> httpx.Response:
        return await self._client.get(url, headers=headers, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()


class PageFetcher:
    """Single-attempt async GET with a bounded timeout and typed failures.

    Listing and detail pages are fetched once; callers that need retries
    (image downloads) wrap `fetch` in a RetryPolicy.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        transport: Optional[AsyncTransport] = None,
    ):
        self.timeout = timeout or settings.http_timeout
        self._transport = transport or HttpxTransport()
        self._owns_transport = transport is None
        self._headers = {
            "User-Agent": user_agent or settings.user_agent,
            "Accept-Language": "fr-CA,fr;q=0.9,en;q=0.8",
        }

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch(self, url: str) -> FetchResult:
        try:
            response = await self._transport.get(url, headers=self._headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise FetchRetryableError(f"Timed out after {self.timeout}s fetching {url}", url=url) from exc
        except httpx.RequestError as exc:
            raise FetchRetryableError(f"Request failed for {url}: {exc}", url=url) from exc

        status = response.status_code
        if status in (404, 410):
            raise FetchNotFoundError(f"{url} returned {status}", url=url, status_code=status)
        if status in RETRYABLE_STATUS:
            raise FetchRetryableError(f"{url} returned {status}", url=url, status_code=status)
        if status >= 400:
            raise FetchError(f"{url} returned {status}", url=url, status_code=status)

        return FetchResult(
            url=str(response.url) if response.url else url,
            status_code=status,
            content=response.content,
            headers={k.lower(): v for k, v in response.headers.items()},
        )

    async def fetch_text(self, url: str) -> str:
        result = await self.fetch(url)
        return result.text
