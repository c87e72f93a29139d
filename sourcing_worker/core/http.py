from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class FetchError(Exception):
    """Raised when a source request fails after all attempts."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class InvalidResponseError(FetchError):
    """Raised when a 2xx response body cannot be decoded."""


class RateLimitedFetcher:
    """GET helper shared by every external source.

    Enforces a minimum interval between requests, retries transport errors and
    non-2xx answers with a linear backoff, and honours ``Retry-After`` on 429.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        min_interval_seconds: float = 0.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        timeout_seconds: float = 30.0,
        user_agent: str = "opportunity-sourcing/1.0",
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._sleep = sleep
        self._last_request_at: float | None = None
        self._throttle_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_text(self, url: str, *, params: dict[str, Any] | None = None) -> str:
        response = await self.get(url, params=params)
        return response.text

    async def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        response = await self.get(url, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidResponseError("response is not valid JSON", url=url, status_code=response.status_code) from exc

    async def get_bytes(self, url: str, *, params: dict[str, Any] | None = None) -> bytes:
        response = await self.get(url, params=params)
        return response.content

    async def get(self, url: str, *, params: dict[str, Any] | None = None) -> httpx.Response:
        client = self._get_client()
        last_error: FetchError | None = None

        for attempt in range(1, self.max_retries + 1):
            await self._throttle()
            try:
                response = await client.get(url, params=params, headers={"User-Agent": self.user_agent})
            except httpx.HTTPError as exc:
                last_error = FetchError(f"request failed: {exc}", url=url)
                last_error.__cause__ = exc
            else:
                if response.status_code == 429:
                    wait_seconds = self._retry_after_seconds(response, attempt=attempt)
                    logger.warning(
                        "rate limited url=%s attempt=%s/%s wait_seconds=%.1f",
                        url,
                        attempt,
                        self.max_retries,
                        wait_seconds,
                    )
                    last_error = FetchError("rate limited", url=url, status_code=429)
                    if attempt < self.max_retries:
                        await self._sleep(wait_seconds)
                    continue
                if 200 <= response.status_code < 300:
                    return response
                last_error = FetchError(
                    f"source returned status {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                )
                # Client errors other than 429 will not change on retry.
                if 400 <= response.status_code < 500:
                    raise last_error

            if attempt < self.max_retries:
                logger.warning(
                    "fetch attempt failed url=%s attempt=%s/%s error=%s",
                    url,
                    attempt,
                    self.max_retries,
                    last_error,
                )
                await self._sleep(self.retry_delay_seconds * attempt)

        assert last_error is not None
        raise last_error

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True)
        return self._client

    async def _throttle(self) -> None:
        if self.min_interval_seconds <= 0:
            return
        # Held across the wait: the fetcher is shared by consumers running concurrently.
        async with self._throttle_lock:
            if self._last_request_at is not None:
                elapsed = time.monotonic() - self._last_request_at
                if elapsed < self.min_interval_seconds:
                    await self._sleep(self.min_interval_seconds - elapsed)
            self._last_request_at = time.monotonic()

    def _retry_after_seconds(self, response: httpx.Response, *, attempt: int) -> float:
        raw = response.headers.get("retry-after")
        if raw:
            try:
                return max(0.0, float(raw))
            except ValueError:
                pass
        return self.retry_delay_seconds * attempt
