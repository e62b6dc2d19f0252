"""
Async HTTP client wrapper for upstream JSON APIs (match source, chat platform).
Includes retry logic, timeout management, and metrics collection.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_LATENCY, SOURCE_REQUESTS

logger = get_logger(__name__)

_MAX_RETRY_AFTER_S = 10.0


class JsonHTTPClient:
    """
    Async HTTP client for a single upstream.
    Retries timeouts, 429 and 5xx responses with exponential backoff;
    other 4xx responses are raised immediately as ``httpx.HTTPStatusError``.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        retry_base_delay_s: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._name = name
        self._base_url = base_url.rstrip("/")
        self._default_headers = headers or {}
        self._timeout = timeout_s
        self._max_retries = max(1, max_retries)
        self._retry_base_delay = retry_base_delay_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def started(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        return self._retry_base_delay * (2 ** (attempt - 1))

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Perform a request with retry, metrics, and structured logging.

        Returns:
            httpx.Response with a 2xx status.

        Raises:
            httpx.HTTPStatusError: On non-retryable HTTP errors, or the last
                429/5xx once retries are exhausted.
            httpx.TransportError: If all retries time out or fail to connect.
        """
        if not self._client:
            raise RuntimeError(f"JsonHTTPClient '{self._name}' not started. Call start() first.")

        last_exc: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            status = "unknown"
            delay: Optional[float] = None

            try:
                resp = await self._client.request(
                    method, path, params=params, json=json, headers=headers
                )
                status = str(resp.status_code)

                if resp.status_code == 429:
                    logger.warning("upstream_rate_limited", upstream=self._name, path=path, attempt=attempt)
                    try:
                        delay = min(float(resp.headers.get("Retry-After", "2")), _MAX_RETRY_AFTER_S)
                    except ValueError:
                        delay = 2.0
                elif resp.status_code >= 500:
                    logger.warning(
                        "upstream_server_error",
                        upstream=self._name,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                    delay = self._backoff(attempt)

                if delay is None or attempt >= self._max_retries:
                    resp.raise_for_status()
                    logger.debug(
                        "upstream_request_success",
                        upstream=self._name,
                        method=method,
                        path=path,
                        status=resp.status_code,
                        latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    )
                    return resp

            except httpx.HTTPStatusError:
                raise

            except httpx.TransportError as exc:
                status = "timeout" if isinstance(exc, httpx.TimeoutException) else "transport_error"
                last_exc = exc
                logger.warning(
                    "upstream_transport_error",
                    upstream=self._name,
                    path=path,
                    error=type(exc).__name__,
                    attempt=attempt,
                )
                delay = self._backoff(attempt)

            finally:
                SOURCE_REQUESTS.labels(upstream=self._name, status=status).inc()
                SOURCE_LATENCY.labels(upstream=self._name).observe(time.perf_counter() - start_time)

            if attempt < self._max_retries and delay is not None:
                await asyncio.sleep(delay)

        if last_exc:
            raise last_exc
        raise RuntimeError(f"Request to '{self._name}' failed after {self._max_retries} attempts")

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self.request("GET", path, params=params)
        return resp.json()
