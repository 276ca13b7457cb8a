"""Deribit public REST client with rate limiting and retry logic."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import aiohttp

from options_flow_tracker.ingestor.models import BookSummary, Instrument, TickerUpdate

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
DEFAULT_BASE_URL = "https://www.deribit.com/api/v2"
MAX_REQUESTS_PER_SECOND = 20
MAX_TRADES_PER_PAGE = 1000
PARSE_EXCERPT_CHARS = 200

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff to coroutines.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


class DeribitClientError(Exception):
    """Base exception for DeribitClient errors."""


class DeribitNotFoundError(DeribitClientError):
    """Raised when a requested resource does not exist (e.g., 404)."""


class DeribitTransientError(DeribitClientError):
    """Raised for retryable/transient errors (e.g., 429/5xx, network issues)."""


class DeribitParseError(DeribitClientError):
    """Raised when a response body is not the expected JSON shape."""

    def __init__(self, message: str, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class DeribitClient:
    """Async client for the Deribit public HTTP API.

    Only unauthenticated ``public/*`` methods are used. Transport failures
    surface as ``DeribitTransientError`` and malformed bodies as
    ``DeribitParseError``, so backfill pipelines can choose between
    re-enqueueing and skipping.

    Example:
        ```python
        client = DeribitClient()
        rows = await client.get_last_trades_by_instrument_and_time(
            "BTC-27DEC24-50000-C", start_ms, end_ms
        )
        await client.close()
        ```
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        max_requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._rate_limiter = RateLimiter(max_requests_per_second)
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=32, limit_per_host=16)
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds, connect=10)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> DeribitClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _get(self, method: str, params: dict[str, Any]) -> Any:
        """GET ``public/<method>`` and return the JSON ``result`` member."""
        await self._rate_limiter.acquire()
        session = await self._get_session()
        url = f"{self._base_url}/{method}"
        query = {k: _query_value(v) for k, v in params.items()}

        try:
            async with session.get(url, params=query) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, TimeoutError) as e:
            raise DeribitTransientError(f"{method} request failed: {e}") from e

        if status in RETRY_STATUS_CODES:
            raise DeribitTransientError(f"{method} returned HTTP {status}")
        if status == 404:
            raise DeribitNotFoundError(f"{method} not found")

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise DeribitParseError(f"{method} returned invalid JSON", body[:PARSE_EXCERPT_CHARS]) from e

        if not isinstance(payload, dict):
            raise DeribitParseError(f"{method} returned a non-object body", body[:PARSE_EXCERPT_CHARS])
        if "error" in payload:
            raise DeribitClientError(f"{method} error: {payload['error']}")
        if status >= 400:
            raise DeribitClientError(f"{method} returned HTTP {status}")
        if "result" not in payload:
            raise DeribitParseError(f"{method} response has no result", body[:PARSE_EXCERPT_CHARS])
        return payload["result"]

    async def get_last_trades_by_instrument_and_time(
        self,
        instrument: str,
        start_ms: int,
        end_ms: int,
        *,
        count: int = MAX_TRADES_PER_PAGE,
    ) -> list[dict[str, Any]]:
        """Fetch up to ``count`` trades of one instrument in ``[start_ms, end_ms]``.

        Not retried here; the calling pipeline owns the retry policy.

        Raises:
            DeribitTransientError: On network failure or retryable status.
            DeribitParseError: If ``result.trades`` is missing or not a list.
        """
        result = await self._get(
            "public/get_last_trades_by_instrument_and_time",
            {
                "instrument_name": instrument,
                "start_timestamp": int(start_ms),
                "end_timestamp": int(end_ms),
                "include_old": True,
                "count": min(int(count), MAX_TRADES_PER_PAGE),
                "sorting": "asc",
            },
        )
        trades = result.get("trades") if isinstance(result, dict) else None
        if not isinstance(trades, list):
            raise DeribitParseError(
                "trades payload missing",
                json.dumps(result, default=str)[:PARSE_EXCERPT_CHARS],
            )
        return [t for t in trades if isinstance(t, dict)]

    @with_retry(retry_on=(DeribitTransientError,))
    async def get_ticker(self, instrument: str) -> TickerUpdate:
        result = await self._get("public/ticker", {"instrument_name": instrument})
        if not isinstance(result, dict):
            raise DeribitParseError("ticker payload is not an object")
        return TickerUpdate.from_dict(result, instrument=instrument)

    @with_retry(retry_on=(DeribitTransientError,))
    async def get_instruments(self, currency: str = "BTC", kind: str = "option") -> list[Instrument]:
        result = await self._get(
            "public/get_instruments",
            {"currency": currency, "kind": kind, "expired": False},
        )
        if not isinstance(result, list):
            raise DeribitParseError("instruments payload is not a list")
        instruments = []
        for row in result:
            try:
                instruments.append(Instrument.from_dict(row))
            except (KeyError, TypeError) as e:
                logger.debug("Skipping malformed instrument row: %s", e)
        return instruments

    @with_retry(retry_on=(DeribitTransientError,))
    async def get_book_summary_by_currency(
        self, currency: str = "BTC", kind: str = "option"
    ) -> list[BookSummary]:
        result = await self._get(
            "public/get_book_summary_by_currency",
            {"currency": currency, "kind": kind, "expired": False},
        )
        if not isinstance(result, list):
            raise DeribitParseError("book summary payload is not a list")
        rows = []
        for row in result:
            try:
                rows.append(BookSummary.from_dict(row))
            except (KeyError, TypeError) as e:
                logger.debug("Skipping malformed book summary row: %s", e)
        return rows


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
