"""
Base client for upstream data sources.

Provides: rate limiting, two-tier caching, in-flight request deduplication,
retry with exponential backoff, and structured logging.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiohttp
from pydantic import BaseModel, Field

from pubmed_server.constants import (
    ANONYMOUS_REQUESTS_PER_SECOND,
    API_KEY_REQUESTS_PER_SECOND,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT,
    DEFAULT_TOOL_NAME,
)
from pubmed_server.utils.cache import ResponseCache, fingerprint
from pubmed_server.utils.inflight import InFlightRegistry

logger = logging.getLogger("pubmed_server.data_sources")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Retry behaviour for failed requests."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_factor: float = 2.0
    retryable_status_codes: set[int] = {429, 500, 502, 503, 504}


class RateLimitConfig(BaseModel):
    """Rate limiter settings.

    Left unset, the budget follows the NCBI policy: 3 req/s anonymous,
    10 req/s with an API key.  ``burst`` defaults to one second's budget
    (at least one request).
    """

    requests_per_second: float | None = Field(default=None, gt=0)
    burst: int | None = Field(default=None, ge=1)


class CacheConfig(BaseModel):
    """Response cache settings. Both unset disables caching."""

    directory: Path | None = None
    ttl_seconds: int | None = None


class ClientConfig(BaseModel):
    """Top-level config aggregating contact details, retry, rate limit, and cache."""

    email: str
    api_key: str | None = None
    tool: str = DEFAULT_TOOL_NAME
    retry: RetryConfig = RetryConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    cache: CacheConfig = CacheConfig()
    timeout_seconds: float = DEFAULT_TIMEOUT

    @property
    def requests_per_second(self) -> float:
        if self.rate_limit.requests_per_second is not None:
            return self.rate_limit.requests_per_second
        if self.api_key:
            return API_KEY_REQUESTS_PER_SECOND
        return ANONYMOUS_REQUESTS_PER_SECOND


# ---------------------------------------------------------------------------
# Rate limiter (async token bucket)
# ---------------------------------------------------------------------------


class TokenBucketRateLimiter:
    """
    Async rate limiter with a FIFO wait queue.

    The bucket holds `capacity` tokens.  A spent token returns to the bucket
    exactly one window (``capacity / requests_per_second`` seconds) after it
    was granted, so no window of that length ever sees more than `capacity`
    grants.  Callers await `acquire()` before every upstream request; when
    the bucket is empty they queue up and are released in arrival order by a
    single timer.  No lock is held while a caller waits.
    """

    def __init__(self, requests_per_second: float, capacity: int | None = None):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if capacity is None:
            capacity = max(1, int(requests_per_second))
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = requests_per_second
        self.capacity = int(capacity)
        self.window = self.capacity / self.rate
        self._grants: deque[float] = deque()
        self._waiters: deque[asyncio.Future] = deque()
        self._timer: asyncio.TimerHandle | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> "TokenBucketRateLimiter":
        return cls(config.requests_per_second, capacity=config.rate_limit.burst)

    @property
    def waiting(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    @property
    def tokens(self) -> int:
        self._expire(time.monotonic())
        return self.capacity - len(self._grants)

    def _expire(self, now: float) -> None:
        while self._grants and now - self._grants[0] >= self.window:
            self._grants.popleft()

    def _try_grant(self, now: float) -> bool:
        self._expire(now)
        if len(self._grants) < self.capacity:
            self._grants.append(now)
            return True
        return False

    async def acquire(self) -> None:
        if not self._waiters and self._try_grant(time.monotonic()):
            return

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)
        self._arm_timer(loop)
        await waiter

    def _arm_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._timer is not None:
            return
        now = time.monotonic()
        self._expire(now)
        wait = 0.0
        if len(self._grants) >= self.capacity:
            wait = max(0.0, self._grants[0] + self.window - now)
        logger.debug(
            "Rate limiter: %d waiting, next token in %.2fs", len(self._waiters), wait
        )
        self._timer = loop.call_later(wait, self._release_waiters)

    def _release_waiters(self) -> None:
        self._timer = None
        now = time.monotonic()
        while self._waiters:
            if self._waiters[0].done():  # cancelled while queued
                self._waiters.popleft()
                continue
            if not self._try_grant(now):
                break
            self._waiters.popleft().set_result(None)
        if self._waiters:
            self._arm_timer(asyncio.get_running_loop())


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DataSourceError(Exception):
    """Base exception for data source failures."""

    def __init__(self, source: str, message: str, status_code: int | None = None):
        self.source = source
        self.status_code = status_code
        super().__init__(f"[{source}] {message}")


class InvalidRequestError(DataSourceError):
    """Malformed input or a non-retryable upstream rejection. Never retried."""

    pass


class TransientUpstreamError(DataSourceError):
    """Timeout, 5xx, 429 or network failure that outlived every retry."""

    pass


class ParseError(DataSourceError):
    """An upstream payload (or one record in it) could not be decoded."""

    pass


# ---------------------------------------------------------------------------
# Base client
# ---------------------------------------------------------------------------


class BaseClient(ABC):
    """
    Abstract base for upstream clients.

    Owns one rate limiter, one response cache and one in-flight registry for
    its lifetime.  Each can be injected (e.g. shared between clients, or
    replaced in tests); otherwise it is built from the config.

    Subclasses implement `_source_name` and `_endpoint`, and their own typed
    methods that go through `_cached()` and `call()`.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        rate_limiter: TokenBucketRateLimiter | None = None,
        cache: ResponseCache | None = None,
        inflight: InFlightRegistry | None = None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter.from_config(config)
        self.cache = cache or ResponseCache(
            ttl_seconds=config.cache.ttl_seconds, directory=config.cache.directory
        )
        self.inflight = inflight or InFlightRegistry()
        self._session: aiohttp.ClientSession | None = None

    @property
    @abstractmethod
    def _source_name(self) -> str:
        """Identifier for this data source, e.g. 'pubmed'."""
        ...

    @abstractmethod
    def _endpoint(self, operation: str) -> str:
        """URL for an operation name, e.g. 'search' → esearch.fcgi."""
        ...

    def _common_params(self) -> dict[str, str]:
        """Parameters sent with every request (contact details, credentials)."""
        return {}

    # -- Session management --------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # -- Cache + in-flight pipeline ------------------------------------------

    async def _cached(
        self,
        namespace: str,
        params: dict[str, Any],
        produce: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Return a JSON-serializable value for (namespace, params).

        Order: cache → in-flight registry → ``produce()``.  Only ``produce``
        touches the rate limiter, so cache hits and joined requests consume no
        tokens.  Failures are not cached.
        """
        key = fingerprint(namespace, params)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async def _produce_and_store() -> Any:
            value = await produce()
            self.cache.set(key, value)
            return value

        return await self.inflight.dedupe(key, _produce_and_store)

    # -- Transport: rate limiting + retry ------------------------------------

    def _backoff(self, attempt: int) -> float:
        retry = self.config.retry
        return min(retry.base_delay * (retry.backoff_factor**attempt), retry.max_delay)

    async def call(self, operation: str, params: dict[str, Any]) -> str:
        """
        Perform one upstream GET and return the response body as text.

        Every attempt acquires a rate-limiter token.  Timeouts, connection
        errors, 429 and 5xx are retried with exponential backoff up to
        ``retry.max_attempts`` attempts, then raised as
        TransientUpstreamError.  Any other 4xx raises InvalidRequestError
        immediately.
        """
        source = self._source_name
        url = self._endpoint(operation)
        query = {**params, **self._common_params()}
        retry = self.config.retry

        last_error: DataSourceError | None = None
        start = time.monotonic()

        for attempt in range(retry.max_attempts):
            delay = self._backoff(attempt)
            try:
                await self.rate_limiter.acquire()
                session = await self._get_session()

                logger.info(
                    "Request [%s.%s] attempt=%d url=%s",
                    source,
                    operation,
                    attempt + 1,
                    url,
                )
                resp = await session.get(url, params=query)

                if resp.status in retry.retryable_status_codes:
                    body = await resp.text()
                    logger.warning(
                        "Retryable %d from %s.%s: %s",
                        resp.status,
                        source,
                        operation,
                        body[:200],
                    )
                    last_error = TransientUpstreamError(
                        source, f"HTTP {resp.status}: {body[:200]}", status_code=resp.status
                    )
                    if resp.status == 429:
                        # Respect Retry-After header if present
                        retry_after = resp.headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = min(float(retry_after), retry.max_delay)
                            except ValueError:
                                pass

                elif resp.status >= 400:
                    body = await resp.text()
                    raise InvalidRequestError(
                        source, f"HTTP {resp.status}: {body[:500]}", status_code=resp.status
                    )

                else:
                    text = await resp.text()
                    logger.info(
                        "Success [%s.%s] elapsed=%.2fs",
                        source,
                        operation,
                        time.monotonic() - start,
                    )
                    return text

            except asyncio.TimeoutError:
                elapsed = time.monotonic() - start
                last_error = TransientUpstreamError(source, f"Timeout after {elapsed:.1f}s")
                logger.warning(
                    "Timeout [%s.%s] attempt=%d elapsed=%.1fs",
                    source,
                    operation,
                    attempt + 1,
                    elapsed,
                )

            except aiohttp.ClientError as e:
                last_error = TransientUpstreamError(source, f"Connection error: {e}")
                logger.warning(
                    "Connection error [%s.%s] attempt=%d: %s",
                    source,
                    operation,
                    attempt + 1,
                    e,
                )

            # Exponential backoff before next attempt
            if attempt < retry.max_attempts - 1:
                await asyncio.sleep(delay)

        logger.error(
            "All retries exhausted [%s.%s] after %.1fs: %s",
            source,
            operation,
            time.monotonic() - start,
            last_error,
        )
        raise last_error
