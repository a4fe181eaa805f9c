"""Unit tests for base_client module."""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from pubmed_server.data_sources.base_client import (
    BaseClient,
    ClientConfig,
    DataSourceError,
    InvalidRequestError,
    RetryConfig,
    TransientUpstreamError,
)


class ConcreteTestClient(BaseClient):
    """Concrete implementation of BaseClient for testing."""

    @property
    def _source_name(self) -> str:
        return "test_client"

    def _endpoint(self, operation: str) -> str:
        return f"https://example.com/{operation}"

    def _common_params(self) -> dict[str, str]:
        return {"email": self.config.email}


def _client(**retry) -> ConcreteTestClient:
    return ConcreteTestClient(
        ClientConfig(email="test@example.com", retry=RetryConfig(**retry))
    )


def _response(status: int, text: str = "", headers: dict | None = None) -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    resp.headers = headers or {}
    return resp


def _session(*responses) -> AsyncMock:
    mock_session = AsyncMock()
    mock_session.get = AsyncMock(side_effect=list(responses))
    return mock_session


@pytest.mark.asyncio
class TestBaseClient:
    """Unit tests for BaseClient session lifecycle (no network calls)."""

    async def test_client_context_manager(self):
        """Test that client can be used as async context manager."""
        async with _client() as client:
            assert client._session is None  # Session created lazily
            session = await client._get_session()

            assert session is not None
            assert not session.closed

        # Session should be closed after exiting context
        assert client._session.closed

    async def test_session_reuse(self):
        """Test that session is reused across requests."""
        client = _client()

        session1 = await client._get_session()
        session2 = await client._get_session()

        assert session1 is session2
        await client.close()

    async def test_injected_components_are_used(self):
        """Test that limiter, cache and registry can be shared between clients."""
        first = _client()
        second = ConcreteTestClient(
            first.config,
            rate_limiter=first.rate_limiter,
            cache=first.cache,
            inflight=first.inflight,
        )

        assert second.rate_limiter is first.rate_limiter
        assert second.cache is first.cache
        assert second.inflight is first.inflight


@pytest.mark.asyncio
class TestCall:
    """Unit tests for call(): retry, backoff and error classification."""

    async def test_returns_text_on_success(self):
        """Test call returns raw text and merges common params."""
        mock_session = _session(_response(200, "<root>OK</root>"))

        client = _client()
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            result = await client.call("fetch", {"id": "1"})

        assert result == "<root>OK</root>"
        mock_session.get.assert_awaited_once_with(
            "https://example.com/fetch",
            params={"id": "1", "email": "test@example.com"},
        )

    async def test_raises_invalid_request_on_4xx_without_retry(self):
        """Test a non-retryable 4xx raises InvalidRequestError on the first attempt."""
        mock_session = _session(_response(400, "Bad Request"))

        client = _client()
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with pytest.raises(InvalidRequestError, match="HTTP 400") as exc_info:
                await client.call("search", {})

        assert exc_info.value.status_code == 400
        assert exc_info.value.source == "test_client"
        assert mock_session.get.await_count == 1

    async def test_retries_on_5xx_then_succeeds(self):
        """Test call retries on 500 and succeeds on next attempt."""
        mock_session = _session(_response(500, "oops"), _response(200, "<root>OK</root>"))

        client = _client()
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ):
                result = await client.call("fetch", {})

        assert result == "<root>OK</root>"
        assert mock_session.get.await_count == 2

    async def test_raises_after_exhausting_attempts_on_5xx(self):
        """Test call raises TransientUpstreamError after all attempts fail with 5xx."""
        mock_session = _session(*(_response(503, "unavailable") for _ in range(3)))

        client = _client(max_attempts=3)
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ):
                with pytest.raises(TransientUpstreamError, match="HTTP 503") as exc_info:
                    await client.call("fetch", {})

        assert exc_info.value.status_code == 503
        assert mock_session.get.await_count == 3

    async def test_backoff_grows_exponentially(self):
        """Test sleeps between attempts follow base_delay * factor**attempt."""
        mock_session = _session(*(_response(502) for _ in range(3)))

        client = _client(max_attempts=3, base_delay=1.0, backoff_factor=2.0)
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ) as mock_sleep:
                with pytest.raises(TransientUpstreamError):
                    await client.call("fetch", {})

        # no sleep after the final attempt
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    async def test_respects_retry_after_on_429(self):
        """Test a 429 Retry-After header overrides the computed backoff."""
        mock_session = _session(
            _response(429, "rate limited", headers={"Retry-After": "2"}),
            _response(200, "ok"),
        )

        client = _client(base_delay=0.5)
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ) as mock_sleep:
                result = await client.call("search", {})

        assert result == "ok"
        mock_sleep.assert_awaited_once_with(2.0)

    async def test_timeout_is_retried_then_raised(self):
        """Test timeouts are transient and surface as TransientUpstreamError."""
        mock_session = AsyncMock()
        mock_session.get = AsyncMock(side_effect=asyncio.TimeoutError())

        client = _client(max_attempts=2)
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ):
                with pytest.raises(TransientUpstreamError, match="Timeout"):
                    await client.call("search", {})

        assert mock_session.get.await_count == 2

    async def test_connection_error_is_retried(self):
        """Test aiohttp connection errors are retried."""
        mock_session = AsyncMock()
        mock_session.get = AsyncMock(
            side_effect=[aiohttp.ClientConnectionError("reset"), _response(200, "ok")]
        )

        client = _client()
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ):
            with patch(
                "pubmed_server.data_sources.base_client.asyncio.sleep",
                new_callable=AsyncMock,
            ):
                result = await client.call("search", {})

        assert result == "ok"

    async def test_every_attempt_acquires_a_token(self):
        """Test retries consume rate-limit budget too."""
        mock_session = _session(_response(500), _response(500), _response(200, "ok"))

        client = _client()
        with patch.object(
            client, "_get_session", new_callable=AsyncMock, return_value=mock_session
        ), patch.object(
            client.rate_limiter, "acquire", new_callable=AsyncMock
        ) as mock_acquire, patch(
            "pubmed_server.data_sources.base_client.asyncio.sleep",
            new_callable=AsyncMock,
        ):
            await client.call("fetch", {})

        assert mock_acquire.await_count == 3


class TestDataSourceError:
    """Tests for DataSourceError."""

    def test_error_message_format(self):
        """Test error message includes source."""
        error = DataSourceError("pubmed", "Connection failed")
        assert "[pubmed]" in str(error)
        assert "Connection failed" in str(error)

    def test_error_with_status_code(self):
        """Test error can include status code."""
        error = TransientUpstreamError("api", "Unavailable", status_code=503)
        assert error.source == "api"
        assert error.status_code == 503
        assert isinstance(error, DataSourceError)
