"""Tests for DeribitClient."""

import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from options_flow_tracker.ingestor.deribit_client import (
    DeribitClient,
    DeribitClientError,
    DeribitNotFoundError,
    DeribitParseError,
    DeribitTransientError,
    RateLimiter,
    RetryError,
    with_retry,
)
from options_flow_tracker.ingestor.models import TickerUpdate


class FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None


def make_session(status: int = 200, body: str = '{"result": {}}') -> MagicMock:
    session = MagicMock(spec=aiohttp.ClientSession)
    session.closed = False
    session.get = MagicMock(return_value=FakeResponse(status, body))
    return session


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self) -> None:
        limiter = RateLimiter(max_requests_per_second=10)
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start < 0.05

    @pytest.mark.asyncio
    async def test_enforces_rate(self) -> None:
        limiter = RateLimiter(max_requests_per_second=10)  # 100ms between calls
        await limiter.acquire()
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start >= 0.08


class TestWithRetry:
    """Tests for retry decorator."""

    @pytest.mark.asyncio
    async def test_success_after_retries(self) -> None:
        call_count = 0

        @with_retry(max_retries=3, base_delay=0.001)
        async def succeed_eventually() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise DeribitTransientError("Not yet")
            return "success"

        assert await succeed_eventually() == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_exhausted(self) -> None:
        @with_retry(max_retries=2, base_delay=0.001)
        async def always_fail() -> str:
            raise DeribitTransientError("down")

        with pytest.raises(RetryError) as exc_info:
            await always_fail()
        assert isinstance(exc_info.value.last_exception, DeribitTransientError)

    @pytest.mark.asyncio
    async def test_non_matching_exception_not_retried(self) -> None:
        call_count = 0

        @with_retry(max_retries=3, base_delay=0.001, retry_on=(DeribitTransientError,))
        async def bad() -> str:
            nonlocal call_count
            call_count += 1
            raise DeribitParseError("garbage")

        with pytest.raises(DeribitParseError):
            await bad()
        assert call_count == 1


class TestDeribitClientGet:
    """Tests for HTTP status and body mapping."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        client = DeribitClient(session=make_session(body='{"result": {"trades": []}}'))
        assert await client._get("public/x", {}) == {"trades": []}

    @pytest.mark.asyncio
    async def test_retryable_status_is_transient(self) -> None:
        client = DeribitClient(session=make_session(status=503, body="busy"))
        with pytest.raises(DeribitTransientError):
            await client._get("public/x", {})

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        client = DeribitClient(session=make_session(status=404, body=""))
        with pytest.raises(DeribitNotFoundError):
            await client._get("public/x", {})

    @pytest.mark.asyncio
    async def test_invalid_json_is_parse_error_with_excerpt(self) -> None:
        client = DeribitClient(session=make_session(body="<html>oops</html>"))
        with pytest.raises(DeribitParseError) as exc_info:
            await client._get("public/x", {})
        assert exc_info.value.excerpt == "<html>oops</html>"

    @pytest.mark.asyncio
    async def test_error_object(self) -> None:
        client = DeribitClient(session=make_session(status=400, body='{"error": {"code": 10001}}'))
        with pytest.raises(DeribitClientError):
            await client._get("public/x", {})

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self) -> None:
        session = make_session()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        client = DeribitClient(session=session)
        with pytest.raises(DeribitTransientError):
            await client._get("public/x", {})

    @pytest.mark.asyncio
    async def test_bool_params_serialized(self) -> None:
        session = make_session()
        client = DeribitClient("https://test.deribit.com/api/v2/", session=session)
        await client._get("public/get_instruments", {"expired": False, "currency": "BTC"})

        url = session.get.call_args.args[0]
        params = session.get.call_args.kwargs["params"]
        assert url == "https://test.deribit.com/api/v2/public/get_instruments"
        assert params == {"expired": "false", "currency": "BTC"}

    @pytest.mark.asyncio
    async def test_close_keeps_injected_session(self) -> None:
        session = make_session()
        session.close = AsyncMock()
        client = DeribitClient(session=session)
        await client.close()
        session.close.assert_not_called()


class TestDeribitClientMethods:
    """Tests for typed endpoint wrappers."""

    @pytest.mark.asyncio
    async def test_trades_request_params(self) -> None:
        client = DeribitClient(session=make_session())
        with patch.object(client, "_get", new=AsyncMock(return_value={"trades": [{"trade_id": "1"}, "junk"]})) as get:
            rows = await client.get_last_trades_by_instrument_and_time("BTC-X-1-C", 10, 20, count=5000)

        assert rows == [{"trade_id": "1"}]
        method, params = get.call_args.args
        assert method == "public/get_last_trades_by_instrument_and_time"
        assert params["start_timestamp"] == 10
        assert params["end_timestamp"] == 20
        assert params["count"] == 1000
        assert params["sorting"] == "asc"
        assert params["include_old"] is True

    @pytest.mark.asyncio
    async def test_trades_missing_payload_is_parse_error(self) -> None:
        client = DeribitClient(session=make_session())
        with patch.object(client, "_get", new=AsyncMock(return_value={"has_more": False})):
            with pytest.raises(DeribitParseError):
                await client.get_last_trades_by_instrument_and_time("BTC-X-1-C", 10, 20)

    @pytest.mark.asyncio
    async def test_trades_not_retried(self) -> None:
        client = DeribitClient(session=make_session())
        get = AsyncMock(side_effect=DeribitTransientError("down"))
        with patch.object(client, "_get", new=get):
            with pytest.raises(DeribitTransientError):
                await client.get_last_trades_by_instrument_and_time("BTC-X-1-C", 10, 20)
        assert get.call_count == 1

    @pytest.mark.asyncio
    async def test_get_ticker(self) -> None:
        client = DeribitClient(session=make_session())
        payload = {"best_bid_price": 0.01, "best_ask_price": 0.012, "greeks": {"delta": 0.3}}
        with patch.object(client, "_get", new=AsyncMock(return_value=payload)):
            ticker = await client.get_ticker("BTC-X-1-C")

        assert isinstance(ticker, TickerUpdate)
        assert ticker.instrument == "BTC-X-1-C"
        assert ticker.delta == 0.3

    @pytest.mark.asyncio
    async def test_get_ticker_retries_transient(self) -> None:
        client = DeribitClient(session=make_session())
        get = AsyncMock(side_effect=[DeribitTransientError("429"), {"mark_iv": 50.0}])
        with patch.object(client, "_get", new=get), patch("asyncio.sleep", new=AsyncMock()):
            ticker = await client.get_ticker("BTC-X-1-C")

        assert ticker.mark_iv == 50.0
        assert get.call_count == 2

    @pytest.mark.asyncio
    async def test_get_instruments_skips_malformed(self) -> None:
        client = DeribitClient(session=make_session())
        rows = [
            {"instrument_name": "BTC-27DEC24-60000-C", "expiration_timestamp": 1, "option_type": "call"},
            {"strike": 1},
        ]
        with patch.object(client, "_get", new=AsyncMock(return_value=rows)):
            instruments = await client.get_instruments("BTC")

        assert [i.name for i in instruments] == ["BTC-27DEC24-60000-C"]

    @pytest.mark.asyncio
    async def test_get_book_summary(self) -> None:
        client = DeribitClient(session=make_session())
        rows = [{"instrument_name": "BTC-27DEC24-60000-C", "open_interest": 42.0}]
        with patch.object(client, "_get", new=AsyncMock(return_value=rows)):
            summary = await client.get_book_summary_by_currency("BTC")

        assert summary[0].open_interest == 42.0
