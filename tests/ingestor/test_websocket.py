"""Tests for the Deribit WebSocket handler."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from options_flow_tracker.ingestor.websocket import (
    ConnectionState,
    DeribitStreamHandler,
    StreamConnectionError,
    StreamRpcError,
)


@pytest.fixture
def handler() -> DeribitStreamHandler:
    return DeribitStreamHandler(host="wss://test.deribit.com/ws/api/v2", on_message=AsyncMock())


class TestHandleMessage:
    """Tests for message routing."""

    @pytest.mark.asyncio
    async def test_subscription_dispatched(self, handler: DeribitStreamHandler) -> None:
        message = {
            "jsonrpc": "2.0",
            "method": "subscription",
            "params": {"channel": "trades.option.BTC.raw", "data": [{"trade_id": "1"}]},
        }
        await handler._handle_message(json.dumps(message))

        handler._on_message.assert_awaited_once_with("trades.option.BTC.raw", [{"trade_id": "1"}])
        assert handler.stats.messages_received == 1

    @pytest.mark.asyncio
    async def test_reply_resolves_future(self, handler: DeribitStreamHandler) -> None:
        request_id, _, future = handler._next_request("public/ticker", {"instrument_name": "X"})

        await handler._handle_message(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"mark_iv": 50}}))

        assert future.done()
        assert future.result() == {"mark_iv": 50}
        assert handler.stats.replies_received == 1

    @pytest.mark.asyncio
    async def test_error_reply_fails_future(self, handler: DeribitStreamHandler) -> None:
        request_id, _, future = handler._next_request("public/ticker", {})

        await handler._handle_message(json.dumps({"id": request_id, "error": {"code": 13020, "message": "not_found"}}))

        with pytest.raises(StreamRpcError) as exc_info:
            future.result()
        assert exc_info.value.method == "public/ticker"

    @pytest.mark.asyncio
    async def test_unknown_reply_id_ignored(self, handler: DeribitStreamHandler) -> None:
        await handler._handle_message(json.dumps({"id": 999, "result": True}))
        handler._on_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_heartbeat_test_request_answered(self, handler: DeribitStreamHandler) -> None:
        handler._ws = MagicMock()
        handler._ws.send = AsyncMock()

        await handler._handle_message(json.dumps({"method": "heartbeat", "params": {"type": "test_request"}}))

        sent = json.loads(handler._ws.send.call_args.args[0])
        assert sent["method"] == "public/test"


class TestSubscriptions:
    """Tests for channel subscription bookkeeping."""

    @pytest.mark.asyncio
    async def test_subscribe_sends_once(self, handler: DeribitStreamHandler) -> None:
        ws = MagicMock()
        ws.send = AsyncMock()

        await handler.subscribe(["ticker.A.raw", "trades.A.raw", ""])
        await handler._send_subscription_messages(ws)
        await handler._send_subscription_messages(ws)

        assert ws.send.await_count == 1
        sent = json.loads(ws.send.call_args.args[0])
        assert sent["method"] == "public/subscribe"
        assert sent["params"]["channels"] == ["ticker.A.raw", "trades.A.raw"]
        assert handler.channels == {"ticker.A.raw", "trades.A.raw"}

    @pytest.mark.asyncio
    async def test_already_subscribed_not_requeued(self, handler: DeribitStreamHandler) -> None:
        ws = MagicMock()
        ws.send = AsyncMock()
        await handler.subscribe(["ticker.A.raw"])
        await handler._send_subscription_messages(ws)

        await handler.subscribe(["ticker.A.raw"])
        await handler._send_subscription_messages(ws)

        assert ws.send.await_count == 1

    @pytest.mark.asyncio
    async def test_rejected_subscription_dropped(
        self, handler: DeribitStreamHandler, caplog: pytest.LogCaptureFixture
    ) -> None:
        ws = MagicMock()
        ws.send = AsyncMock()
        await handler.subscribe(["ticker.A.raw"])
        await handler._send_subscription_messages(ws)
        request_id = json.loads(ws.send.call_args.args[0])["id"]

        with caplog.at_level(logging.WARNING):
            reply = {"id": request_id, "error": {"code": 11050, "message": "bad_request"}}
            await handler._handle_message(json.dumps(reply))
            await asyncio.sleep(0)

        assert handler.channels == set()
        assert "rejected" in caplog.text

    @pytest.mark.asyncio
    async def test_channels_missing_from_reply_dropped(self, handler: DeribitStreamHandler) -> None:
        ws = MagicMock()
        ws.send = AsyncMock()
        await handler.subscribe(["ticker.A.raw", "ticker.B.raw"])
        await handler._send_subscription_messages(ws)
        request_id = json.loads(ws.send.call_args.args[0])["id"]

        await handler._handle_message(json.dumps({"id": request_id, "result": ["ticker.A.raw"]}))
        await asyncio.sleep(0)

        assert handler.channels == {"ticker.A.raw"}

    @pytest.mark.asyncio
    async def test_send_failure_requeues_channels(self, handler: DeribitStreamHandler) -> None:
        ws = MagicMock()
        ws.send = AsyncMock(side_effect=ConnectionError("closed"))
        await handler.subscribe(["ticker.A.raw"])

        with pytest.raises(ConnectionError):
            await handler._send_subscription_messages(ws)

        assert handler.channels == set()
        assert handler._pending_subscribe == {"ticker.A.raw"}
        assert handler._pending == {}


class TestCalls:
    """Tests for request/response calls."""

    @pytest.mark.asyncio
    async def test_call_requires_connection(self, handler: DeribitStreamHandler) -> None:
        assert handler.state is ConnectionState.DISCONNECTED
        with pytest.raises(StreamConnectionError):
            await handler.call("public/test")

    @pytest.mark.asyncio
    async def test_call_returns_result(self, handler: DeribitStreamHandler) -> None:
        ws = MagicMock()
        ws.send = AsyncMock()
        handler._ws = ws
        handler._state = ConnectionState.CONNECTED

        task = asyncio.create_task(handler.call("public/get_time"))
        await asyncio.sleep(0)
        request_id = json.loads(ws.send.call_args.args[0])["id"]
        await handler._handle_message(json.dumps({"id": request_id, "result": 1234}))

        assert await task == 1234

    @pytest.mark.asyncio
    async def test_fail_pending(self, handler: DeribitStreamHandler) -> None:
        _, _, future = handler._next_request("public/ticker", {})

        handler._fail_pending("socket closed")

        with pytest.raises(StreamConnectionError):
            future.result()
