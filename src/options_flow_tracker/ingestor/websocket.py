"""Deribit JSON-RPC WebSocket client (subscriptions and RPC calls).

One socket carries both unsolicited channel messages
(``{"method": "subscription", "params": {"channel", "data"}}``) and replies to
our own requests (``{"id", "result" | "error"}``). Every request gets an
``asyncio.Future`` resolved by the listen loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_HEARTBEAT_INTERVAL = 30  # seconds, venue-side heartbeat
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds
DEFAULT_CALL_TIMEOUT = 15.0  # seconds


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    messages_received: int = 0
    replies_received: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class StreamError(Exception):
    """Base exception for stream errors."""


class StreamConnectionError(StreamError):
    """Raised when connection to WebSocket fails or drops mid-call."""


class StreamRpcError(StreamError):
    """Raised when the venue answers a request with an error object."""

    def __init__(self, method: str, error: Any) -> None:
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


ChannelCallback = Callable[[str, Any], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


class DeribitStreamHandler:
    """WebSocket client for Deribit subscriptions and public RPC calls.

    Subscribed channels survive reconnects: after every (re)connect the full
    channel set is subscribed again.
    """

    def __init__(
        self,
        *,
        host: str,
        on_message: ChannelCallback | None = None,
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        heartbeat_interval: int = DEFAULT_HEARTBEAT_INTERVAL,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        self._host = host
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._heartbeat_interval = heartbeat_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay
        self._call_timeout = call_timeout

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._connected: asyncio.Event = asyncio.Event()

        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[Any]]] = {}

        self._channels_lock = asyncio.Lock()
        self._channels: set[str] = set()
        self._pending_subscribe: set[str] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def channels(self) -> set[str]:
        return set(self._channels)

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Deribit stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def subscribe(self, channels: list[str]) -> None:
        """Queue channels for subscription; sent on the next listen tick."""
        wanted = {c for c in channels if c}
        if not wanted:
            return
        async with self._channels_lock:
            self._pending_subscribe |= wanted - self._channels

    def _next_request(self, method: str, params: dict[str, Any]) -> tuple[int, str, asyncio.Future[Any]]:
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        message = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        return request_id, message, future

    async def send_call(self, method: str, params: dict[str, Any] | None = None) -> tuple[int, asyncio.Future[Any]]:
        """Send a request and return its id and completion future.

        Raises:
            StreamConnectionError: If the socket is not connected.
        """
        ws = self._ws
        if ws is None or self._state != ConnectionState.CONNECTED:
            raise StreamConnectionError(f"Cannot call {method}: stream not connected")
        request_id, message, future = self._next_request(method, params or {})
        try:
            await ws.send(message)
        except Exception as e:
            self._pending.pop(request_id, None)
            raise StreamConnectionError(f"Failed to send {method}: {e}") from e
        return request_id, future

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and wait for its ``result``.

        Raises:
            StreamConnectionError: If not connected or the socket drops.
            StreamRpcError: If the venue returns an error object.
            TimeoutError: If no reply arrives within the call timeout.
        """
        request_id, future = await self.send_call(method, params)
        try:
            return await asyncio.wait_for(future, timeout=self._call_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _send_subscription_messages(self, ws: ClientConnection) -> None:
        async with self._channels_lock:
            subscribe = set(self._pending_subscribe)
            self._pending_subscribe.clear()
        if not subscribe:
            return
        request_id, message, future = self._next_request("public/subscribe", {"channels": sorted(subscribe)})
        future.add_done_callback(lambda f: self._on_subscribe_reply(subscribe, f))
        async with self._channels_lock:
            self._channels |= subscribe
        try:
            await ws.send(message)
        except Exception:
            self._pending.pop(request_id, None)
            future.cancel()
            async with self._channels_lock:
                self._channels -= subscribe
                self._pending_subscribe |= subscribe
            raise
        logger.info("Subscribing to %d channels", len(subscribe))

    def _on_subscribe_reply(self, channels: set[str], future: asyncio.Future[Any]) -> None:
        """Drop channels the venue refused; connection failures are retried on reconnect."""
        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, StreamRpcError):
            self._channels -= channels
            logger.warning("Subscription to %d channels rejected: %s", len(channels), error)
            return
        if error is not None:
            return
        result = future.result()
        if isinstance(result, list):
            missing = channels - {str(c) for c in result}
            if missing:
                self._channels -= missing
                logger.warning("Channels not subscribed: %s", ", ".join(sorted(missing)))

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._host,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
                max_size=None,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise StreamConnectionError(f"Failed to connect to {self._host}: {e}") from e

        # Re-subscribe everything we had before the drop.
        async with self._channels_lock:
            self._pending_subscribe |= self._channels
            self._channels.clear()

        if self._heartbeat_interval > 0:
            await ws.send(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "id": next(self._ids),
                        "method": "public/set_heartbeat",
                        "params": {"interval": self._heartbeat_interval},
                    }
                )
            )

        self._ws = ws
        await self._set_state(ConnectionState.CONNECTED)
        self._connected.set()
        self._stats.connected_since = time.time()
        logger.info("Connected to Deribit stream: %s", self._host)
        return ws

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:  # pragma: no cover
            logger.warning("Invalid JSON message on Deribit stream")
            return
        if not isinstance(data, dict):
            return

        self._stats.last_message_time = time.time()
        method = data.get("method")

        if method == "subscription":
            params = data.get("params") or {}
            channel = str(params.get("channel", ""))
            self._stats.messages_received += 1
            if self._on_message and channel:
                await self._on_message(channel, params.get("data"))
            return

        if method == "heartbeat":
            params = data.get("params") or {}
            if params.get("type") == "test_request" and self._ws is not None:
                await self._ws.send(json.dumps({"jsonrpc": "2.0", "id": next(self._ids), "method": "public/test"}))
            return

        request_id = data.get("id")
        if isinstance(request_id, int):
            self._stats.replies_received += 1
            pending = self._pending.pop(request_id, None)
            if pending is None:
                return
            call_method, future = pending
            if future.done():
                return
            if "error" in data:
                future.set_exception(StreamRpcError(call_method, data["error"]))
            else:
                future.set_result(data.get("result"))

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    message = None

                if isinstance(message, str):
                    await self._handle_message(message)
                elif message is not None:
                    logger.debug("Ignoring non-text Deribit message")

                await self._send_subscription_messages(ws)
        except websockets.ConnectionClosed as e:
            logger.warning("Deribit stream connection closed: %s", e)
            raise

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for method, future in pending:
            if not future.done():
                future.set_exception(StreamConnectionError(f"{method} aborted: {reason}"))

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("Deribit stream already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and self._stop_event and not self._stop_event.is_set():
            try:
                ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(ws)
            except Exception as e:
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                self._connected.clear()
                self._fail_pending(str(e))
                await self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None

        self._connected.clear()
        self._fail_pending("stream stopped")
        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
