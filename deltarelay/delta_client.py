"""Client for the Delta Exchange websocket feed."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Optional, Union

import aiohttp

from .config import Delta

log = logging.getLogger(__name__)

MessageHandler = Callable[[bytes, str], Union[Awaitable[None], None]]


class DeltaError(Exception):
    """Raised when talking to Delta Exchange fails."""


def subscribe_message(channel: str, product_ids: Sequence[str]) -> dict[str, Any]:
    """Build the subscription request for ``channel``; no products means all."""
    symbols = list(product_ids) if product_ids else ["all"]
    return {
        "type": "subscribe",
        "payload": {"channels": [{"name": channel, "symbols": symbols}]},
    }


def unsubscribe_message(channel: str) -> dict[str, Any]:
    """Build the unsubscription request for ``channel``."""
    return {
        "type": "unsubscribe",
        "payload": {"channels": [{"name": channel}]},
    }


def route_message(msg: dict[str, Any]) -> Optional[tuple[str, str]]:
    """Work out the channel and product id of a decoded feed message.

    The channel comes from ``payload.channels[0].name`` when present,
    otherwise from ``type``. Returns None when neither gives a channel.
    The product id is ``symbol`` or ``s``, or an empty string.
    """
    channel = ""
    payload = msg.get("payload")
    if isinstance(payload, dict):
        channels = payload.get("channels")
        if isinstance(channels, list) and channels:
            first = channels[0]
            if isinstance(first, dict) and isinstance(first.get("name"), str):
                channel = first["name"]
    if not channel:
        msg_type = msg.get("type")
        if not isinstance(msg_type, str):
            log.warning("Message has no valid 'type' or 'payload.channels' field: %r", msg)
            return None
        channel = msg_type

    if isinstance(msg.get("symbol"), str):
        product_id = msg["symbol"]
    elif isinstance(msg.get("s"), str):
        product_id = msg["s"]
    else:
        product_id = ""
        log.warning("Message has no valid 'symbol' or 's' field: %r", msg)
    return channel, product_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DeltaWebsocketClient:
    """Keeps a websocket to Delta Exchange and hands messages to channel handlers."""

    def __init__(self, cfg: Delta) -> None:
        self.url = cfg.url
        self.channels = list(cfg.channels)
        self.product_ids = list(cfg.product_ids)
        self.reconnect_max = cfg.reconnect_max
        self.reconnect_delay = 5.0
        self.reconnect_count = 0
        self.connected_at: Optional[datetime] = None
        self.last_error = ""
        self.last_error_at: Optional[datetime] = None
        self.total_messages = 0
        self._handlers: dict[str, MessageHandler] = {}
        self._subscriptions: dict[str, bool] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._connected = False
        self._closed = False

    def _record_error(self, text: str) -> None:
        self.last_error = text
        self.last_error_at = _now()

    async def connect(self) -> None:
        """Open the connection, subscribe to the configured channels and start reading."""
        log.info("Attempting to connect to Delta Exchange at %s", self.url)
        if self._connected:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            ws = await self._session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, ValueError) as exc:
            self._record_error(f"Failed to connect to Delta Exchange: {exc}")
            log.error("Failed to connect to Delta Exchange: %s", exc)
            raise DeltaError(f"failed to connect to Delta Exchange: {exc}") from exc

        self._ws = ws
        self._connected = True
        self.connected_at = _now()
        self.reconnect_count = 0
        log.info("Connected to Delta Exchange at %s", self.url)

        for channel in self.channels:
            try:
                await self.subscribe(channel, self.product_ids)
            except DeltaError as exc:
                log.error("Failed to subscribe to channel %s: %s", channel, exc)

        self._reader = asyncio.create_task(self._read_pump(ws))

    def register_handler(self, channel: str, handler: MessageHandler) -> None:
        """Route messages of ``channel`` to ``handler(message, product_id)``."""
        self._handlers[channel] = handler
        log.info("Registered handler for channel %s", channel)

    async def _read_pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = msg.data.encode()
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    data = msg.data
                else:
                    reason = ws.exception() or f"connection closed ({msg.type.name})"
                    self._record_error(f"Error reading from Delta Exchange: {reason}")
                    log.error("Error reading message: %s", reason)
                    break
                await self._dispatch(data)
        finally:
            self._connected = False
            await ws.close()
        if self._closed:
            log.info("Client closed, stopping read pump")
            return
        await self._reconnect()

    async def _dispatch(self, data: bytes) -> None:
        try:
            msg = json.loads(data)
        except ValueError as exc:
            log.error("Error parsing message %r: %s", data, exc)
            return
        if not isinstance(msg, dict):
            log.error("Message is not a JSON object: %r", data)
            return
        routed = route_message(msg)
        if routed is None:
            return
        channel, product_id = routed
        self.total_messages += 1
        log.info(
            "Received message on %s for %s (total %d)",
            channel,
            product_id,
            self.total_messages,
        )
        handler = self._handlers.get(channel)
        if handler is None:
            return
        try:
            result = handler(data, product_id)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Handler for channel %s failed", channel)

    async def _send(self, payload: dict[str, Any], what: str, channel: str) -> None:
        data = json.dumps(payload, sort_keys=True)
        if not self._connected or self._ws is None:
            log.warning("Not connected to Delta Exchange (channel %s)", channel)
            raise DeltaError("not connected to Delta Exchange")
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            log.error("Failed to send %s message for %s: %s", what, channel, exc)
            raise DeltaError(f"failed to send {what} message: {exc}") from exc

    async def subscribe(self, channel: str, product_ids: Sequence[str]) -> None:
        """Subscribe to ``channel`` for ``product_ids`` (all products when empty)."""
        await self._send(subscribe_message(channel, product_ids), "subscription", channel)
        self._subscriptions[channel] = True
        log.info("Subscribed to channel %s", channel)

    async def unsubscribe(self, channel: str) -> None:
        """Unsubscribe from ``channel``."""
        await self._send(unsubscribe_message(channel), "unsubscription", channel)
        self._subscriptions.pop(channel, None)
        log.info("Unsubscribed from channel %s", channel)

    async def _reconnect(self) -> None:
        self.reconnect_count += 1
        if self.reconnect_count > self.reconnect_max:
            log.error(
                "Exceeded maximum reconnection attempts (%d of %d)",
                self.reconnect_count,
                self.reconnect_max,
            )
            return
        log.info(
            "Reconnecting to Delta Exchange, attempt %d of %d",
            self.reconnect_count,
            self.reconnect_max,
        )
        await asyncio.sleep(self.reconnect_delay)
        try:
            await self.connect()
        except DeltaError as exc:
            log.error("Failed to reconnect to Delta Exchange: %s", exc)

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closed = True
        ws, self._ws = self._ws, None
        self._connected = False
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        if ws is not None:
            await ws.close()
        session, self._session = self._session, None
        if session is not None:
            await session.close()
        log.info("Closed Delta Exchange connection")

    def is_connected(self) -> bool:
        """Whether the feed connection is up."""
        return self._connected

    def connection_status(self) -> dict[str, Any]:
        """Describe the connection state; unset times are None."""
        return {
            "connected": self._connected,
            "connected_at": self.connected_at,
            "reconnect_count": self.reconnect_count,
            "reconnect_max": self.reconnect_max,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "subscribed_channels": list(self._subscriptions),
        }