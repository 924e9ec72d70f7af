"""Websocket endpoint that relays feed messages to subscribed clients."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp
from aiohttp import web

from .config import Config
from .delta_client import DeltaError, DeltaWebsocketClient
from .metrics import HandlerMetrics
from .transform import (
    MessageFormatError,
    matches_filter,
    normalize_spot_price,
    now_millis,
    parse_symbols,
    prepare_message,
)

log = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024
READ_TIMEOUT = 60.0
PING_INTERVAL = 30.0
_EXPECTED_CLOSE_CODES = (aiohttp.WSCloseCode.GOING_AWAY, aiohttp.WSCloseCode.ABNORMAL_CLOSURE)


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Client:
    """A connected websocket client with a bounded outgoing queue."""

    def __init__(self, client_id: str, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = client_id
        self.queue_size = queue_size
        self.subscriptions: set[str] = set()
        self.product_filters: dict[str, list[str]] = {}
        self.connected_at = _now()
        self.last_activity = self.connected_at
        self.ws: Optional[web.WebSocketResponse] = None
        self.closed = False
        self._pending: deque[bytes] = deque()
        self._ready = asyncio.Event()
        self._space = asyncio.Event()

    def __repr__(self) -> str:
        return f"Client(id={self.id!r})"

    def __len__(self) -> int:
        return len(self._pending)

    def offer(self, message: bytes) -> bool:
        """Queue ``message`` without waiting; False when closed or full."""
        if self.closed or len(self._pending) >= self.queue_size:
            return False
        self._pending.append(message)
        self._ready.set()
        return True

    async def put(self, message: bytes) -> bool:
        """Queue ``message``, waiting for room; False when the client is closed."""
        while not self.closed and len(self._pending) >= self.queue_size:
            self._space.clear()
            await self._space.wait()
        if self.closed:
            return False
        self._pending.append(message)
        self._ready.set()
        return True

    async def next_batch(self) -> Optional[list[bytes]]:
        """Wait for queued messages and take them all; None once closed and empty."""
        while not self._pending:
            if self.closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        batch = list(self._pending)
        self._pending.clear()
        self._space.set()
        return batch

    def drain(self) -> list[bytes]:
        """Take every queued message without waiting."""
        batch = list(self._pending)
        self._pending.clear()
        self._space.set()
        return batch

    def close(self) -> None:
        """Stop accepting messages; already queued ones can still be taken."""
        self.closed = True
        self._ready.set()
        self._space.set()


class WebsocketHandler:
    """Tracks clients and their channel subscriptions and fans messages out to them."""

    def __init__(self, cfg: Config, delta_client: Optional[DeltaWebsocketClient] = None) -> None:
        self.config = cfg
        self.delta_client = delta_client
        self.metrics = HandlerMetrics()
        self.messages_sent = 0
        self.messages_received = 0
        self.clients: dict[Client, None] = {}
        self.subscriptions: dict[str, dict[Client, None]] = {}
        log.info("Websocket handler created for %s", cfg.service_name)

    async def start(self) -> None:
        """Route the configured feed channels to clients and connect to the feed."""
        if self.delta_client is None:
            return
        for channel in self.config.delta.channels:
            self._register_delta_handler(channel)
        try:
            await self.delta_client.connect()
        except DeltaError as exc:
            log.error("Failed to connect to Delta Exchange: %s", exc)

    def _register_delta_handler(self, channel: str) -> None:
        if self.delta_client is None:
            return
        self.delta_client.register_handler(
            channel, functools.partial(self.broadcast_to_channel, channel)
        )
        log.info("Registered Delta handler for channel %s", channel)

    def _origin_allowed(self, origin: str) -> bool:
        if not self.config.websocket.check_origin:
            return True
        return any(
            allowed == "*" or allowed == origin for allowed in self.config.cors_allowed_origins()
        )

    async def handle_websocket(self, request: web.Request) -> web.StreamResponse:
        """Serve one client websocket connection until it closes."""
        origin = request.headers.get("Origin", "")
        if not self._origin_allowed(origin):
            log.error("Failed to upgrade connection: origin %r not allowed", origin)
            return web.Response(status=403, text="Forbidden")

        ws = web.WebSocketResponse(
            receive_timeout=READ_TIMEOUT,
            max_msg_size=self.config.websocket.max_message_size,
        )
        try:
            await ws.prepare(request)
        except web.HTTPException as exc:
            log.error("Failed to upgrade connection: %s", exc)
            raise

        client = Client(str(time.time_ns()))
        client.ws = ws
        self.register_client(client)
        log.info("Client %s connected", client.id)

        writer = asyncio.create_task(self._write_pump(client, ws))
        try:
            await self._read_pump(client, ws)
        finally:
            self.unregister_client(client)
            await ws.close()
            await writer
            log.info("Client %s read pump stopped", client.id)
        return ws

    async def _read_pump(self, client: Client, ws: web.WebSocketResponse) -> None:
        while True:
            try:
                msg = await ws.receive()
            except asyncio.TimeoutError:
                log.error("Read timeout for client %s", client.id)
                self.metrics.errors_total.inc("read_message")
                return
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.handle_message(client, msg.data.encode())
            elif msg.type == aiohttp.WSMsgType.BINARY:
                await self.handle_message(client, msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.error("Error reading message from %s: %s", client.id, ws.exception())
                self.metrics.errors_total.inc("read_message")
                return
            else:
                if msg.type == aiohttp.WSMsgType.CLOSE and msg.data not in _EXPECTED_CLOSE_CODES:
                    log.error("Client %s closed with code %s", client.id, msg.data)
                    self.metrics.errors_total.inc("read_message")
                return

    async def _write_pump(self, client: Client, ws: web.WebSocketResponse) -> None:
        try:
            while True:
                try:
                    batch = await asyncio.wait_for(client.next_batch(), PING_INTERVAL)
                except asyncio.TimeoutError:
                    try:
                        await ws.ping()
                    except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
                        log.error("Failed to send ping to %s: %s", client.id, exc)
                        self.metrics.errors_total.inc("ping")
                        return
                    continue
                if batch is None:
                    return
                for _ in batch[1:]:
                    self.messages_sent += 1
                    self.metrics.messages_sent_total.inc("queued", "")
                text = b"\n".join(batch).decode("utf-8", errors="replace")
                try:
                    await ws.send_str(text)
                except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
                    log.error("Failed to write to %s: %s", client.id, exc)
                    self.metrics.errors_total.inc("write_message")
                    return
        finally:
            await ws.close()
            log.info("Client %s write pump stopped", client.id)

    def register_client(self, client: Client) -> None:
        """Start tracking ``client``."""
        self.clients[client] = None
        self.metrics.active_connections.set(len(self.clients))
        log.info("Client %s registered", client.id)

    def unregister_client(self, client: Client) -> None:
        """Forget ``client``, close its queue and drop all of its subscriptions."""
        if client in self.clients:
            del self.clients[client]
            client.close()
            self.metrics.active_connections.set(len(self.clients))
        for channel in list(self.subscriptions):
            members = self.subscriptions[channel]
            if client in members:
                del members[client]
                self.metrics.active_subscriptions.set(len(members), channel)
                if not members:
                    del self.subscriptions[channel]
        log.info("Client %s unregistered", client.id)

    def broadcast(self, message: bytes) -> None:
        """Send ``message`` to every client; clients that cannot take it are dropped."""
        for client in list(self.clients):
            if client.offer(message):
                self.messages_sent += 1
                self.metrics.messages_sent_total.inc("broadcast", "")
            else:
                client.close()
                del self.clients[client]

    def broadcast_to_channel(self, channel: str, message: bytes, product_id: str) -> None:
        """Send a feed message to the clients of ``channel`` whose filter admits it."""
        start = time.perf_counter()
        if channel == "v2/spot_price":
            try:
                message = normalize_spot_price(message, now_millis())
            except MessageFormatError as exc:
                log.warning("Dropping v2/spot_price message: %s", exc)
                return

        members = self.subscriptions.get(channel)
        if members is None:
            log.warning("No clients subscribed to channel %s", channel)
            return

        try:
            message = prepare_message(channel, message, now_millis())
        except MessageFormatError as exc:
            log.error("Failed to parse message for processing: %s", exc)
            return

        for client in list(members):
            if not matches_filter(client.product_filters.get(channel), product_id):
                continue
            if client.offer(message):
                self.messages_sent += 1
                self.metrics.messages_sent_total.inc(channel, product_id)
            else:
                log.warning("Client %s queue full, unregistering", client.id)
                self.unregister_client(client)
        log.info(
            "Broadcast on %s for %s completed in %.6fs",
            channel,
            product_id,
            time.perf_counter() - start,
        )

    async def handle_message(self, client: Client, raw: bytes) -> None:
        """Decode one client message and act on its ``type``."""
        client.last_activity = _now()
        try:
            msg = json.loads(raw)
        except ValueError as exc:
            msg = None
            log.error("Error parsing message from %s: %s", client.id, exc)
        if not isinstance(msg, dict):
            self.metrics.errors_total.inc("message_parse")
            return

        msg_type = msg.get("type")
        channel = msg_type if isinstance(msg_type, str) else ""
        self.messages_received += 1
        self.metrics.messages_received_total.inc(channel)
        if not isinstance(msg_type, str):
            return
        if msg_type == "subscribe":
            await self.handle_subscribe(client, msg)
        elif msg_type == "unsubscribe":
            await self.handle_unsubscribe(client, msg)
        elif msg_type == "ping":
            await self.handle_ping(client)
        else:
            log.warning("Unknown message type %s from %s", msg_type, client.id)
            self.metrics.errors_total.inc("unknown_message_type")

    def _channel_objects(self, client: Client, msg: dict[str, Any]) -> Optional[list[Any]]:
        payload = msg.get("payload")
        channels = payload.get("channels") if isinstance(payload, dict) else None
        if not isinstance(channels, list):
            log.warning("Message from %s does not contain a payload", client.id)
            self.metrics.errors_total.inc("invalid_payload")
            return None
        return channels

    def _channel_name(self, client: Client, channel_obj: dict[str, Any]) -> Optional[str]:
        name = channel_obj.get("name")
        if not isinstance(name, str):
            log.warning("Channel object from %s does not contain a name", client.id)
            self.metrics.errors_total.inc("invalid_channel_name")
            return None
        return name

    async def handle_subscribe(self, client: Client, msg: dict[str, Any]) -> None:
        """Subscribe ``client`` to the requested channels and confirm them."""
        channels = self._channel_objects(client, msg)
        if channels is None:
            return
        subscribed = []
        for channel_obj in channels:
            if not isinstance(channel_obj, dict):
                continue
            name = self._channel_name(client, channel_obj)
            if name is None:
                continue
            product_ids = parse_symbols(channel_obj.get("symbols"))
            if self.delta_client is not None and msg.get("type") == "subscribe":
                self._register_delta_handler(name)
                try:
                    await self.delta_client.subscribe(name, product_ids)
                except DeltaError as exc:
                    log.error("Failed to subscribe to Delta channel %s: %s", name, exc)
            self.subscribe_client(client, name, product_ids)
            subscribed.append({"name": name, "symbols": product_ids or None})

        response = {"type": "subscribed", "payload": {"channels": subscribed}}
        if not await client.put(_encode(response)):
            log.warning("Client %s closed before subscription confirmation", client.id)

    async def handle_unsubscribe(self, client: Client, msg: dict[str, Any]) -> None:
        """Unsubscribe ``client`` from the requested channels and confirm each."""
        channels = self._channel_objects(client, msg)
        if channels is None:
            return
        unsubscribed = []
        for channel_obj in channels:
            if not isinstance(channel_obj, dict):
                continue
            name = self._channel_name(client, channel_obj)
            if name is None:
                continue
            self.unsubscribe_client(client, name)
            unsubscribed.append(name)
            if self.delta_client is None:
                continue
            members = self.subscriptions.get(name)
            if members is not None and not members:
                log.info("No clients left, unsubscribing from Delta channel %s", name)
                try:
                    await self.delta_client.unsubscribe(name)
                except DeltaError as exc:
                    log.error("Failed to unsubscribe from Delta channel %s: %s", name, exc)
                    self.metrics.errors_total.inc("delta_unsubscribe")
            elif members is not None:
                log.info("%d clients still subscribed to %s", len(members), name)

        for name in unsubscribed:
            await client.put(_encode({"type": "unsubscribed", "channel": name}))

    async def handle_ping(self, client: Client) -> None:
        """Answer a client ping with a pong carrying the current time in milliseconds."""
        await client.put(_encode({"type": "pong", "time": now_millis()}))
        log.info("Sent pong response to %s", client.id)

    def subscribe_client(self, client: Client, channel: str, product_ids: list[str]) -> None:
        """Add ``client`` to ``channel`` with the given product filter."""
        client.subscriptions.add(channel)
        client.product_filters[channel] = list(product_ids)
        self.subscriptions.setdefault(channel, {})[client] = None
        self.metrics.active_subscriptions.inc(channel)
        log.info("Client %s subscribed to %s for %s", client.id, channel, product_ids)

    def unsubscribe_client(self, client: Client, channel: str) -> None:
        """Remove ``client`` from ``channel``; empty channels are dropped."""
        client.subscriptions.discard(channel)
        client.product_filters.pop(channel, None)
        members = self.subscriptions.get(channel)
        if members is not None:
            members.pop(client, None)
            self.metrics.active_subscriptions.set(len(members), channel)
            if not members:
                del self.subscriptions[channel]
        log.info("Client %s unsubscribed from %s", client.id, channel)

    def delta_connection_status(self) -> dict[str, Any]:
        """Connection state of the feed client, or just ``connected: False``."""
        if self.delta_client is not None:
            return self.delta_client.connection_status()
        return {"connected": False}

    def statistics(self) -> dict[str, Any]:
        """Counts of connections, subscriptions and messages."""
        by_channel = {channel: len(members) for channel, members in self.subscriptions.items()}
        external = {}
        if self.delta_client is not None:
            external["delta"] = self.delta_client.is_connected()
        return {
            "active_connections": len(self.clients),
            "active_subscriptions": sum(by_channel.values()),
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "subscriptions_by_channel": by_channel,
            "external_sources": external,
        }

    async def close(self) -> None:
        """Close every client connection and the feed client."""
        for client in list(self.clients):
            client.close()
            if client.ws is not None:
                await client.ws.close()
        if self.delta_client is not None:
            await self.delta_client.close()
        log.info("Websocket handler stopped")