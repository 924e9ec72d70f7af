import asyncio
import json
import socket

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from deltarelay.config import Delta
from deltarelay.delta_client import (
    DeltaError,
    DeltaWebsocketClient,
    route_message,
    subscribe_message,
    unsubscribe_message,
)


class FakeDelta:
    """A local websocket server that records what clients send."""

    def __init__(self):
        self.received = asyncio.Queue()
        self.connections = []
        app = web.Application()
        app.router.add_get("/", self._handle)
        self._server = TestServer(app)

    async def _handle(self, request):
        ws = web.WebSocketResponse()
        self.connections.append(ws)
        await ws.prepare(request)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await self.received.put(json.loads(msg.data))
        return ws

    @property
    def url(self):
        return str(self._server.make_url("/")).replace("http://", "ws://", 1)

    async def next_message(self):
        return await asyncio.wait_for(self.received.get(), 5)

    async def __aenter__(self):
        await self._server.start_server()
        return self

    async def __aexit__(self, *exc):
        for ws in self.connections:
            await ws.close()
        await self._server.close()


async def _wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _cfg(url, reconnect_max=5):
    return Delta(
        enabled=True,
        url=url,
        channels=["v2/ticker"],
        product_ids=["BTCUSD"],
        reconnect_max=reconnect_max,
    )


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_subscribe_message_with_products():
    assert subscribe_message("v2/ticker", ["BTCUSD"]) == {
        "type": "subscribe",
        "payload": {"channels": [{"name": "v2/ticker", "symbols": ["BTCUSD"]}]},
    }


def test_subscribe_message_without_products_means_all():
    msg = subscribe_message("v2/ticker", [])
    assert msg["payload"]["channels"][0]["symbols"] == ["all"]


def test_unsubscribe_message():
    assert unsubscribe_message("funding_rate") == {
        "type": "unsubscribe",
        "payload": {"channels": [{"name": "funding_rate"}]},
    }


def test_route_prefers_payload_channel_name():
    msg = {"type": "subscriptions", "payload": {"channels": [{"name": "v2/ticker"}]}}
    assert route_message(msg) == ("v2/ticker", "")


def test_route_falls_back_to_type_and_symbol():
    assert route_message({"type": "v2/ticker", "symbol": "BTCUSD"}) == ("v2/ticker", "BTCUSD")


def test_route_uses_short_symbol_field():
    assert route_message({"type": "v2/spot_price", "s": "BTCUSD"}) == ("v2/spot_price", "BTCUSD")


def test_route_empty_channel_list_falls_back_to_type():
    msg = {"type": "funding_rate", "payload": {"channels": []}, "symbol": "BTCUSD"}
    assert route_message(msg) == ("funding_rate", "BTCUSD")


def test_route_without_channel_is_dropped():
    assert route_message({"symbol": "BTCUSD"}) is None
    assert route_message({"type": 7}) is None


def test_initial_status():
    client = DeltaWebsocketClient(_cfg("ws://127.0.0.1:1/", reconnect_max=3))
    status = client.connection_status()
    assert status["connected"] is False
    assert status["connected_at"] is None
    assert status["reconnect_count"] == 0
    assert status["reconnect_max"] == 3
    assert status["last_error"] == ""
    assert status["subscribed_channels"] == []
    assert client.is_connected() is False


@pytest.mark.asyncio
async def test_subscribe_requires_connection():
    client = DeltaWebsocketClient(_cfg("ws://127.0.0.1:1/"))
    with pytest.raises(DeltaError, match="not connected"):
        await client.subscribe("v2/ticker", ["BTCUSD"])
    with pytest.raises(DeltaError, match="not connected"):
        await client.unsubscribe("v2/ticker")
    assert client.connection_status()["subscribed_channels"] == []


@pytest.mark.asyncio
async def test_connect_failure_records_error():
    client = DeltaWebsocketClient(_cfg(f"ws://127.0.0.1:{_free_port()}/"))
    try:
        with pytest.raises(DeltaError, match="failed to connect"):
            await client.connect()
        status = client.connection_status()
        assert status["last_error"].startswith("Failed to connect to Delta Exchange")
        assert status["last_error_at"] is not None
        assert status["connected"] is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connect_subscribes_to_configured_channels():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        try:
            await client.connect()
            assert await fake.next_message() == subscribe_message("v2/ticker", ["BTCUSD"])
            status = client.connection_status()
            assert status["connected"] is True
            assert status["connected_at"] is not None
            assert status["subscribed_channels"] == ["v2/ticker"]
            await client.connect()
            assert len(fake.connections) == 1
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_messages_reach_registered_handler():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        delivered = asyncio.Queue()
        client.register_handler("v2/ticker", lambda m, p: delivered.put_nowait((m, p)))
        try:
            await client.connect()
            await fake.next_message()
            ws = fake.connections[0]
            ticker = {"type": "v2/ticker", "symbol": "BTCUSD", "mark_price": "100"}
            await ws.send_str("not json")
            await ws.send_str(json.dumps({"type": "other", "symbol": "ETHUSD"}))
            await ws.send_str(json.dumps(ticker))
            raw, product_id = await asyncio.wait_for(delivered.get(), 5)
            assert json.loads(raw) == ticker
            assert product_id == "BTCUSD"
            assert delivered.empty()
            assert client.total_messages == 2
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_async_handler_is_awaited():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        seen = []

        async def handler(message, product_id):
            seen.append(product_id)

        client.register_handler("v2/spot_price", handler)
        try:
            await client.connect()
            await fake.next_message()
            await fake.connections[0].send_str(json.dumps({"type": "v2/spot_price", "s": "BTCUSD"}))
            await _wait_until(lambda: seen)
            assert seen == ["BTCUSD"]
            assert client.total_messages == 1
            assert client.is_connected() is True
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_unsubscribe_sends_request_and_forgets_channel():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        try:
            await client.connect()
            await fake.next_message()
            await client.unsubscribe("v2/ticker")
            assert await fake.next_message() == unsubscribe_message("v2/ticker")
            assert client.connection_status()["subscribed_channels"] == []
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_close_disconnects_without_reconnecting():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        client.reconnect_delay = 0.01
        await client.connect()
        await fake.next_message()
        await client.close()
        assert client.is_connected() is False
        await _wait_until(lambda: fake.connections[0].closed)
        await asyncio.sleep(0.1)
        assert len(fake.connections) == 1


@pytest.mark.asyncio
async def test_reconnects_after_server_closes():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url))
        client.reconnect_delay = 0.01
        try:
            await client.connect()
            await fake.next_message()
            await fake.connections[0].close()
            assert await fake.next_message() == subscribe_message("v2/ticker", ["BTCUSD"])
            await _wait_until(client.is_connected)
            assert len(fake.connections) == 2
            status = client.connection_status()
            assert status["reconnect_count"] == 0
            assert status["last_error"].startswith("Error reading from Delta Exchange")
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_gives_up_after_reconnect_limit():
    async with FakeDelta() as fake:
        client = DeltaWebsocketClient(_cfg(fake.url, reconnect_max=0))
        client.reconnect_delay = 0.01
        try:
            await client.connect()
            await fake.next_message()
            await fake.connections[0].close()
            await _wait_until(lambda: client.reconnect_count == 1)
            await asyncio.sleep(0.1)
            assert client.is_connected() is False
            assert len(fake.connections) == 1
        finally:
            await client.close()