"""HTTP application and process entry point of the websocket service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from typing import Optional, Sequence

from aiohttp import web

from .config import Config, load_config
from .delta_client import DeltaWebsocketClient
from .handler import WebsocketHandler

log = logging.getLogger(__name__)

SERVICE_NAME = "websocket-service"
PROMETHEUS_PORT = 9090
SHUTDOWN_TIMEOUT = 5.0


def create_app(cfg: Config, handler: WebsocketHandler) -> web.Application:
    """Build the HTTP application with the websocket, health and statistics routes."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.Response(text="OK")

    app.router.add_get("/ws", handler.handle_websocket)
    app.router.add_get("/health", health)

    if cfg.metrics.enabled:

        async def statistics(request: web.Request) -> web.Response:
            stats = handler.statistics()
            body = (
                '{"active_connections":%d,"active_subscriptions":%d,'
                '"messages_sent":%d,"messages_received":%d}'
                % (
                    stats["active_connections"],
                    stats["active_subscriptions"],
                    stats["messages_sent"],
                    stats["messages_received"],
                )
            )
            return web.Response(text=body, content_type="application/json")

        app.router.add_get(cfg.metrics.endpoint, statistics)

    return app


def _metrics_app(handler: WebsocketHandler) -> web.Application:
    app = web.Application()

    async def exposition(request: web.Request) -> web.Response:
        return web.Response(text=handler.metrics.render(), content_type="text/plain")

    app.router.add_get("/metrics", exposition)
    return app


async def _start_site(app: web.Application, port: int) -> web.AppRunner:
    runner = web.AppRunner(app, shutdown_timeout=SHUTDOWN_TIMEOUT)
    await runner.setup()
    await web.TCPSite(runner, port=port).start()
    return runner


async def serve(cfg: Config) -> None:
    """Run the service until SIGINT or SIGTERM arrives."""
    delta_client = DeltaWebsocketClient(cfg.delta) if cfg.delta.enabled else None
    handler = WebsocketHandler(cfg, delta_client)
    await handler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_signal() -> None:
        log.info("Received interrupt signal, shutting down...")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, on_signal)

    runners: list[web.AppRunner] = []
    try:
        log.info("Starting Prometheus metrics server on port %d", PROMETHEUS_PORT)
        runners.append(await _start_site(_metrics_app(handler), PROMETHEUS_PORT))
        log.info("Starting HTTP server on port %d", cfg.http_port)
        runners.append(await _start_site(create_app(cfg, handler), cfg.http_port))
        await stop.wait()
    finally:
        log.info("Shutting down HTTP server...")
        await handler.close()
        for runner in reversed(runners):
            await runner.cleanup()
        log.info("Server shutdown complete")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load the configuration and run the service."""
    parser = argparse.ArgumentParser(
        prog="deltarelay",
        description="Relay Delta Exchange market data to websocket clients.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    cfg = load_config(SERVICE_NAME)
    asyncio.run(serve(cfg))
    return 0