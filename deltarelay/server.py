"""Service API for subscriptions, connection status, broadcasting and statistics."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .config import Config
from .handler import WebsocketHandler

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _subscription_id(channel: str) -> str:
    return f"{channel}-{time.time_ns()}"


@dataclass
class SubscribeResponse:
    """Result of a subscription request."""

    subscription_id: str
    channel: str
    product_ids: list[str]
    created_at: datetime


@dataclass
class Subscription:
    """One channel with the number of clients subscribed to it."""

    subscription_id: str
    channel: str
    client_count: int
    created_at: datetime


@dataclass
class SubscriptionStatusResponse:
    """The channels that currently have subscribers."""

    subscriptions: list[Subscription] = field(default_factory=list)


@dataclass
class ConnectionStatus:
    """State of the connection to one external source."""

    connected: bool
    connected_at: Optional[datetime] = None
    reconnect_attempts: int = 0
    last_error: str = ""
    last_error_at: Optional[datetime] = None


@dataclass
class ConnectionStatusResponse:
    """Connection state of every external source, keyed by source name."""

    connections: dict[str, ConnectionStatus] = field(default_factory=dict)


@dataclass
class StatisticsResponse:
    """Counts of connections, subscriptions and messages."""

    active_connections: int
    active_subscriptions: int
    messages_sent: int
    messages_received: int
    subscriptions_by_channel: dict[str, int] = field(default_factory=dict)
    external_sources: dict[str, bool] = field(default_factory=dict)


class Server:
    """Operations of the websocket service, answered from the websocket handler."""

    def __init__(self, cfg: Config, handler: WebsocketHandler) -> None:
        self.config = cfg
        self.handler = handler

    def subscribe(self, channel: str, product_ids: Sequence[str]) -> SubscribeResponse:
        """Hand out a subscription id for ``channel``."""
        log.info(
            "Subscribe request received for channel %s with product IDs %s",
            channel,
            list(product_ids),
        )
        return SubscribeResponse(
            subscription_id=_subscription_id(channel),
            channel=channel,
            product_ids=list(product_ids),
            created_at=_now(),
        )

    def unsubscribe(self, subscription_id: str) -> None:
        """Acknowledge the end of a subscription."""
        log.info("Unsubscribe request received for subscription ID %s", subscription_id)

    def get_subscription_status(
        self, subscription_id: str, channel: str
    ) -> SubscriptionStatusResponse:
        """List every channel that has subscribers, with its client count."""
        log.info(
            "GetSubscriptionStatus request received for subscription ID %s and channel %s",
            subscription_id,
            channel,
        )
        by_channel = self.handler.statistics()["subscriptions_by_channel"]
        return SubscriptionStatusResponse(
            subscriptions=[
                Subscription(
                    subscription_id=_subscription_id(name),
                    channel=name,
                    client_count=count,
                    created_at=_now(),
                )
                for name, count in by_channel.items()
            ]
        )

    def get_connection_status(self) -> ConnectionStatusResponse:
        """Report the state of the feed connection when the feed is enabled."""
        log.info("GetConnectionStatus request received")
        connections: dict[str, ConnectionStatus] = {}
        if self.config.delta.enabled:
            status = self.handler.delta_connection_status()
            last_error = status.get("last_error")
            connections["delta"] = ConnectionStatus(
                connected=bool(status["connected"]),
                connected_at=status.get("connected_at"),
                reconnect_attempts=status.get("reconnect_count", 0),
                last_error=last_error if isinstance(last_error, str) else "",
                last_error_at=status.get("last_error_at"),
            )
        return ConnectionStatusResponse(connections=connections)

    def broadcast(self, channel: str, message: bytes, product_ids: Sequence[int]) -> None:
        """Send ``message`` to the subscribers of ``channel`` for the first product id."""
        log.info(
            "Broadcast request received for channel %s with %d bytes", channel, len(message)
        )
        ids = [str(product_id) for product_id in product_ids]
        if not ids:
            raise ValueError("broadcast needs at least one product id")
        self.handler.broadcast_to_channel(channel, message, ids[0])

    def get_statistics(self) -> StatisticsResponse:
        """Statistics of the websocket handler."""
        log.info("GetStatistics request received")
        stats = self.handler.statistics()
        return StatisticsResponse(
            active_connections=stats["active_connections"],
            active_subscriptions=stats["active_subscriptions"],
            messages_sent=stats["messages_sent"],
            messages_received=stats["messages_received"],
            subscriptions_by_channel=dict(stats["subscriptions_by_channel"]),
            external_sources=dict(stats["external_sources"]),
        )