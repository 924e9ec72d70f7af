"""Service configuration and its defaults."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

DEFAULT_DELTA_URL = "wss://socket.india.delta.exchange"


@dataclass
class Delta:
    """Settings for the upstream Delta Exchange websocket feed."""

    enabled: bool = False
    url: str = ""
    channels: list[str] = field(default_factory=list)
    product_ids: list[str] = field(default_factory=list)
    reconnect_max: int = 0


@dataclass
class WebsocketAuth:
    """Authentication settings for client websocket connections."""

    required: bool = False
    secret: str = ""


@dataclass
class WebsocketSettings:
    """Settings for the client-facing websocket endpoint."""

    read_buffer_size: int = 0
    write_buffer_size: int = 0
    max_message_size: int = 0
    check_origin: bool = False
    auth: WebsocketAuth = field(default_factory=WebsocketAuth)


@dataclass
class SecuritySettings:
    """CORS and rate limiting settings."""

    cors_enabled: bool = False
    cors_allowed_origins: str = ""
    rate_limit_enabled: bool = False
    rate_limit_requests: int = 0
    rate_limit_duration: int = 0


@dataclass
class MetricsSettings:
    """Settings for the JSON statistics endpoint."""

    enabled: bool = False
    endpoint: str = ""


@dataclass
class Config:
    """Complete configuration of the websocket service."""

    service_name: str = ""
    environment: str = ""
    log_level: str = ""
    http_port: int = 0
    grpc_port: int = 0
    websocket: WebsocketSettings = field(default_factory=WebsocketSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    delta: Delta = field(default_factory=Delta)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)

    def cors_allowed_origins(self) -> list[str]:
        """Return the allowed CORS origins; an empty setting allows every origin."""
        origins = self.security.cors_allowed_origins
        if not origins:
            return ["*"]
        return origins.split(",")


def load_config(service_name: str) -> Config:
    """Build the configuration for ``service_name`` with the service defaults."""
    config = Config(
        service_name=service_name,
        environment="local",
        log_level="info",
        http_port=8083,
        grpc_port=9093,
        delta=Delta(
            enabled=True,
            url=DEFAULT_DELTA_URL,
            channels=["v2/ticker"],
            product_ids=["BTCUSD"],
            reconnect_max=5,
        ),
    )
    log.info(
        "Loaded configuration for %s in %s environment",
        config.service_name,
        config.environment,
    )
    return config