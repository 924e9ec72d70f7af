# deltarelay

deltarelay keeps one connection open to the Delta Exchange websocket feed and passes its market data on to its own websocket clients. Each client chooses channels and can limit each channel to certain symbols. The service counts connections, subscriptions and messages. You can read these counts over HTTP, from a Prometheus-style text endpoint, and through a small Python API.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running

```
deltarelay
```

The command takes no options other than `--help`. It runs the service with the configuration returned by `deltarelay.config.load_config`. With that configuration the service:

- serves HTTP on port 8083;
- serves the metric exposition at `/metrics` on port 9090;
- connects to `wss://socket.india.delta.exchange` and subscribes to `v2/ticker` for `BTCUSD`;
- accepts websocket connections from any origin, because `websocket.check_origin` is off.

If the feed connection drops, the client waits 5 seconds and reconnects. It gives up after `delta.reconnect_max` attempts (5) without a successful connection. If the first connection fails, the service keeps running without the feed.

SIGINT or SIGTERM (Ctrl+C) closes all client connections and the feed connection, then stops both HTTP servers.

### HTTP endpoints

On the main port (`Config.http_port`):

- `GET /ws` is the websocket endpoint for clients. When `websocket.check_origin` is on, an `Origin` that is not in `security.cors_allowed_origins` gets a 403. That setting is comma-separated, and empty means `*`.
- `GET /health` returns `OK`.
- `GET <Config.metrics.endpoint>` exists only when `metrics.enabled` is true. It is off in the default configuration. It returns a JSON object with `active_connections`, `active_subscriptions`, `messages_sent` and `messages_received`.

On port 9090:

- `GET /metrics` returns the handler's counters and gauges in text exposition format:
  - `websocket_messages_sent_total`
  - `websocket_messages_received_total`
  - `websocket_active_connections`
  - `websocket_active_subscriptions`
  - `websocket_errors_total`

## Client protocol

Clients send JSON text frames.

Subscribe:

```json
{"type": "subscribe",
 "payload": {"channels": [{"name": "v2/ticker", "symbols": ["BTCUSD"]}]}}
```

For each channel, the service routes that channel from the feed, sends a subscription for it upstream, and replies with `{"type": "subscribed", "payload": {"channels": [...]}}`. In the reply, a channel with no symbols shows `"symbols": null`. Numeric symbols are turned into strings.

A client receives a message for a channel when its symbol list is empty, contains `"all"`, or contains the message's `symbol` (or `s`).

Unsubscribe:

```json
{"type": "unsubscribe", "payload": {"channels": [{"name": "v2/ticker"}]}}
```

The service replies with one `{"type": "unsubscribed", "channel": ...}` for each channel.

Ping: send `{"type": "ping"}`. The reply is `{"type": "pong", "time": <milliseconds since the epoch>}`.

Message types other than these are counted as errors.

The service reshapes messages on these channels before sending them:

- `v2/spot_price` becomes `s`, `p`, `type`, and `timestamp` (added when missing).
- `spot_30mtwap_price` becomes `symbol`, `price`, `type`, `timestamp`.
- `funding_rate` becomes `symbol`, `product_id`, `type`, `funding_rate`, `funding_rate_8h`, `next_funding_realization`, `predicted_funding_rate`, `timestamp`.

For the last two channels, a missing timestamp is set to the current time in milliseconds. Messages on all other channels are sent unchanged.

When several messages are waiting for a client, they go out as one frame, separated by newlines. A client that sends nothing for 60 seconds is disconnected. An idle connection gets a websocket ping every 30 seconds. If a client's outgoing queue is full (1024 messages), that client is unregistered.

## Using it as a library

```python
import asyncio

from deltarelay.app import serve
from deltarelay.config import load_config

cfg = load_config("my-relay")
cfg.http_port = 8090
cfg.metrics.enabled = True
cfg.metrics.endpoint = "/stats"
asyncio.run(serve(cfg))
```

The main pieces are:

- `deltarelay.config`: `Config` and its parts (`Delta`, `WebsocketSettings`, `WebsocketAuth`, `SecuritySettings`, `MetricsSettings`), and `load_config(service_name)`.
- `deltarelay.delta_client.DeltaWebsocketClient`: the feed client. It has `connect`, `subscribe`, `unsubscribe`, `register_handler`, `close`, `is_connected` and `connection_status`, and raises `DeltaError` on failure.
- `deltarelay.handler.WebsocketHandler`: client registration, subscriptions, `broadcast_to_channel`, `statistics` and `delta_connection_status`.
- `deltarelay.server.Server`: `subscribe`, `unsubscribe`, `get_subscription_status`, `get_connection_status`, `broadcast` and `get_statistics`. These return plain dataclasses.
- `deltarelay.transform`: the message reshaping functions.
- `deltarelay.metrics`: the labelled counters and gauges.
- `deltarelay.app`: `create_app`, `serve` and `main`.

## What it does not do

- `Server` is a Python API only. The package serves it over no network protocol, and `Config.grpc_port` is not used.
- `Server.subscribe` and `Server.unsubscribe` only hand out and acknowledge ids; they change no subscriptions.
- `load_config` returns built-in defaults and reads no configuration file or environment.
- The `websocket.auth`, `security.cors_enabled` and rate-limit settings are kept in the configuration but not enforced.
- When the last client leaves a channel, the upstream subscription for that channel stays in place.