from deltarelay.config import Config, Delta, SecuritySettings, load_config


def test_load_config_service_values():
    cfg = load_config("websocket-service")
    assert cfg.service_name == "websocket-service"
    assert cfg.environment == "local"
    assert cfg.log_level == "info"
    assert cfg.http_port == 8083
    assert cfg.grpc_port == 9093


def test_load_config_delta_defaults():
    delta = load_config("svc").delta
    assert delta.enabled is True
    assert delta.url == "wss://socket.india.delta.exchange"
    assert delta.channels == ["v2/ticker"]
    assert delta.product_ids == ["BTCUSD"]
    assert delta.reconnect_max == 5


def test_load_config_leaves_other_sections_at_zero_values():
    cfg = load_config("svc")
    assert cfg.metrics.enabled is False
    assert cfg.metrics.endpoint == ""
    assert cfg.websocket.check_origin is False
    assert cfg.websocket.max_message_size == 0
    assert cfg.websocket.auth.required is False
    assert cfg.security.cors_allowed_origins == ""


def test_load_config_returns_independent_lists():
    first = load_config("a")
    second = load_config("b")
    first.delta.channels.append("funding_rate")
    assert second.delta.channels == ["v2/ticker"]


def test_cors_origins_default_to_wildcard():
    assert load_config("svc").cors_allowed_origins() == ["*"]


def test_cors_origins_are_split_on_commas():
    origins = "https://a.example.com,https://b.example.com"
    cfg = Config(security=SecuritySettings(cors_allowed_origins=origins))
    result = cfg.cors_allowed_origins()
    assert result == ["https://a.example.com", "https://b.example.com"]
    assert ",".join(result) == origins


def test_cors_origins_keep_empty_entries():
    cfg = Config(security=SecuritySettings(cors_allowed_origins="x,,y"))
    assert cfg.cors_allowed_origins() == ["x", "", "y"]


def test_delta_defaults_are_empty():
    delta = Delta()
    assert delta.enabled is False
    assert delta.channels == []
    assert delta.product_ids == []