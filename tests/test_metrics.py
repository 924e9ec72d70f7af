import pytest

from deltarelay.metrics import HandlerMetrics, LabeledCounter, LabeledGauge


def test_counter_counts_per_label_set():
    counter = LabeledCounter("hits", "Hits", ("channel",))
    counter.inc("a")
    counter.inc("a")
    counter.inc("b")
    assert counter.value("a") == 2
    assert counter.value("b") == 1
    assert counter.value("c") == 0


def test_counter_rejects_wrong_label_count():
    counter = LabeledCounter("hits", "Hits", ("channel", "product_id"))
    with pytest.raises(ValueError):
        counter.inc("only-one")
    with pytest.raises(ValueError):
        counter.value("a", "b", "c")


def test_gauge_set_and_inc():
    gauge = LabeledGauge("subs", "Subs", ("channel",))
    gauge.set(5, "x")
    gauge.inc("x")
    gauge.inc("y")
    assert gauge.value("x") == 6
    assert gauge.value("y") == 1


def test_gauge_without_labels():
    gauge = LabeledGauge("conns", "Conns")
    gauge.set(3)
    assert gauge.value() == 3
    with pytest.raises(ValueError):
        gauge.set(1, "extra")


def test_render_empty_metrics_is_empty():
    assert HandlerMetrics().render() == ""


def test_render_includes_help_type_and_samples():
    metrics = HandlerMetrics()
    metrics.messages_sent_total.inc("v2/ticker", "BTCUSD")
    metrics.active_connections.set(3)
    text = metrics.render()
    lines = text.splitlines()
    assert "# HELP websocket_messages_sent_total Total number of messages sent to clients" in lines
    assert "# TYPE websocket_messages_sent_total counter" in lines
    assert 'websocket_messages_sent_total{channel="v2/ticker",product_id="BTCUSD"} 1' in lines
    assert "# TYPE websocket_active_connections gauge" in lines
    assert "websocket_active_connections 3" in lines
    assert not any(line.startswith("websocket_errors_total") for line in lines)


def test_render_escapes_label_values():
    metrics = HandlerMetrics()
    metrics.errors_total.inc('bad"\\')
    assert 'websocket_errors_total{error_type="bad\\"\\\\"} 1' in metrics.render().splitlines()


def test_render_is_sorted_by_labels():
    metrics = HandlerMetrics()
    metrics.active_subscriptions.set(1, "zeta")
    metrics.active_subscriptions.set(2, "alpha")
    samples = [
        line
        for line in metrics.render().splitlines()
        if line.startswith("websocket_active_subscriptions{")
    ]
    assert samples == [
        'websocket_active_subscriptions{channel="alpha"} 2',
        'websocket_active_subscriptions{channel="zeta"} 1',
    ]