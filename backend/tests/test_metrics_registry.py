from __future__ import annotations

import pytest

from app.monitoring.registry import MetricsRegistry


def test_render_lists_metrics_by_name_with_sorted_series():
    metrics = MetricsRegistry()
    events = metrics.counter("events_total", "Events seen.", label_names=("topic", "action"))
    members = metrics.gauge("connected_members", "Members online.")

    events.labels("conversations", "typing").inc()
    events.labels("conversations", "message").inc(2)
    members.set(3)

    assert metrics.render().splitlines() == [
        "# HELP connected_members Members online.",
        "# TYPE connected_members gauge",
        "connected_members 3",
        "# HELP events_total Events seen.",
        "# TYPE events_total counter",
        'events_total{topic="conversations",action="message"} 2',
        'events_total{topic="conversations",action="typing"} 1',
    ]


def test_untouched_metric_renders_a_zero_sample():
    metrics = MetricsRegistry()
    metrics.counter("restarts_total", "Restarts.", label_names=("reason",))

    assert metrics.render().splitlines()[-1] == "restarts_total 0"


def test_label_values_are_escaped_and_fractions_trimmed():
    metrics = MetricsRegistry()
    latency = metrics.gauge("latency_seconds", "Latency.", label_names=("route",))

    latency.labels('say "hi"\n').set(0.25)

    assert 'latency_seconds{route="say \\"hi\\"\\n"} 0.25' in metrics.render()


def test_gauge_series_move_both_ways_and_clear():
    metrics = MetricsRegistry()
    connections = metrics.gauge("connections", "Sockets.", label_names=("scope",))

    connections.labels("chat").inc()
    connections.labels("chat").inc()
    connections.labels("chat").dec()

    assert connections.value("chat") == 1.0
    assert connections.value("other") == 0.0
    connections.clear()
    assert connections.value("chat") == 0.0


def test_misuse_is_rejected():
    metrics = MetricsRegistry()
    failures = metrics.counter("failures_total", "Failures.", label_names=("reason",))

    with pytest.raises(ValueError):
        failures.labels()
    with pytest.raises(ValueError):
        failures.labels("timeout").inc(-1)
    with pytest.raises(TypeError):
        failures.labels("timeout").dec()
    with pytest.raises(ValueError):
        metrics.gauge("failures_total", "Duplicate name.")
