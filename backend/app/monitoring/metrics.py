"""Metric definitions for the realtime delivery path."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the conversation delivery layer.",
    label_names=("topic", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_subscriptions = registry.gauge(
    "realtime_pubsub_subscriptions",
    "Number of active broker subscriptions.",
    label_names=("topic", "backend"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Number of events that could not be published to the broker.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times the broker connection was re-established.",
    label_names=("backend", "reason"),
)

realtime_handshake_failures_total = registry.counter(
    "realtime_handshake_failures_total",
    "Number of websocket handshakes rejected before accept.",
    label_names=("reason",),
)

realtime_connected_members = registry.gauge(
    "realtime_connected_members",
    "Distinct members with at least one open chat socket on this process.",
)
