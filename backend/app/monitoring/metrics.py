"""Metric definitions for the realtime layer and the HTTP API."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the websocket managers.",
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
    "Number of failed attempts to publish realtime events to the broker.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of broker transport recoveries.",
    label_names=("backend", "reason"),
)

typing_expired_total = registry.counter(
    "typing_expired_total",
    "Typing assertions expired by the server because no refresh arrived.",
)

messages_sent_total = registry.counter(
    "messages_sent_total",
    "Messages accepted by the backend, by message type.",
    label_names=("type",),
)

uploads_total = registry.counter(
    "uploads_total",
    "Upload attempts by gateway backend and outcome.",
    label_names=("backend", "outcome"),
)
