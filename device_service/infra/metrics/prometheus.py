"""Prometheus metrics for the realtime gateway and token ledger."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

# Private registry so tests and multiple app instances don't collide on the default one
REGISTRY = CollectorRegistry()

application_info = Info(
    "application",
    "Application build and environment information",
    registry=REGISTRY,
)

# Realtime connection metrics
realtime_connections_total = Gauge(
    "realtime_connections_total",
    "Current number of registered realtime connections",
    ["transport"],
    registry=REGISTRY,
)

realtime_connection_duration_seconds = Histogram(
    "realtime_connection_duration_seconds",
    "Duration of realtime connections in seconds",
    ["transport"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600, 7200),
    registry=REGISTRY,
)

realtime_handshakes_total = Counter(
    "realtime_handshakes_total",
    "Realtime handshakes by transport and outcome",
    ["transport", "outcome"],
    registry=REGISTRY,
)

realtime_messages_received_total = Counter(
    "realtime_messages_received_total",
    "Control messages received from WebSocket clients",
    ["message_type"],
    registry=REGISTRY,
)

realtime_messages_sent_total = Counter(
    "realtime_messages_sent_total",
    "Frames written to realtime clients",
    ["transport", "event"],
    registry=REGISTRY,
)

realtime_force_disconnects_total = Counter(
    "realtime_force_disconnects_total",
    "Connections closed by the server, by reason",
    ["reason"],
    registry=REGISTRY,
)

# Event bus metrics
events_published_total = Counter(
    "events_published_total",
    "Events published to the bus",
    ["kind"],
    registry=REGISTRY,
)

event_fanout_recipients = Histogram(
    "event_fanout_recipients",
    "Number of connections an event was offered to",
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500, 1000),
    registry=REGISTRY,
)

event_delivery_failures_total = Counter(
    "event_delivery_failures_total",
    "Deliveries that failed and dropped the target connection",
    registry=REGISTRY,
)

event_replayed_total = Counter(
    "event_replayed_total",
    "Events replayed to reconnecting clients",
    registry=REGISTRY,
)

# Token ledger metrics
token_operations_total = Counter(
    "token_operations_total",
    "Token ledger operations by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

# Reaper metrics
reaper_runs_total = Counter(
    "reaper_runs_total",
    "Background reaper job runs by job and outcome",
    ["job", "outcome"],
    registry=REGISTRY,
)

reaper_items_removed_total = Counter(
    "reaper_items_removed_total",
    "Expired tokens and idle connections removed by the reaper",
    ["job"],
    registry=REGISTRY,
)

# Rate limiter metrics
rate_limit_checks_total = Counter(
    "rate_limit_checks_total",
    "Rate limit checks by scope and result",
    ["scope", "allowed"],
    registry=REGISTRY,
)
