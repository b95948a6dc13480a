"""
Prometheus metrics for the relay.

Tracks WebSocket connections, inbound frames, outbound sends and presence
state.
"""
from prometheus_client import Counter, Gauge, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# WebSocket connection metrics
relay_connections_active = Gauge(
    "relay_connections_active",
    "Number of open WebSocket connections",
    registry=registry
)

relay_connections_total = Counter(
    "relay_connections_total",
    "Total number of WebSocket connections accepted",
    registry=registry
)

relay_disconnections_total = Counter(
    "relay_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["reason"],
    registry=registry
)

# Frame metrics
relay_events_received_total = Counter(
    "relay_events_received_total",
    "Total number of inbound frames accepted for dispatch",
    labelnames=["action"],
    registry=registry
)

relay_events_dropped_total = Counter(
    "relay_events_dropped_total",
    "Total number of inbound frames dropped before dispatch",
    labelnames=["reason"],
    registry=registry
)

relay_messages_sent_total = Counter(
    "relay_messages_sent_total",
    "Total number of frames sent via WebSocket",
    labelnames=["type"],
    registry=registry
)

# Business metrics
relay_private_messages_total = Counter(
    "relay_private_messages_total",
    "Total number of private messages archived",
    labelnames=["delivery"],
    registry=registry
)

relay_users_online = Gauge(
    "relay_users_online",
    "Number of registered profiles not marked offline",
    registry=registry
)

relay_conversations = Gauge(
    "relay_conversations",
    "Number of conversation histories held in memory",
    registry=registry
)

relay_history_messages = Gauge(
    "relay_history_messages",
    "Number of message records held in memory",
    registry=registry
)


def update_relay_metrics(hub):
    """
    Refresh presence and history gauges from hub state.

    Args:
        hub: RelayHub instance
    """
    relay_connections_active.set(hub.connections.get_connection_count())
    relay_users_online.set(hub.engine.registry.online_count())
    relay_conversations.set(hub.engine.history.conversation_count())
    relay_history_messages.set(hub.engine.history.message_count())
