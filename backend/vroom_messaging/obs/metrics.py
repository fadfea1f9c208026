"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"vroom_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"vroom_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"vroom_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"vroom_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

MESSAGES_SENT = Counter(
	"vroom_messages_sent_total",
	"Messages persisted",
	["channel"],
)

MESSAGES_PUSHED = Counter(
	"vroom_messages_pushed_total",
	"Message frames pushed over the live channel",
	["target"],
)

MESSAGES_REJECTED = Counter(
	"vroom_messages_rejected_total",
	"Message sends rejected before persistence",
	["channel", "reason"],
)

MESSAGES_READ = Counter(
	"vroom_messages_read_total",
	"Messages flipped to read",
)

CONVERSATIONS_CREATED = Counter(
	"vroom_conversations_created_total",
	"Conversations created",
)

CONVERSATION_CONFLICTS = Counter(
	"vroom_conversation_create_conflicts_total",
	"Conversation inserts that lost a uniqueness race and re-read the existing row",
)

CONNECTIONS_REPLACED = Counter(
	"vroom_connections_replaced_total",
	"Live connections displaced by a newer connection for the same user",
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_message_sent(channel: str) -> None:
	MESSAGES_SENT.labels(channel=channel).inc()


def inc_message_pushed(target: str) -> None:
	MESSAGES_PUSHED.labels(target=target).inc()


def inc_message_rejected(channel: str, reason: str) -> None:
	MESSAGES_REJECTED.labels(channel=channel, reason=reason).inc()


def inc_messages_read(count: int) -> None:
	if count > 0:
		MESSAGES_READ.inc(count)


def inc_conversation_created() -> None:
	CONVERSATIONS_CREATED.inc()


def inc_conversation_conflict() -> None:
	CONVERSATION_CONFLICTS.inc()


def inc_connection_replaced() -> None:
	CONNECTIONS_REPLACED.inc()
