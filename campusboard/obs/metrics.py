"""Prometheus metrics for inbox synchronization."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


SYNC_REFRESH_RUNS = Counter(
	"campusboard_sync_refresh_total",
	"Conversation refreshes by outcome",
	["kind", "result"],
)

SYNC_REFRESH_DURATION = Histogram(
	"campusboard_sync_refresh_duration_seconds",
	"Duration of conversation refreshes",
	["kind"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CHAT_SEND = Counter(
	"campusboard_chat_send_total",
	"Direct messages sent by outcome",
	["result"],
)

CHAT_READ_UPDATES = Counter(
	"campusboard_chat_read_updates_total",
	"Mark-as-read operations by outcome",
	["result"],
)

CONVERSATIONS_CREATED = Counter(
	"campusboard_conversations_created_total",
	"Conversations created by this client",
)

NOTIFICATIONS_EMITTED = Counter(
	"campusboard_notifications_emitted_total",
	"New message notifications emitted",
)

POSTS_CREATED = Counter(
	"campusboard_posts_created_total",
	"Bulletin posts created",
	["category"],
)


def record_refresh(kind: str, *, result: str, duration_seconds: float | None = None) -> None:
	SYNC_REFRESH_RUNS.labels(kind=kind, result=result).inc()
	if duration_seconds is not None:
		SYNC_REFRESH_DURATION.labels(kind=kind).observe(duration_seconds)


def inc_chat_send(result: str) -> None:
	CHAT_SEND.labels(result=result).inc()


def inc_chat_read(result: str) -> None:
	CHAT_READ_UPDATES.labels(result=result).inc()


def inc_conversation_created() -> None:
	CONVERSATIONS_CREATED.inc()


def inc_notification() -> None:
	NOTIFICATIONS_EMITTED.inc()


def inc_post_created(category: str) -> None:
	POSTS_CREATED.labels(category=category).inc()
