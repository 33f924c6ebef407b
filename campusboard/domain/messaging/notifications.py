"""Unread state and one-shot new message notifications."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from campusboard.obs import metrics as obs_metrics

from .exceptions import BoardError
from .models import Conversation

logger = logging.getLogger(__name__)

VIEW_FEED = "feed"
VIEW_MESSAGES = "messages"


class NotifierState(enum.Enum):
	IDLE = "idle"
	NOTIFYING = "notifying"


@dataclass(frozen=True, slots=True)
class NewMessageNotification:
	conversation_id: str
	sender_name: str
	timestamp: datetime

	@property
	def title(self) -> str:
		return f"New message from {self.sender_name}" if self.sender_name else "New message"


NotificationListener = Callable[[NewMessageNotification], None]


class UnreadNotifier:
	"""Derives the aggregate unread flag and new message notifications.

	Tracks how many conversations were unread on the previous update. When
	that count goes up and the user is not looking at their messages, the
	most recently active unread conversation is announced. Several
	conversations turning unread at once still produce one notification.
	"""

	def __init__(self, synchronizer, *, active_view: str = VIEW_FEED) -> None:
		self._synchronizer = synchronizer
		self._active_view = active_view
		self._previous_count = 0
		self._has_unread = False
		self._state = NotifierState.IDLE
		self._current: Optional[NewMessageNotification] = None
		self._listeners: List[NotificationListener] = []
		self._unsubscribe = synchronizer.subscribe(self.update)

	@property
	def has_unread(self) -> bool:
		return self._has_unread

	@property
	def state(self) -> NotifierState:
		return self._state

	@property
	def current(self) -> Optional[NewMessageNotification]:
		return self._current

	@property
	def active_view(self) -> str:
		return self._active_view

	@property
	def previous_count(self) -> int:
		return self._previous_count

	def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def update(self, conversations: Iterable[Conversation]) -> None:
		unread = [conversation for conversation in conversations if conversation.unread]
		count = len(unread)
		self._has_unread = count > 0
		if count > self._previous_count and self._active_view != VIEW_MESSAGES:
			newest = max(unread, key=lambda conversation: conversation.timestamp)
			self._emit(NewMessageNotification(newest.id, newest.participant, newest.timestamp))
		self._previous_count = count

	def _emit(self, notification: NewMessageNotification) -> None:
		self._current = notification
		self._state = NotifierState.NOTIFYING
		obs_metrics.inc_notification()
		logger.info("notify.new_message", extra={"conversation_id": notification.conversation_id})
		for listener in list(self._listeners):
			try:
				listener(notification)
			except Exception:
				logger.exception("notify.listener_failed")

	def dismiss(self) -> None:
		self._current = None
		self._state = NotifierState.IDLE

	async def set_active_view(self, view: str) -> None:
		if view not in (VIEW_FEED, VIEW_MESSAGES):
			raise ValueError(f"unknown view: {view}")
		self._active_view = view
		if view != VIEW_MESSAGES or self._state is not NotifierState.NOTIFYING:
			return
		notification = self._current
		self.dismiss()
		if notification is None:
			return
		try:
			await self._synchronizer.mark_conversation_as_read(notification.conversation_id)
		except BoardError as exc:
			logger.warning("notify.mark_read_failed", extra={"conversation_id": notification.conversation_id, "reason": exc.reason})

	async def open_messages(self) -> None:
		await self.set_active_view(VIEW_MESSAGES)

	def reset(self) -> None:
		self._previous_count = 0
		self._has_unread = False
		self.dismiss()

	def close(self) -> None:
		self._unsubscribe()
		self._listeners.clear()
