"""Conversation synchronizer: the local inbox mirror for the signed-in user.

The synchronizer is the only writer of the conversation snapshot. Every
mutation goes through it: it applies the optimistic local change, issues the
remote write, and reconciles against the store with a later refresh. Readers
get an immutable tuple and can subscribe to be told when it is replaced.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import ulid

from campusboard.infra.auth import AuthenticatedUser, Session
from campusboard.obs import metrics as obs_metrics
from campusboard.settings import settings

from .exceptions import EmptyMessage, InvalidConversation, RemoteReadError, RemoteWriteError, StoreError
from .models import (
	PLACEHOLDER_PREFIX,
	SELF_LABEL,
	Conversation,
	ConversationKey,
	Message,
	MessageRow,
	find_conversation,
)
from .store import MessagingStore
from .triggers import RefreshTrigger

logger = logging.getLogger(__name__)

Snapshot = Tuple[Conversation, ...]
Listener = Callable[[Snapshot], None]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _snapshot_changed(current: Snapshot, candidate: Snapshot) -> bool:
	# Order follows updated_at, so a touched conversation moving up counts as a change
	if tuple(conversation.id for conversation in current) != tuple(conversation.id for conversation in candidate):
		return True
	for previous, conversation in zip(current, candidate):
		if previous.updated_at != conversation.updated_at or previous.sync_signature() != conversation.sync_signature():
			return True
	return False


class ConversationSynchronizer:
	def __init__(
		self,
		store: MessagingStore,
		session: Session,
		*,
		read_confirm_delay: float | None = None,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._store = store
		self._session = session
		self._read_confirm_delay = (
			settings.read_confirm_delay_seconds if read_confirm_delay is None else read_confirm_delay
		)
		self._clock = clock or _utcnow
		self._conversations: Snapshot = ()
		self._loading = False
		self._listeners: List[Listener] = []
		# Bumped on reset so late results from a previous session are dropped
		self._generation = 0
		self._placeholders: Dict[str, List[Message]] = {}
		self._create_locks: Dict[ConversationKey, asyncio.Lock] = {}
		self._tasks: Set[asyncio.Task] = set()
		self._trigger: RefreshTrigger | None = None

	# -- read side ---------------------------------------------------------

	@property
	def conversations(self) -> Snapshot:
		return self._conversations

	@property
	def loading(self) -> bool:
		return self._loading

	@property
	def has_unread(self) -> bool:
		return any(conversation.unread for conversation in self._conversations)

	def find_conversation(self, conversation_id: str) -> Optional[Conversation]:
		return find_conversation(self._conversations, conversation_id)

	def find_by_participant(self, username: str) -> Optional[Conversation]:
		for conversation in self._conversations:
			if conversation.participant == username:
				return conversation
		return None

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def _publish(self, conversations: Snapshot) -> None:
		self._conversations = conversations
		for listener in list(self._listeners):
			try:
				listener(conversations)
			except Exception:
				logger.exception("sync.listener_failed")

	# -- reconciliation ----------------------------------------------------

	async def refresh(self, is_initial_load: bool = False) -> None:
		"""Fetch the user's conversations and reconcile the local snapshot.

		An initial load replaces the snapshot unconditionally and flips the
		loading flag for its duration. A background refresh only replaces it
		when some conversation's message count, unread flag or last message
		time differs, so no-op polls leave the snapshot object untouched.
		Read failures are logged and the last good snapshot is kept.
		"""
		kind = "initial" if is_initial_load else "background"
		generation = self._generation
		user = self._session.get_current_user()
		if user is None:
			if self._conversations:
				self._publish(())
			return

		if is_initial_load:
			self._loading = True
		started = time.perf_counter()
		try:
			candidate = await self._load(user)
		except RemoteReadError as exc:
			obs_metrics.record_refresh(kind, result="error")
			logger.warning("sync.refresh_failed", extra={"kind": kind, "reason": exc.reason}, exc_info=True)
			return
		finally:
			if is_initial_load and generation == self._generation:
				self._loading = False

		duration = time.perf_counter() - started
		if generation != self._generation:
			obs_metrics.record_refresh(kind, result="stale", duration_seconds=duration)
			logger.debug("sync.refresh_stale", extra={"kind": kind})
			return
		if is_initial_load or _snapshot_changed(self._conversations, candidate):
			obs_metrics.record_refresh(kind, result="updated", duration_seconds=duration)
			self._publish(candidate)
		else:
			obs_metrics.record_refresh(kind, result="unchanged", duration_seconds=duration)

	async def _load(self, user: AuthenticatedUser) -> Snapshot:
		try:
			rows = await self._store.list_conversations(user.id)
			results = await asyncio.gather(
				*(self._store.list_messages(row.id) for row in rows),
				return_exceptions=True,
			)
			for result in results:
				if isinstance(result, BaseException):
					raise result
			message_rows: List[List[MessageRow]] = list(results)
			wanted: Set[str] = {row.other_participant(user.id) for row in rows}
			for batch in message_rows:
				wanted.update(message.sender_id for message in batch)
			wanted.discard(user.id)
			usernames = await self._store.lookup_usernames(wanted) if wanted else {}
		except StoreError as exc:
			raise RemoteReadError(exc.reason) from exc

		conversations: List[Conversation] = []
		for row, batch in zip(rows, message_rows):
			messages = [Message.from_row(item, current_user_id=user.id, usernames=usernames) for item in batch]
			messages.sort(key=lambda message: (message.created_at, message.id))
			# In-flight sends stay visible until the store returns the confirmed row
			messages.extend(self._placeholders.get(row.id, ()))
			conversations.append(Conversation.build(row, messages, current_user_id=user.id, usernames=usernames))
		return tuple(conversations)

	def _swap_conversation(self, updated: Conversation) -> None:
		current = self._conversations
		if find_conversation(current, updated.id) is None:
			return
		self._publish(tuple(updated if conversation.id == updated.id else conversation for conversation in current))

	def _rewrite_messages(self, conversation_id: str, user_id: str, rewrite: Callable[[Iterable[Message]], Iterable[Message]]) -> None:
		conversation = self.find_conversation(conversation_id)
		if conversation is None:
			return
		self._swap_conversation(conversation.with_messages(rewrite(conversation.messages), current_user_id=user_id))

	# -- mutations ---------------------------------------------------------

	async def get_or_create_conversation(self, other_user_id: str) -> str:
		"""Return the id of the conversation with ``other_user_id``, creating it if needed.

		Calls for the same pair are serialised within this client. Across
		clients the lookup-then-insert can still race unless the store enforces
		a unique participant pair.
		"""
		user = self._session.require_user()
		other_user_id = str(other_user_id)
		if other_user_id == user.id:
			raise InvalidConversation("cannot_message_self")

		key = ConversationKey.from_participants(user.id, other_user_id)
		lock = self._create_locks.setdefault(key, asyncio.Lock())
		async with lock:
			try:
				existing = await self._store.find_conversation(user.id, other_user_id)
			except StoreError as exc:
				raise RemoteReadError(exc.reason) from exc
			if existing is not None:
				return existing.id
			try:
				created = await self._store.insert_conversation(user.id, other_user_id)
			except StoreError as exc:
				logger.warning("sync.conversation_create_failed", extra={"peer_id": other_user_id, "reason": exc.reason})
				raise RemoteWriteError(exc.reason) from exc
		obs_metrics.inc_conversation_created()
		logger.info("sync.conversation_created", extra={"conversation_id": created.id, "peer_id": other_user_id})
		return created.id

	async def send_message(self, conversation_id: str, content: str) -> Message:
		"""Append a message authored by the current user.

		A pending placeholder is shown immediately and removed again if the
		insert fails. The conversation touch that follows a successful insert
		is not atomic with it; a failed touch is only logged.
		"""
		user = self._session.require_user()
		text = (content or "").strip()
		if not text:
			raise EmptyMessage()

		generation = self._generation
		placeholder = Message(
			id=f"{PLACEHOLDER_PREFIX}{ulid.new()}",
			conversation_id=conversation_id,
			sender_id=user.id,
			content=text,
			created_at=self._clock(),
			read=False,
			sender_name=SELF_LABEL,
			pending=True,
		)
		self._placeholders.setdefault(conversation_id, []).append(placeholder)
		self._rewrite_messages(conversation_id, user.id, lambda messages: [*messages, placeholder])

		try:
			row = await self._store.insert_message(conversation_id, user.id, text)
		except StoreError as exc:
			self._drop_placeholder(placeholder, user.id, generation)
			obs_metrics.inc_chat_send("error")
			logger.warning("sync.send_failed", extra={"conversation_id": conversation_id, "reason": exc.reason})
			raise RemoteWriteError(exc.reason) from exc
		obs_metrics.inc_chat_send("ok")
		confirmed = Message.from_row(row, current_user_id=user.id, usernames={})
		self._drop_placeholder(placeholder, user.id, generation, confirmed=confirmed)

		try:
			await self._store.touch_conversation(conversation_id, self._clock())
		except StoreError as exc:
			logger.warning("sync.touch_failed", extra={"conversation_id": conversation_id, "reason": exc.reason})

		if generation == self._generation:
			await self.refresh(False)
		return confirmed

	def _drop_placeholder(
		self,
		placeholder: Message,
		user_id: str,
		generation: int,
		*,
		confirmed: Message | None = None,
	) -> None:
		pending = self._placeholders.get(placeholder.conversation_id)
		if pending and placeholder in pending:
			pending.remove(placeholder)
			if not pending:
				self._placeholders.pop(placeholder.conversation_id, None)
		if generation != self._generation:
			return

		def _rewrite(messages: Iterable[Message]) -> List[Message]:
			result: List[Message] = []
			for message in messages:
				if message.id != placeholder.id:
					result.append(message)
				elif confirmed is not None:
					result.append(confirmed)
			return result

		self._rewrite_messages(placeholder.conversation_id, user_id, _rewrite)

	async def mark_conversation_as_read(self, conversation_id: str) -> None:
		"""Mark the other participant's unread messages in a conversation as read.

		The local snapshot is updated first. If the remote update fails the
		conversation is restored, a full refresh is forced and RemoteWriteError
		is raised. On success a confirmatory refresh runs after a short delay,
		giving the store time to make the update visible to reads. With nothing
		unread this is a no-op.
		"""
		user = self._session.require_user()
		generation = self._generation
		before = self.find_conversation(conversation_id)
		if before is None or before.unread_count(user.id) == 0:
			logger.debug("sync.mark_read_noop", extra={"conversation_id": conversation_id})
			return

		self._swap_conversation(
			before.with_messages(
				[replace(message, read=True) if message.is_unread_for(user.id) else message for message in before.messages],
				current_user_id=user.id,
			)
		)

		try:
			updated = await self._store.bulk_mark_read(conversation_id, user.id)
		except StoreError as exc:
			obs_metrics.inc_chat_read("error")
			logger.warning("sync.mark_read_failed", extra={"conversation_id": conversation_id, "reason": exc.reason})
			if generation == self._generation:
				self._swap_conversation(before)
				await self.refresh(False)
			raise RemoteWriteError(exc.reason) from exc

		obs_metrics.inc_chat_read("ok")
		logger.debug("sync.mark_read", extra={"conversation_id": conversation_id, "updated": updated})
		self._schedule(self._confirm_after(self._read_confirm_delay, generation), name=f"read-confirm:{conversation_id}")

	async def open_conversation_with(self, username: str) -> Optional[str]:
		"""Resolve ``username`` and return the conversation with them, creating it if needed.

		Returns None for the user's own name or an unknown username.
		"""
		user = self._session.require_user()
		if user.username and username == user.username:
			logger.warning("sync.open_self_refused")
			return None
		existing = self.find_by_participant(username)
		if existing is not None:
			return existing.id
		try:
			other_user_id = await self._store.find_user_id(username)
		except StoreError as exc:
			raise RemoteReadError(exc.reason) from exc
		if other_user_id is None or other_user_id == user.id:
			logger.info("sync.open_user_not_found")
			return None
		conversation_id = await self.get_or_create_conversation(other_user_id)
		await self.refresh(False)
		return conversation_id

	# -- scheduling and lifecycle -----------------------------------------

	def _schedule(self, coro, *, name: str) -> asyncio.Task:
		task = asyncio.create_task(coro, name=name)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return task

	async def _confirm_after(self, delay: float, generation: int) -> None:
		await asyncio.sleep(delay)
		if generation != self._generation:
			return
		try:
			await self.refresh(False)
		except Exception:
			logger.exception("sync.confirm_refresh_failed")

	async def wait_idle(self) -> None:
		"""Wait for scheduled confirmation refreshes to finish."""
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def start(self, trigger: RefreshTrigger | None = None) -> None:
		"""Initial load for the current session, then hand control to the trigger."""
		await self.refresh(True)
		if trigger is not None:
			self._trigger = trigger
			await trigger.start(lambda: self.refresh(False))

	def reset(self) -> None:
		"""Drop all per-session state (logout, or before loading a new session)."""
		self._generation += 1
		for task in list(self._tasks):
			task.cancel()
		self._placeholders.clear()
		self._create_locks.clear()
		self._loading = False
		if self._conversations:
			self._publish(())

	async def close(self) -> None:
		trigger, self._trigger = self._trigger, None
		if trigger is not None:
			await trigger.stop()
		tasks = list(self._tasks)
		self.reset()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
