"""Store contract for conversations and messages, plus an in-memory implementation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

import ulid

from .exceptions import StoreError
from .models import ConversationKey, ConversationRow, MessageRow


class MessagingStore(Protocol):
	async def list_conversations(self, for_user: str) -> List[ConversationRow]:
		...

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[ConversationRow]:
		...

	async def insert_conversation(self, user_a: str, user_b: str) -> ConversationRow:
		...

	async def touch_conversation(self, conversation_id: str, now: datetime) -> None:
		...

	async def list_messages(self, conversation_id: str) -> List[MessageRow]:
		...

	async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> MessageRow:
		...

	async def bulk_mark_read(self, conversation_id: str, excluding_sender: str) -> int:
		...

	async def lookup_username(self, user_id: str) -> Optional[str]:
		...

	async def lookup_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
		...

	async def find_user_id(self, username: str) -> Optional[str]:
		...


class InMemoryMessagingStore:
	"""Process-local store used in tests and offline runs.

	Mirrors the hosted schema closely enough to exercise the synchronizer:
	server-assigned ids and timestamps, no uniqueness constraint on the
	participant pair, and reads that see writes immediately.
	"""

	def __init__(self, *, clock=None) -> None:
		self._lock = asyncio.Lock()
		self._clock = clock or (lambda: datetime.now(timezone.utc))
		self._conversations: Dict[str, ConversationRow] = {}
		self._messages: Dict[str, List[MessageRow]] = {}
		self._profiles: Dict[str, str] = {}
		self._last_ts: datetime | None = None

	def _now(self) -> datetime:
		# Strictly increasing so creation order is total even on coarse clocks
		now = self._clock()
		if self._last_ts is not None and now <= self._last_ts:
			now = self._last_ts + timedelta(microseconds=1)
		self._last_ts = now
		return now

	def add_profile(self, user_id: str, username: str) -> None:
		self._profiles[str(user_id)] = username

	@property
	def profiles(self) -> Mapping[str, str]:
		return dict(self._profiles)

	async def list_conversations(self, for_user: str) -> List[ConversationRow]:
		async with self._lock:
			rows = [row for row in self._conversations.values() if for_user in (row.user1_id, row.user2_id)]
			rows.sort(key=lambda row: row.updated_at, reverse=True)
			return rows

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[ConversationRow]:
		key = ConversationKey.from_participants(user_a, user_b)
		async with self._lock:
			for row in self._conversations.values():
				if row.key == key:
					return row
			return None

	async def insert_conversation(self, user_a: str, user_b: str) -> ConversationRow:
		async with self._lock:
			now = self._now()
			row = ConversationRow(id=str(ulid.new()), user1_id=user_a, user2_id=user_b, created_at=now, updated_at=now)
			self._conversations[row.id] = row
			self._messages[row.id] = []
			return row

	async def touch_conversation(self, conversation_id: str, now: datetime) -> None:
		async with self._lock:
			row = self._conversations.get(conversation_id)
			if row is None:
				raise StoreError("conversation_not_found")
			self._conversations[conversation_id] = ConversationRow(
				id=row.id,
				user1_id=row.user1_id,
				user2_id=row.user2_id,
				created_at=row.created_at,
				updated_at=now,
			)

	async def list_messages(self, conversation_id: str) -> List[MessageRow]:
		async with self._lock:
			messages = list(self._messages.get(conversation_id, []))
			messages.sort(key=lambda m: (m.created_at, m.id))
			return messages

	async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> MessageRow:
		async with self._lock:
			if conversation_id not in self._conversations:
				raise StoreError("conversation_not_found")
			row = MessageRow(
				id=str(ulid.new()),
				conversation_id=conversation_id,
				sender_id=sender_id,
				content=content,
				created_at=self._now(),
				read=False,
			)
			self._messages[conversation_id].append(row)
			return row

	async def bulk_mark_read(self, conversation_id: str, excluding_sender: str) -> int:
		async with self._lock:
			messages = self._messages.get(conversation_id, [])
			updated = 0
			for idx, row in enumerate(messages):
				if not row.read and row.sender_id != excluding_sender:
					messages[idx] = MessageRow(
						id=row.id,
						conversation_id=row.conversation_id,
						sender_id=row.sender_id,
						content=row.content,
						created_at=row.created_at,
						read=True,
					)
					updated += 1
			return updated

	async def lookup_username(self, user_id: str) -> Optional[str]:
		return self._profiles.get(user_id)

	async def lookup_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
		return {user_id: self._profiles[user_id] for user_id in set(user_ids) if user_id in self._profiles}

	async def find_user_id(self, username: str) -> Optional[str]:
		for user_id, name in self._profiles.items():
			if name == username:
				return user_id
		return None
