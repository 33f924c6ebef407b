"""Domain models for direct messaging."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Mapping, Optional, Tuple

SELF_LABEL = "You"
UNKNOWN_LABEL = "Unknown"
PLACEHOLDER_PREFIX = "temp-"


@dataclass(frozen=True, slots=True)
class ConversationKey:
	"""Canonical, order-independent representation of a participant pair."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ConversationKey":
		ordered = tuple(sorted((str(user_one), str(user_two))))
		return cls(user_a=ordered[0], user_b=ordered[1])

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)


@dataclass(frozen=True, slots=True)
class ConversationRow:
	id: str
	user1_id: str
	user2_id: str
	created_at: datetime
	updated_at: datetime

	@property
	def key(self) -> ConversationKey:
		return ConversationKey.from_participants(self.user1_id, self.user2_id)

	def other_participant(self, user_id: str) -> str:
		return self.user2_id if self.user1_id == user_id else self.user1_id


@dataclass(frozen=True, slots=True)
class MessageRow:
	id: str
	conversation_id: str
	sender_id: str
	content: str
	created_at: datetime
	read: bool = False


@dataclass(frozen=True, slots=True)
class Message:
	id: str
	conversation_id: str
	sender_id: str
	content: str
	created_at: datetime
	read: bool
	sender_name: str
	pending: bool = False

	@classmethod
	def from_row(cls, row: MessageRow, *, current_user_id: str, usernames: Mapping[str, str]) -> "Message":
		if row.sender_id == current_user_id:
			sender_name = SELF_LABEL
		else:
			sender_name = usernames.get(row.sender_id) or UNKNOWN_LABEL
		return cls(
			id=row.id,
			conversation_id=row.conversation_id,
			sender_id=row.sender_id,
			content=row.content,
			created_at=row.created_at,
			read=row.read,
			sender_name=sender_name,
		)

	def is_unread_for(self, user_id: str) -> bool:
		return not self.read and self.sender_id != user_id


@dataclass(frozen=True, slots=True)
class Conversation:
	"""A 1:1 conversation as seen by the current user, with derived display fields."""

	id: str
	user1_id: str
	user2_id: str
	created_at: datetime
	updated_at: datetime
	participant: str
	participant_id: str
	last_message: str
	timestamp: datetime
	unread: bool
	messages: Tuple[Message, ...] = ()

	@classmethod
	def build(
		cls,
		row: ConversationRow,
		messages: Iterable[Message],
		*,
		current_user_id: str,
		usernames: Mapping[str, str],
	) -> "Conversation":
		ordered = tuple(messages)
		other_id = row.other_participant(current_user_id)
		last = ordered[-1] if ordered else None
		return cls(
			id=row.id,
			user1_id=row.user1_id,
			user2_id=row.user2_id,
			created_at=row.created_at,
			updated_at=row.updated_at,
			participant=usernames.get(other_id) or UNKNOWN_LABEL,
			participant_id=other_id,
			last_message=last.content if last else "",
			timestamp=last.created_at if last else row.created_at,
			unread=has_unread_messages(ordered, current_user_id),
			messages=ordered,
		)

	def with_messages(self, messages: Iterable[Message], *, current_user_id: str) -> "Conversation":
		"""Return a copy with new messages and recomputed derived fields."""
		ordered = tuple(messages)
		last = ordered[-1] if ordered else None
		return replace(
			self,
			messages=ordered,
			last_message=last.content if last else "",
			timestamp=last.created_at if last else self.created_at,
			unread=has_unread_messages(ordered, current_user_id),
		)

	def unread_count(self, user_id: str) -> int:
		return sum(1 for message in self.messages if message.is_unread_for(user_id))

	def sync_signature(self) -> Tuple[int, bool, datetime]:
		"""Fields compared by background refreshes to decide whether the view changed."""
		return (len(self.messages), self.unread, self.timestamp)


def has_unread_messages(messages: Iterable[Message], user_id: str) -> bool:
	return any(message.is_unread_for(user_id) for message in messages)


def is_placeholder_id(message_id: str) -> bool:
	return message_id.startswith(PLACEHOLDER_PREFIX)


def find_conversation(conversations: Iterable[Conversation], conversation_id: str) -> Optional[Conversation]:
	for conversation in conversations:
		if conversation.id == conversation_id:
			return conversation
	return None
