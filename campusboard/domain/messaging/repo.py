"""AsyncPG-backed messaging store for the hosted Postgres database."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

import asyncpg

from campusboard.infra.postgres import get_pool

from .exceptions import StoreError
from .models import ConversationRow, MessageRow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS profiles (
	id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
	user_id UUID NOT NULL UNIQUE,
	username TEXT NOT NULL,
	email TEXT NOT NULL DEFAULT '',
	created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS conversations (
	id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
	user1_id UUID NOT NULL,
	user2_id UUID NOT NULL,
	created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS conversations_pair_idx
	ON conversations ((LEAST(user1_id, user2_id)), (GREATEST(user1_id, user2_id)));
CREATE TABLE IF NOT EXISTS messages (
	id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
	conversation_id UUID NOT NULL REFERENCES conversations(id),
	sender_id UUID NOT NULL,
	content TEXT NOT NULL,
	created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
	read BOOLEAN NOT NULL DEFAULT false
);
CREATE INDEX IF NOT EXISTS messages_conversation_created_idx ON messages (conversation_id, created_at);
"""

_CONVERSATION_COLUMNS = "id, user1_id, user2_id, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, created_at, read"


def _conversation_from_record(row) -> ConversationRow:
	return ConversationRow(
		id=str(row["id"]),
		user1_id=str(row["user1_id"]),
		user2_id=str(row["user2_id"]),
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


def _message_from_record(row) -> MessageRow:
	return MessageRow(
		id=str(row["id"]),
		conversation_id=str(row["conversation_id"]),
		sender_id=str(row["sender_id"]),
		content=row["content"],
		created_at=row["created_at"],
		read=bool(row["read"]),
	)


class PostgresMessagingStore:
	"""Messaging store over an asyncpg pool.

	The participant pair is canonicalised with LEAST/GREATEST in a unique
	index, so concurrent creates for the same pair converge on one row.
	"""

	def __init__(self, pool: asyncpg.pool.Pool | None = None) -> None:
		self._pool = pool

	@asynccontextmanager
	async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = self._pool or await get_pool()
			async with pool.acquire() as conn:
				yield conn
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			raise StoreError(type(exc).__name__) from exc

	async def ensure_schema(self) -> None:
		async with self._connection() as conn:
			await conn.execute(SCHEMA_SQL)

	async def list_conversations(self, for_user: str) -> List[ConversationRow]:
		async with self._connection() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM conversations
				WHERE user1_id = $1::uuid OR user2_id = $1::uuid
				ORDER BY updated_at DESC
				""",
				for_user,
			)
			return [_conversation_from_record(row) for row in rows]

	async def find_conversation(self, user_a: str, user_b: str) -> Optional[ConversationRow]:
		async with self._connection() as conn:
			row = await conn.fetchrow(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM conversations
				WHERE (user1_id = $1::uuid AND user2_id = $2::uuid)
					OR (user1_id = $2::uuid AND user2_id = $1::uuid)
				ORDER BY created_at ASC
				LIMIT 1
				""",
				user_a,
				user_b,
			)
			return _conversation_from_record(row) if row else None

	async def insert_conversation(self, user_a: str, user_b: str) -> ConversationRow:
		async with self._connection() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"""
					INSERT INTO conversations (user1_id, user2_id)
					VALUES ($1::uuid, $2::uuid)
					ON CONFLICT ((LEAST(user1_id, user2_id)), (GREATEST(user1_id, user2_id))) DO NOTHING
					RETURNING {_CONVERSATION_COLUMNS}
					""",
					user_a,
					user_b,
				)
				if row is None:
					# Lost the race to a concurrent create; return the winner
					row = await conn.fetchrow(
						f"""
						SELECT {_CONVERSATION_COLUMNS}
						FROM conversations
						WHERE LEAST(user1_id, user2_id) = LEAST($1::uuid, $2::uuid)
							AND GREATEST(user1_id, user2_id) = GREATEST($1::uuid, $2::uuid)
						""",
						user_a,
						user_b,
					)
				if row is None:
					raise StoreError("conversation_insert_failed")
				return _conversation_from_record(row)

	async def touch_conversation(self, conversation_id: str, now: datetime) -> None:
		async with self._connection() as conn:
			await conn.execute(
				"UPDATE conversations SET updated_at = $2 WHERE id = $1::uuid",
				conversation_id,
				now,
			)

	async def list_messages(self, conversation_id: str) -> List[MessageRow]:
		async with self._connection() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM messages
				WHERE conversation_id = $1::uuid
				ORDER BY created_at ASC, id ASC
				""",
				conversation_id,
			)
			return [_message_from_record(row) for row in rows]

	async def insert_message(self, conversation_id: str, sender_id: str, content: str) -> MessageRow:
		async with self._connection() as conn:
			row = await conn.fetchrow(
				f"""
				INSERT INTO messages (conversation_id, sender_id, content)
				VALUES ($1::uuid, $2::uuid, $3)
				RETURNING {_MESSAGE_COLUMNS}
				""",
				conversation_id,
				sender_id,
				content,
			)
			return _message_from_record(row)

	async def bulk_mark_read(self, conversation_id: str, excluding_sender: str) -> int:
		async with self._connection() as conn:
			status = await conn.execute(
				"""
				UPDATE messages
				SET read = true
				WHERE conversation_id = $1::uuid AND read = false AND sender_id <> $2::uuid
				""",
				conversation_id,
				excluding_sender,
			)
			# asyncpg returns the command tag, e.g. "UPDATE 3"
			try:
				return int(status.split()[-1])
			except (ValueError, IndexError):
				return 0

	async def lookup_username(self, user_id: str) -> Optional[str]:
		async with self._connection() as conn:
			row = await conn.fetchrow("SELECT username FROM profiles WHERE user_id = $1::uuid", user_id)
			return row["username"] if row else None

	async def lookup_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
		ids = sorted(set(user_ids))
		if not ids:
			return {}
		async with self._connection() as conn:
			rows = await conn.fetch(
				"SELECT user_id, username FROM profiles WHERE user_id = ANY($1::uuid[])",
				ids,
			)
			return {str(row["user_id"]): row["username"] for row in rows}

	async def find_user_id(self, username: str) -> Optional[str]:
		async with self._connection() as conn:
			row = await conn.fetchrow("SELECT user_id FROM profiles WHERE username = $1", username)
			return str(row["user_id"]) if row else None
