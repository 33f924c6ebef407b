"""Post storage: protocol, Postgres adapter and in-memory variant."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol

import asyncpg
import ulid

from campusboard.domain.common.errors import StoreError
from campusboard.infra.auth import AuthenticatedUser
from campusboard.infra.postgres import get_pool

from .models import PostRow

POSTS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS posts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    content TEXT NOT NULL,
    category TEXT NOT NULL CHECK (category IN ('seeking', 'missed', 'inquiry')),
    catalog_number TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class PostStore(Protocol):
    async def list_posts(self, category: Optional[str] = None) -> List[PostRow]:
        ...

    async def insert_post(self, user_id: str, content: str, category: str, catalog_number: str) -> PostRow:
        ...

    async def next_catalog_number(self) -> Optional[str]:
        ...

    async def ensure_profile(self, user: AuthenticatedUser) -> None:
        ...

    async def lookup_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ...


def _post_from_record(row) -> PostRow:
    return PostRow(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        content=row["content"],
        category=row["category"],
        catalog_number=row["catalog_number"],
        created_at=row["created_at"],
    )


class PostgresPostStore:
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
            await conn.execute(POSTS_SCHEMA_SQL)

    async def list_posts(self, category: Optional[str] = None) -> List[PostRow]:
        async with self._connection() as conn:
            if category:
                rows = await conn.fetch(
                    "SELECT * FROM posts WHERE category = $1 ORDER BY created_at DESC",
                    category,
                )
            else:
                rows = await conn.fetch("SELECT * FROM posts ORDER BY created_at DESC")
            return [_post_from_record(row) for row in rows]

    async def insert_post(self, user_id: str, content: str, category: str, catalog_number: str) -> PostRow:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO posts (user_id, content, category, catalog_number)
                VALUES ($1::uuid, $2, $3, $4)
                RETURNING *
                """,
                user_id,
                content,
                category,
                catalog_number,
            )
            return _post_from_record(row)

    async def next_catalog_number(self) -> Optional[str]:
        # The generator function is optional on the hosted project
        try:
            async with self._connection() as conn:
                value = await conn.fetchval("SELECT generate_catalog_number()")
        except StoreError:
            return None
        return str(value) if value else None

    async def ensure_profile(self, user: AuthenticatedUser) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO profiles (user_id, username, email)
                VALUES ($1::uuid, $2, $3)
                ON CONFLICT (user_id) DO NOTHING
                """,
                user.id,
                user.display_name,
                user.email or "",
            )

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


class InMemoryPostStore:
    """Fallback store used in tests."""

    def __init__(self, *, profiles: Dict[str, str] | None = None, catalog_numbers: Iterable[str] = ()) -> None:
        self._lock = asyncio.Lock()
        self._posts: List[PostRow] = []
        self.profiles: Dict[str, str] = dict(profiles or {})
        self._catalog_numbers = list(catalog_numbers)
        self._last_ts: datetime | None = None

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    async def list_posts(self, category: Optional[str] = None) -> List[PostRow]:
        async with self._lock:
            rows = [row for row in self._posts if not category or row.category == category]
            return sorted(rows, key=lambda row: row.created_at, reverse=True)

    async def insert_post(self, user_id: str, content: str, category: str, catalog_number: str) -> PostRow:
        async with self._lock:
            row = PostRow(
                id=str(ulid.new()),
                user_id=user_id,
                content=content,
                category=category,
                catalog_number=catalog_number,
                created_at=self._now(),
            )
            self._posts.append(row)
            return row

    async def next_catalog_number(self) -> Optional[str]:
        return self._catalog_numbers.pop(0) if self._catalog_numbers else None

    async def ensure_profile(self, user: AuthenticatedUser) -> None:
        self.profiles.setdefault(user.id, user.display_name)

    async def lookup_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
        return {user_id: self.profiles[user_id] for user_id in set(user_ids) if user_id in self.profiles}
