"""Listing and creating anonymous bulletin posts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from campusboard.domain.common.errors import RemoteReadError, RemoteWriteError, StoreError
from campusboard.infra.auth import Session
from campusboard.obs import metrics as obs_metrics

from .exceptions import InvalidPost
from .models import CATEGORIES, Post
from .store import PostStore

logger = logging.getLogger(__name__)


def fallback_catalog_number(now: datetime | None = None) -> str:
    """Catalog number used when the store cannot generate one, e.g. REF-2026-4821."""
    now = now or datetime.now(timezone.utc)
    millis = str(int(now.timestamp()) * 1000 + now.microsecond // 1000)
    return f"REF-{now.year}-{millis[-4:]}"


class PostService:
    def __init__(self, store: PostStore, session: Session) -> None:
        self._store = store
        self._session = session

    async def list_posts(self, category: Optional[str] = None) -> List[Post]:
        """Newest first, optionally restricted to one category ("all" means no filter)."""
        if category == "all":
            category = None
        if category is not None and category not in CATEGORIES:
            raise InvalidPost("unknown_category")
        try:
            rows = await self._store.list_posts(category)
            usernames = await self._store.lookup_usernames(row.user_id for row in rows)
        except StoreError as exc:
            logger.warning("posts.list_failed", extra={"reason": exc.reason})
            raise RemoteReadError(exc.reason) from exc
        return [Post.from_row(row, usernames) for row in rows]

    async def create_post(self, content: str, category: str) -> Post:
        user = self._session.require_user()
        text = (content or "").strip()
        if not text:
            raise InvalidPost("empty_post")
        if category not in CATEGORIES:
            raise InvalidPost("unknown_category")

        catalog_number = await self._store.next_catalog_number() or fallback_catalog_number()
        try:
            await self._store.ensure_profile(user)
        except StoreError as exc:
            logger.warning("posts.profile_missing", extra={"reason": exc.reason})
            raise RemoteWriteError("profile_missing") from exc
        try:
            row = await self._store.insert_post(user.id, text, category, catalog_number)
        except StoreError as exc:
            logger.warning("posts.create_failed", extra={"reason": exc.reason})
            raise RemoteWriteError(exc.reason) from exc

        obs_metrics.inc_post_created(category)
        logger.info("posts.created", extra={"post_id": row.id, "category": category})
        return Post.from_row(row, {user.id: user.display_name})
