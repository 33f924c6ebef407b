"""Post models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

CATEGORIES = ("seeking", "missed", "inquiry")
ANONYMOUS_AUTHOR = "Anonymous Patron"


@dataclass(frozen=True, slots=True)
class PostRow:
    id: str
    user_id: str
    content: str
    category: str
    catalog_number: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Post:
    id: str
    user_id: str
    content: str
    category: str
    catalog_number: str
    created_at: datetime
    author: str
    # Responses are not tracked yet; kept so views can render the counter
    responses: int = 0

    @classmethod
    def from_row(cls, row: PostRow, usernames: Mapping[str, str]) -> "Post":
        return cls(
            id=row.id,
            user_id=row.user_id,
            content=row.content,
            category=row.category,
            catalog_number=row.catalog_number,
            created_at=row.created_at,
            author=usernames.get(row.user_id) or ANONYMOUS_AUTHOR,
        )
