"""Anonymous bulletin posts."""

from .models import CATEGORIES, Post, PostRow
from .service import PostService
from .store import InMemoryPostStore, PostgresPostStore, PostStore

__all__ = [
    "CATEGORIES",
    "InMemoryPostStore",
    "Post",
    "PostRow",
    "PostService",
    "PostStore",
    "PostgresPostStore",
]
