"""Post errors."""

from __future__ import annotations

from campusboard.domain.common.errors import BoardError


class PostError(BoardError):
    """Base class for post validation errors."""


class InvalidPost(PostError):
    reason = "invalid_post"
