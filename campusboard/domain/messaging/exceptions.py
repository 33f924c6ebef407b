"""Domain-level exceptions for direct messaging."""

from __future__ import annotations

from campusboard.domain.common.errors import (
	BoardError,
	NotAuthenticated,
	RemoteReadError,
	RemoteWriteError,
	StoreError,
)


class MessagingError(BoardError):
	"""Base class for messaging validation errors."""


class EmptyMessage(MessagingError):
	reason = "empty_message"


class InvalidConversation(MessagingError):
	reason = "invalid_conversation"


__all__ = [
	"BoardError",
	"EmptyMessage",
	"InvalidConversation",
	"MessagingError",
	"NotAuthenticated",
	"RemoteReadError",
	"RemoteWriteError",
	"StoreError",
]
