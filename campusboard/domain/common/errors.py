"""Error taxonomy shared by the board's domains."""

from __future__ import annotations


class BoardError(Exception):
	"""Base class for client-side board errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class NotAuthenticated(BoardError):
	"""No current session; callers usually prompt for login."""

	reason = "not_authenticated"


class RemoteWriteError(BoardError):
	"""An insert or update against the store failed; surfaced for retry messaging."""

	reason = "remote_write_failed"


class RemoteReadError(BoardError):
	"""A fetch failed; refreshes log and swallow it."""

	reason = "remote_read_failed"


class StoreError(BoardError):
	"""Raised by store adapters when the backing store rejects or fails a call."""

	reason = "store_error"
