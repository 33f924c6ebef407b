"""Strategies that decide when the synchronizer reconciles with the store."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional, Protocol

import asyncpg

from campusboard.settings import settings

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[None]]


class RefreshTrigger(Protocol):
	async def start(self, callback: RefreshCallback) -> None:
		...

	async def stop(self) -> None:
		...


class IntervalPoller:
	"""Calls the refresh callback on a fixed interval."""

	def __init__(self, *, interval_seconds: float | None = None) -> None:
		self.interval_seconds = settings.poll_interval_seconds if interval_seconds is None else interval_seconds
		self._task: Optional[asyncio.Task] = None

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	async def start(self, callback: RefreshCallback) -> None:
		if self.running:
			return
		self._task = asyncio.create_task(self._run(callback), name="inbox-poller")

	async def _run(self, callback: RefreshCallback) -> None:
		interval = max(0.01, float(self.interval_seconds))
		while True:
			await asyncio.sleep(interval)
			try:
				await callback()
			except Exception:
				logger.exception("poller.tick_failed")

	async def stop(self) -> None:
		task, self._task = self._task, None
		if task is None:
			return
		task.cancel()
		with suppress(asyncio.CancelledError):
			await task


class PgNotifyTrigger:
	"""Refreshes when the database publishes a change notification.

	Expects a trigger on the messages table that issues ``NOTIFY <channel>``.
	Bursts of notifications collapse into a single refresh while one is running.
	"""

	def __init__(
		self,
		*,
		dsn: str | None = None,
		channel: str | None = None,
		connect: Callable[..., Awaitable[asyncpg.Connection]] | None = None,
	) -> None:
		self.dsn = dsn or settings.postgres_url
		self.channel = channel or settings.change_channel
		self._connect = connect or asyncpg.connect
		self._conn: Optional[asyncpg.Connection] = None
		self._dirty = asyncio.Event()
		self._task: Optional[asyncio.Task] = None

	async def start(self, callback: RefreshCallback) -> None:
		if self._task is not None:
			return
		self._conn = await self._connect(self.dsn)
		await self._conn.add_listener(self.channel, self._on_notify)
		self._task = asyncio.create_task(self._run(callback), name=f"pg-notify:{self.channel}")
		logger.info("notify.listening", extra={"channel": self.channel})

	def _on_notify(self, connection, pid, channel, payload) -> None:
		self._dirty.set()

	async def _run(self, callback: RefreshCallback) -> None:
		while True:
			await self._dirty.wait()
			self._dirty.clear()
			try:
				await callback()
			except Exception:
				logger.exception("notify.refresh_failed")

	async def stop(self) -> None:
		task, self._task = self._task, None
		if task is not None:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
		conn, self._conn = self._conn, None
		if conn is not None:
			with suppress(asyncpg.InterfaceError):
				await conn.remove_listener(self.channel, self._on_notify)
			await conn.close()
