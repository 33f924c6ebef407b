"""Client facade: one authenticated session wired to the board's domains."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from campusboard import obs
from campusboard.domain.messaging import (
	ConversationSynchronizer,
	IntervalPoller,
	MessagingStore,
	RefreshTrigger,
	UnreadNotifier,
)
from campusboard.domain.messaging.repo import PostgresMessagingStore
from campusboard.domain.posts import PostgresPostStore, PostService, PostStore
from campusboard.infra import postgres
from campusboard.infra.auth import AuthenticatedUser, Session, user_from_access_token
from campusboard.obs import logging as obs_logging

logger = logging.getLogger(__name__)

TriggerFactory = Callable[[], RefreshTrigger]


class BoardClient:
	"""Owns the per-session inbox state and the refresh trigger.

	Logging in rebuilds the inbox from scratch; logging out stops the trigger
	and drops everything the previous session held.
	"""

	def __init__(
		self,
		messaging_store: MessagingStore,
		post_store: PostStore,
		*,
		session: Session | None = None,
		trigger_factory: TriggerFactory | None = None,
		read_confirm_delay: float | None = None,
	) -> None:
		self.session = session or Session()
		self.synchronizer = ConversationSynchronizer(
			messaging_store,
			self.session,
			read_confirm_delay=read_confirm_delay,
		)
		self.notifier = UnreadNotifier(self.synchronizer)
		self.posts = PostService(post_store, self.session)
		self._trigger_factory = trigger_factory or IntervalPoller
		self.owns_pool = False

	@property
	def user(self) -> Optional[AuthenticatedUser]:
		return self.session.get_current_user()

	async def login(self, user: AuthenticatedUser) -> AuthenticatedUser:
		await self._teardown()
		self.session.sign_in(user)
		obs_logging.bind_context(user_id=user.id, session_id=user.session_id)
		await self.synchronizer.start(self._trigger_factory())
		logger.info("client.session_started", extra={"conversations": len(self.synchronizer.conversations)})
		return user

	async def login_with_token(self, access_token: str) -> AuthenticatedUser:
		return await self.login(user_from_access_token(access_token))

	async def logout(self) -> None:
		await self._teardown()
		self.session.sign_out()

	async def _teardown(self) -> None:
		await self.synchronizer.close()
		self.notifier.reset()
		obs_logging.clear_context()

	async def close(self) -> None:
		await self.logout()
		self.notifier.close()
		if self.owns_pool:
			await postgres.close_pool()


def bootstrap(messaging_store: MessagingStore, post_store: PostStore, **kwargs) -> BoardClient:
	"""Configure logging and build a client."""
	obs.init()
	return BoardClient(messaging_store, post_store, **kwargs)


async def connect_postgres(*, ensure_schema: bool = False, **kwargs) -> BoardClient:
	"""Build a client backed by the shared asyncpg pool.

	The returned client closes the pool when it is closed.
	"""
	pool = await postgres.init_pool()
	messaging_store = PostgresMessagingStore(pool)
	post_store = PostgresPostStore(pool)
	if ensure_schema:
		await messaging_store.ensure_schema()
		await post_store.ensure_schema()
	client = bootstrap(messaging_store, post_store, **kwargs)
	client.owns_pool = True
	return client
