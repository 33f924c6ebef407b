"""Session identity for the signed-in user.

The hosted auth provider owns signup, login and password reset; the client
only keeps the identity it was handed and exposes it to the domains.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from jwt import InvalidTokenError

from campusboard.domain.common.errors import NotAuthenticated
from campusboard.infra import jwt as jwt_helper

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
	id: str
	username: Optional[str] = None
	email: Optional[str] = None
	session_id: Optional[str] = None

	@property
	def display_name(self) -> str:
		if self.username:
			return self.username
		if self.email:
			return self.email.split("@", 1)[0]
		return "user"


def user_from_access_token(token: str) -> AuthenticatedUser:
	"""Decode an access token into an AuthenticatedUser or raise NotAuthenticated."""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError as exc:
		raise NotAuthenticated("invalid_token") from exc

	metadata = payload.get("user_metadata")
	username = metadata.get("username") if isinstance(metadata, dict) else None
	email = payload.get("email")
	session_id = payload.get("session_id") or payload.get("sid")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		username=str(username) if username else None,
		email=str(email) if email else None,
		session_id=str(session_id) if session_id else None,
	)


class Session:
	"""Holds the identity of the single authenticated user of this client."""

	def __init__(self, user: AuthenticatedUser | None = None) -> None:
		self._user = user

	def get_current_user(self) -> AuthenticatedUser | None:
		return self._user

	def require_user(self) -> AuthenticatedUser:
		user = self._user
		if user is None:
			raise NotAuthenticated()
		return user

	@property
	def is_authenticated(self) -> bool:
		return self._user is not None

	def sign_in(self, user: AuthenticatedUser) -> AuthenticatedUser:
		self._user = user
		logger.info("session.signed_in", extra={"user_id": user.id})
		return user

	def sign_out(self) -> None:
		if self._user is not None:
			logger.info("session.signed_out", extra={"user_id": self._user.id})
		self._user = None
