import pytest

from campusboard.domain.messaging import ConversationSynchronizer, InMemoryMessagingStore
from campusboard.infra.auth import AuthenticatedUser, Session
from campusboard.settings import settings

ALICE = AuthenticatedUser(id="user-alice", username="alice")
BOB = AuthenticatedUser(id="user-bob", username="bob")
CAROL = AuthenticatedUser(id="user-carol", username="carol")


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep tests independent of the developer's environment."""
	original_secret = settings.jwt_secret
	original_delay = settings.read_confirm_delay_seconds
	settings.jwt_secret = "test-secret-with-enough-length-for-hs256"
	settings.read_confirm_delay_seconds = 0.0
	try:
		yield
	finally:
		settings.jwt_secret = original_secret
		settings.read_confirm_delay_seconds = original_delay


@pytest.fixture
def store():
	store = InMemoryMessagingStore()
	for user in (ALICE, BOB, CAROL):
		store.add_profile(user.id, user.username)
	return store


@pytest.fixture
def alice_session():
	return Session(ALICE)


@pytest.fixture
def bob_session():
	return Session(BOB)


@pytest.fixture
def alice_sync(store, alice_session):
	return ConversationSynchronizer(store, alice_session, read_confirm_delay=0.0)


@pytest.fixture
def bob_sync(store, bob_session):
	return ConversationSynchronizer(store, bob_session, read_confirm_delay=0.0)


@pytest.fixture
def alice():
	return ALICE


@pytest.fixture
def bob():
	return BOB


@pytest.fixture
def carol():
	return CAROL
