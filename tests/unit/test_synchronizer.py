import asyncio

import pytest

from campusboard.domain.messaging import ConversationSynchronizer
from campusboard.domain.messaging.exceptions import (
    EmptyMessage,
    InvalidConversation,
    NotAuthenticated,
    RemoteWriteError,
    StoreError,
)
from campusboard.infra.auth import Session


def assert_unread_consistent(sync: ConversationSynchronizer, user_id: str) -> None:
    expected = any(
        any(not message.read and message.sender_id != user_id for message in conversation.messages)
        for conversation in sync.conversations
    )
    assert sync.has_unread is expected
    for conversation in sync.conversations:
        assert conversation.unread is any(
            not message.read and message.sender_id != user_id for message in conversation.messages
        )


@pytest.mark.asyncio
async def test_first_message_creates_conversation_visible_to_recipient(alice_sync, bob_sync, alice, bob):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")

    await bob_sync.refresh(True)

    assert len(bob_sync.conversations) == 1
    conversation = bob_sync.conversations[0]
    assert conversation.id == conversation_id
    assert conversation.unread is True
    assert conversation.last_message == "Hello"
    assert conversation.participant == "alice"
    assert conversation.participant_id == alice.id
    assert conversation.messages[0].sender_name == "alice"
    assert bob_sync.has_unread is True
    assert_unread_consistent(bob_sync, bob.id)


@pytest.mark.asyncio
async def test_sender_sees_own_message_as_read_and_labelled_you(alice_sync, alice, bob):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "  Hi there  ")

    conversation = alice_sync.find_conversation(conversation_id)
    assert conversation is not None
    assert conversation.unread is False
    assert [m.content for m in conversation.messages] == ["Hi there"]
    assert conversation.messages[0].sender_name == "You"
    assert conversation.messages[0].pending is False
    assert alice_sync.has_unread is False


@pytest.mark.asyncio
async def test_get_or_create_is_stable_for_the_same_pair(alice_sync, bob_sync, bob, alice, store):
    first = await alice_sync.get_or_create_conversation(bob.id)
    second = await alice_sync.get_or_create_conversation(bob.id)
    from_other_side = await bob_sync.get_or_create_conversation(alice.id)

    assert first == second == from_other_side
    assert len(await store.list_conversations(alice.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_in_one_client_converge(alice_sync, bob, alice, store):
    ids = await asyncio.gather(*(alice_sync.get_or_create_conversation(bob.id) for _ in range(5)))

    assert len(set(ids)) == 1
    assert len(await store.list_conversations(alice.id)) == 1


@pytest.mark.asyncio
async def test_get_or_create_rejects_self_and_anonymous(alice_sync, store, alice, bob):
    with pytest.raises(InvalidConversation):
        await alice_sync.get_or_create_conversation(alice.id)

    anonymous = ConversationSynchronizer(store, Session())
    with pytest.raises(NotAuthenticated):
        await anonymous.get_or_create_conversation(bob.id)
    with pytest.raises(NotAuthenticated):
        await anonymous.send_message("anything", "hi")
    with pytest.raises(NotAuthenticated):
        await anonymous.mark_conversation_as_read("anything")
    with pytest.raises(NotAuthenticated):
        await anonymous.open_conversation_with("bob")


@pytest.mark.asyncio
async def test_get_or_create_surfaces_insert_failure(alice_sync, bob, store, monkeypatch):
    async def failing_insert(user_a, user_b):
        raise StoreError("insert_denied")

    monkeypatch.setattr(store, "insert_conversation", failing_insert)

    with pytest.raises(RemoteWriteError) as excinfo:
        await alice_sync.get_or_create_conversation(bob.id)
    assert excinfo.value.reason == "insert_denied"


@pytest.mark.asyncio
async def test_blank_message_is_rejected_without_writing(alice_sync, bob, store):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)

    with pytest.raises(EmptyMessage):
        await alice_sync.send_message(conversation_id, "   \n\t ")

    assert await store.list_messages(conversation_id) == []


@pytest.mark.asyncio
async def test_messages_are_ordered_by_creation_time(alice_sync, bob_sync, bob, alice):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await asyncio.gather(
        alice_sync.send_message(conversation_id, "one"),
        alice_sync.send_message(conversation_id, "two"),
        alice_sync.send_message(conversation_id, "three"),
    )
    await bob_sync.send_message(conversation_id, "four")

    await alice_sync.refresh(False)
    messages = alice_sync.find_conversation(conversation_id).messages
    timestamps = [message.created_at for message in messages]

    assert len(messages) == 4
    assert timestamps == sorted(timestamps)
    assert messages[-1].content == "four"
    assert not any(message.pending for message in messages)


@pytest.mark.asyncio
async def test_failed_send_removes_placeholder_and_raises(alice_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.refresh(True)
    seen = []
    alice_sync.subscribe(lambda snapshot: seen.append(snapshot))

    async def failing_insert(conversation_id, sender_id, content):
        raise StoreError("network_down")

    monkeypatch.setattr(store, "insert_message", failing_insert)

    with pytest.raises(RemoteWriteError):
        await alice_sync.send_message(conversation_id, "lost")

    # Placeholder was shown, then withdrawn
    optimistic = seen[0][0].messages
    assert len(optimistic) == 1
    assert optimistic[0].pending is True
    assert optimistic[0].id.startswith("temp-")
    assert alice_sync.find_conversation(conversation_id).messages == ()

    await alice_sync.refresh(False)
    assert alice_sync.find_conversation(conversation_id).messages == ()


@pytest.mark.asyncio
async def test_touch_failure_keeps_the_message(alice_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)

    async def failing_touch(conversation_id, now):
        raise StoreError("timeout")

    monkeypatch.setattr(store, "touch_conversation", failing_touch)

    message = await alice_sync.send_message(conversation_id, "still here")

    assert message.content == "still here"
    assert [row.content for row in await store.list_messages(conversation_id)] == ["still here"]


@pytest.mark.asyncio
async def test_mark_read_updates_locally_before_remote_write(alice_sync, bob_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    await bob_sync.refresh(True)
    assert bob_sync.has_unread is True

    observed = {}
    original = store.bulk_mark_read

    async def spying_bulk_mark_read(conversation_id, excluding_sender):
        observed["unread_during_write"] = bob_sync.find_conversation(conversation_id).unread
        return await original(conversation_id, excluding_sender)

    monkeypatch.setattr(store, "bulk_mark_read", spying_bulk_mark_read)

    await bob_sync.mark_conversation_as_read(conversation_id)

    assert observed["unread_during_write"] is False
    assert bob_sync.find_conversation(conversation_id).unread is False
    assert_unread_consistent(bob_sync, bob.id)

    await bob_sync.wait_idle()
    assert bob_sync.find_conversation(conversation_id).unread is False
    assert all(row.read for row in await store.list_messages(conversation_id))


@pytest.mark.asyncio
async def test_mark_read_leaves_own_messages_untouched(alice_sync, bob_sync, bob, store):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "from alice")
    await bob_sync.send_message(conversation_id, "from bob")
    await bob_sync.refresh(True)

    await bob_sync.mark_conversation_as_read(conversation_id)
    await bob_sync.wait_idle()

    rows = {row.content: row.read for row in await store.list_messages(conversation_id)}
    assert rows == {"from alice": True, "from bob": False}
    # Bob's own unread message is unread for alice
    await alice_sync.refresh(False)
    assert alice_sync.find_conversation(conversation_id).unread is True


@pytest.mark.asyncio
async def test_mark_read_failure_restores_unread_and_raises(alice_sync, bob_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    await bob_sync.refresh(True)

    async def failing_bulk(conversation_id, excluding_sender):
        raise StoreError("rls_denied")

    monkeypatch.setattr(store, "bulk_mark_read", failing_bulk)

    refreshes = []
    original_list = store.list_conversations

    async def counting_list(for_user):
        refreshes.append(for_user)
        return await original_list(for_user)

    monkeypatch.setattr(store, "list_conversations", counting_list)

    with pytest.raises(RemoteWriteError):
        await bob_sync.mark_conversation_as_read(conversation_id)

    assert bob_sync.find_conversation(conversation_id).unread is True
    assert refreshes == [bob.id]
    assert_unread_consistent(bob_sync, bob.id)


@pytest.mark.asyncio
async def test_mark_read_twice_is_a_noop(alice_sync, bob_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    await bob_sync.refresh(True)
    await bob_sync.mark_conversation_as_read(conversation_id)
    await bob_sync.wait_idle()

    calls = []
    original = store.bulk_mark_read

    async def counting_bulk(conversation_id, excluding_sender):
        calls.append(conversation_id)
        return await original(conversation_id, excluding_sender)

    monkeypatch.setattr(store, "bulk_mark_read", counting_bulk)
    before = bob_sync.conversations

    await bob_sync.mark_conversation_as_read(conversation_id)
    await bob_sync.mark_conversation_as_read("unknown-conversation")
    await bob_sync.wait_idle()

    assert calls == []
    assert bob_sync.conversations is before


@pytest.mark.asyncio
async def test_mark_read_confirms_with_delayed_refresh(alice_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    bob_sync = ConversationSynchronizer(store, Session(bob), read_confirm_delay=0.05)
    await bob_sync.refresh(True)

    refreshes = []
    original_list = store.list_conversations

    async def counting_list(for_user):
        refreshes.append(for_user)
        return await original_list(for_user)

    monkeypatch.setattr(store, "list_conversations", counting_list)

    await bob_sync.mark_conversation_as_read(conversation_id)
    await asyncio.sleep(0)
    assert refreshes == []

    await bob_sync.wait_idle()
    assert refreshes == [bob.id]
    assert bob_sync.find_conversation(conversation_id).unread is False


@pytest.mark.asyncio
async def test_send_moves_conversation_to_the_top(alice_sync, bob, carol, store):
    with_bob = await alice_sync.get_or_create_conversation(bob.id)
    with_carol = await alice_sync.get_or_create_conversation(carol.id)
    await alice_sync.refresh(True)
    assert [c.id for c in alice_sync.conversations] == [with_carol, with_bob]

    await alice_sync.send_message(with_bob, "bob again")

    assert [c.id for c in alice_sync.conversations] == [with_bob, with_carol]
    stored = await store.list_conversations("user-alice")
    assert [row.id for row in stored] == [with_bob, with_carol]
    assert alice_sync.conversations[0].updated_at == stored[0].updated_at


@pytest.mark.asyncio
async def test_refresh_waits_for_all_message_fetches_on_failure(alice_sync, bob, carol, store, monkeypatch):
    with_bob = await alice_sync.get_or_create_conversation(bob.id)
    with_carol = await alice_sync.get_or_create_conversation(carol.id)
    await alice_sync.refresh(True)
    before = alice_sync.conversations
    finished = []
    original_messages = store.list_messages

    async def uneven_list_messages(conversation_id):
        if conversation_id == with_carol:
            raise StoreError("timeout")
        await asyncio.sleep(0.01)
        finished.append(conversation_id)
        return await original_messages(conversation_id)

    monkeypatch.setattr(store, "list_messages", uneven_list_messages)

    await alice_sync.refresh(False)

    assert finished == [with_bob]
    assert alice_sync.conversations is before


@pytest.mark.asyncio
async def test_background_refresh_with_no_changes_keeps_snapshot(alice_sync, bob, store):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    await alice_sync.refresh(True)
    before = alice_sync.conversations
    notified = []
    alice_sync.subscribe(notified.append)

    await alice_sync.refresh(False)

    assert alice_sync.conversations is before
    assert notified == []


@pytest.mark.asyncio
async def test_background_refresh_publishes_new_messages(alice_sync, bob_sync, bob):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.refresh(True)
    notified = []
    alice_sync.subscribe(notified.append)

    await bob_sync.send_message(conversation_id, "reply")
    await alice_sync.refresh(False)

    assert len(notified) == 1
    assert notified[0][0].last_message == "reply"
    assert alice_sync.has_unread is True


@pytest.mark.asyncio
async def test_unsubscribed_listener_is_not_called(alice_sync, bob):
    notified = []
    unsubscribe = alice_sync.subscribe(notified.append)
    unsubscribe()

    await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.refresh(True)

    assert notified == []


@pytest.mark.asyncio
async def test_refresh_failure_keeps_last_known_state(alice_sync, bob, store, monkeypatch):
    conversation_id = await alice_sync.get_or_create_conversation(bob.id)
    await alice_sync.send_message(conversation_id, "Hello")
    before = alice_sync.conversations

    async def failing_list(for_user):
        raise StoreError("unreachable")

    monkeypatch.setattr(store, "list_conversations", failing_list)

    await alice_sync.refresh(False)
    await alice_sync.refresh(True)

    assert alice_sync.conversations is before
    assert alice_sync.loading is False


@pytest.mark.asyncio
async def test_initial_load_sets_loading_flag(alice_sync, alice, store, monkeypatch):
    observed = []
    original = store.list_conversations

    async def spying_list(for_user):
        observed.append(alice_sync.loading)
        return await original(for_user)

    monkeypatch.setattr(store, "list_conversations", spying_list)

    await alice_sync.refresh(True)
    await alice_sync.refresh(False)

    assert observed == [True, False]
    assert alice_sync.loading is False


@pytest.mark.asyncio
async def test_refresh_without_user_clears_state(store, alice, bob):
    session = Session(alice)
    sync = ConversationSynchronizer(store, session)
    await sync.get_or_create_conversation(bob.id)
    await sync.refresh(True)
    assert len(sync.conversations) == 1

    session.sign_out()
    await sync.refresh(False)

    assert sync.conversations == ()


@pytest.mark.asyncio
async def test_reset_discards_in_flight_refresh(alice_sync, bob, store, monkeypatch):
    await alice_sync.get_or_create_conversation(bob.id)
    gate = asyncio.Event()
    original = store.list_conversations

    async def slow_list(for_user):
        await gate.wait()
        return await original(for_user)

    monkeypatch.setattr(store, "list_conversations", slow_list)

    pending = asyncio.create_task(alice_sync.refresh(True))
    await asyncio.sleep(0)
    alice_sync.reset()
    gate.set()
    await pending

    assert alice_sync.conversations == ()
    assert alice_sync.loading is False


@pytest.mark.asyncio
async def test_open_conversation_with_username(alice_sync, bob, store):
    conversation_id = await alice_sync.open_conversation_with("bob")

    assert conversation_id is not None
    assert alice_sync.find_by_participant("bob").id == conversation_id
    assert await alice_sync.open_conversation_with("bob") == conversation_id
    assert await alice_sync.open_conversation_with("alice") is None
    assert await alice_sync.open_conversation_with("nobody") is None


@pytest.mark.asyncio
async def test_unread_flag_holds_after_every_mutation(alice_sync, bob_sync, alice, bob, carol, store):
    with_bob = await alice_sync.get_or_create_conversation(bob.id)
    with_carol = await alice_sync.get_or_create_conversation(carol.id)
    carol_sync = ConversationSynchronizer(store, Session(carol), read_confirm_delay=0.0)

    await bob_sync.send_message(with_bob, "hey alice")
    await alice_sync.refresh(True)
    assert_unread_consistent(alice_sync, alice.id)

    await carol_sync.send_message(with_carol, "hi from carol")
    await alice_sync.refresh(False)
    assert_unread_consistent(alice_sync, alice.id)
    assert sum(1 for c in alice_sync.conversations if c.unread) == 2

    await alice_sync.mark_conversation_as_read(with_bob)
    assert_unread_consistent(alice_sync, alice.id)

    await alice_sync.send_message(with_carol, "answer")
    assert_unread_consistent(alice_sync, alice.id)

    await alice_sync.mark_conversation_as_read(with_carol)
    await alice_sync.wait_idle()
    assert_unread_consistent(alice_sync, alice.id)
    assert alice_sync.has_unread is False
