import asyncio

import pytest

from wherewhen.errors import ErrorCode, fail
from wherewhen.services.change_feed import (
    ChangeFeed,
    chat_messages_topic,
    friends_topic,
    pending_requests_topic,
)


# ── Change feed ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_first_read_delivers_snapshot():
    feed = ChangeFeed()
    calls = []

    async def loader():
        calls.append(1)
        return len(calls)

    subscription = feed.subscribe(["topic"], loader)
    assert await anext(subscription) == 1
    assert feed.subscriber_count("topic") == 1


@pytest.mark.asyncio
async def test_publishes_coalesce_into_one_reload():
    feed = ChangeFeed()
    state = {"value": 0, "loads": 0}

    async def loader():
        state["loads"] += 1
        return state["value"]

    subscription = feed.subscribe(["topic"], loader)
    assert await anext(subscription) == 0

    for value in range(1, 6):
        state["value"] = value
        feed.publish("topic")

    assert await anext(subscription) == 5
    assert state["loads"] == 2


@pytest.mark.asyncio
async def test_waits_for_a_change():
    feed = ChangeFeed()

    async def loader():
        return "snapshot"

    subscription = feed.subscribe(["topic"], loader)
    await anext(subscription)

    pending = asyncio.ensure_future(anext(subscription))
    await asyncio.sleep(0.01)
    assert not pending.done()

    feed.publish("other-topic")
    await asyncio.sleep(0.01)
    assert not pending.done()

    feed.publish("topic")
    assert await asyncio.wait_for(pending, timeout=1) == "snapshot"


@pytest.mark.asyncio
async def test_close_unregisters_and_ends_iteration():
    feed = ChangeFeed()

    async def loader():
        return []

    async with feed.subscribe(["a", "b"], loader) as subscription:
        await anext(subscription)
        assert feed.subscriber_count("a") == 1

    assert subscription.closed
    assert feed.subscriber_count("a") == 0
    assert feed.subscriber_count("b") == 0
    with pytest.raises(StopAsyncIteration):
        await anext(subscription)


@pytest.mark.asyncio
async def test_close_wakes_a_waiting_consumer():
    feed = ChangeFeed()

    async def loader():
        return 1

    subscription = feed.subscribe(["topic"], loader)
    await anext(subscription)
    waiting = asyncio.ensure_future(anext(subscription))
    await asyncio.sleep(0.01)

    subscription.close()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(waiting, timeout=1)


@pytest.mark.asyncio
async def test_loader_failure_ends_subscription_with_error():
    feed = ChangeFeed()

    async def loader():
        raise fail(ErrorCode.CHAT_NOT_FOUND, "Chat not found")

    subscription = feed.subscribe(["topic"], loader)
    with pytest.raises(StopAsyncIteration):
        await anext(subscription)
    assert subscription.error.code == ErrorCode.CHAT_NOT_FOUND
    assert feed.subscriber_count("topic") == 0


@pytest.mark.asyncio
async def test_unexpected_loader_failure_is_backend_error(monkeypatch):
    captured = []
    monkeypatch.setattr(
        "wherewhen.services.change_feed.sentry_sdk.capture_exception", captured.append
    )
    feed = ChangeFeed()

    async def loader():
        raise RuntimeError("connection reset")

    subscription = feed.subscribe(["topic"], loader)
    with pytest.raises(StopAsyncIteration):
        await anext(subscription)
    assert subscription.error.code == ErrorCode.BACKEND_FAILURE
    assert len(captured) == 1


# ── Live queries ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_observe_friends(core, alice, bob):
    subscription = (await core.friendships.observe_friends(alice.id)).unwrap()
    assert await anext(subscription) == []

    request = (await core.friendships.send_request(alice.id, bob.id)).unwrap()
    await core.friendships.accept_request(request.id, bob.id)

    friends = await anext(subscription)
    assert [profile.id for profile in friends] == [bob.id]

    await core.friendships.remove_friend(bob.id, alice.id)
    assert await anext(subscription) == []
    subscription.close()


@pytest.mark.asyncio
async def test_observe_request_lists(core, alice, bob):
    pending = (await core.friendships.observe_pending_requests(bob.id)).unwrap()
    sent = (await core.friendships.observe_sent_requests(alice.id)).unwrap()
    assert await anext(pending) == []
    assert await anext(sent) == []

    request = (await core.friendships.send_request(alice.id, bob.id)).unwrap()
    assert [entry.request.id for entry in await anext(pending)] == [request.id]
    assert [entry.user.id for entry in await anext(sent)] == [bob.id]

    await core.friendships.reject_request(request.id, bob.id)
    assert await anext(pending) == []
    assert await anext(sent) == []


@pytest.mark.asyncio
async def test_accept_notifies_reciprocal_request_lists(core, alice, bob):
    request = (await core.friendships.send_request(alice.id, bob.id)).unwrap()
    reciprocal = (await core.friendships.send_request(bob.id, alice.id)).unwrap()

    pending = (await core.friendships.observe_pending_requests(alice.id)).unwrap()
    sent = (await core.friendships.observe_sent_requests(bob.id)).unwrap()
    assert [entry.request.id for entry in await anext(pending)] == [reciprocal.id]
    assert [entry.request.id for entry in await anext(sent)] == [reciprocal.id]

    assert (await core.friendships.accept_request(request.id, bob.id)).ok
    assert await asyncio.wait_for(anext(pending), timeout=1) == []
    assert await asyncio.wait_for(anext(sent), timeout=1) == []
    pending.close()
    sent.close()


@pytest.mark.asyncio
async def test_failed_mutation_does_not_notify(core, alice, bob):
    subscription = (await core.friendships.observe_pending_requests(bob.id)).unwrap()
    await anext(subscription)
    assert (await core.friendships.send_request(alice.id, bob.id)).ok
    await anext(subscription)

    # Duplicate is rolled back, so nothing is published
    assert not (await core.friendships.send_request(alice.id, bob.id)).ok
    waiting = asyncio.ensure_future(anext(subscription))
    await asyncio.sleep(0.01)
    assert not waiting.done()
    subscription.close()
    with pytest.raises(StopAsyncIteration):
        await waiting


@pytest.mark.asyncio
async def test_observe_messages(core, alice, bob):
    chat = (await core.chats.create_or_get_chat(alice.id, bob.id)).unwrap()
    subscription = (await core.chats.observe_messages(chat.id, bob.id)).unwrap()
    assert await anext(subscription) == []

    for text in ("one", "two", "three"):
        await core.chats.send_message(chat.id, alice.id, text)

    messages = await anext(subscription)
    assert [m.content for m in messages] == ["one", "two", "three"]
    assert core.feed.subscriber_count(chat_messages_topic(chat.id)) == 1
    subscription.close()
    assert core.feed.subscriber_count(chat_messages_topic(chat.id)) == 0


@pytest.mark.asyncio
async def test_observe_messages_requires_participant(core, alice, bob, carol):
    chat = (await core.chats.create_or_get_chat(alice.id, bob.id)).unwrap()
    result = await core.chats.observe_messages(chat.id, carol.id)
    assert result.error.code == ErrorCode.NOT_CHAT_PARTICIPANT
    assert core.feed.subscriber_count(chat_messages_topic(chat.id)) == 0


@pytest.mark.asyncio
async def test_observe_user_chats(core, alice, bob):
    subscription = (await core.chats.observe_user_chats(bob.id)).unwrap()
    assert await anext(subscription) == []

    chat = (await core.chats.create_or_get_chat(alice.id, bob.id)).unwrap()
    chats = await anext(subscription)
    assert [entry.chat.id for entry in chats] == [chat.id]
    assert chats[0].unread_count == 0

    await core.chats.send_message(chat.id, alice.id, "hey")
    chats = await anext(subscription)
    assert chats[0].last_message == "hey"
    assert chats[0].unread_count == 1

    await core.chats.mark_all_as_read(chat.id, bob.id)
    chats = await anext(subscription)
    assert chats[0].unread_count == 0
    subscription.close()


@pytest.mark.asyncio
async def test_observe_with_invalid_identifier(core):
    result = await core.friendships.observe_friends("nope")
    assert result.error.code == ErrorCode.INVALID_IDENTIFIER
    assert core.feed.subscriber_count(friends_topic("nope")) == 0
    assert core.feed.subscriber_count(pending_requests_topic("nope")) == 0
