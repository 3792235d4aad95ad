"""Live query subscriptions.

A :class:`Subscription` delivers a full snapshot on first read and a fresh one
after every change published on any of its topics. Publishes that land while
the consumer is busy coalesce into a single reload, so a slow consumer only
ever sees the newest state.
"""
import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

import sentry_sdk

from wherewhen.errors import DomainError, DomainFailure, backend_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def friends_topic(user_id) -> str:
    return f"friends:{user_id}"


def pending_requests_topic(user_id) -> str:
    return f"pending-requests:{user_id}"


def sent_requests_topic(user_id) -> str:
    return f"sent-requests:{user_id}"


def user_chats_topic(user_id) -> str:
    return f"user-chats:{user_id}"


def chat_messages_topic(chat_id) -> str:
    return f"chat-messages:{chat_id}"


class Subscription(Generic[T]):
    def __init__(
        self,
        feed: "ChangeFeed",
        topics: tuple[str, ...],
        loader: Callable[[], Awaitable[T]],
    ) -> None:
        self._feed = feed
        self.topics = topics
        self._loader = loader
        self._dirty = asyncio.Event()
        self._dirty.set()
        self._closed = False
        self.error: DomainError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> None:
        self._dirty.set()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        await self._dirty.wait()
        if self._closed:
            raise StopAsyncIteration
        self._dirty.clear()
        try:
            return await self._loader()
        except DomainFailure as exc:
            self.error = exc.error
        except Exception as exc:
            logger.exception("Snapshot reload failed for %s", ", ".join(self.topics))
            sentry_sdk.capture_exception(exc)
            self.error = backend_error(exc)
        self.close()
        raise StopAsyncIteration

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._unregister(self)
        # Wake a consumer blocked in __anext__ so it can finish
        self._dirty.set()

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class ChangeFeed:
    """In-process registry of live subscriptions keyed by topic."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(
        self, topics: Iterable[str], loader: Callable[[], Awaitable[T]]
    ) -> Subscription[T]:
        subscription = Subscription(self, tuple(topics), loader)
        for topic in subscription.topics:
            self._subscribers[topic].add(subscription)
        return subscription

    def publish(self, *topics: str) -> None:
        for topic in topics:
            for subscription in list(self._subscribers.get(topic, ())):
                subscription.notify()

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def _unregister(self, subscription: Subscription) -> None:
        for topic in subscription.topics:
            subscribers = self._subscribers.get(topic)
            if subscribers is None:
                continue
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[topic]
