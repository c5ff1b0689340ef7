"""
Live sequences for push-based reads.

Long-lived reads ("all hikes for user X", "the current authentication
state") are delivered as ``Subscription`` objects: async iterators that
stay open until the consumer closes them. Closing a subscription is
deterministic and runs its close callbacks, which is how the underlying
listener (a change-notification subscription or a polling task) is
detached.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Generic, TypeVar

from .result import LOADING, Error, Result, safe_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T], AsyncIterator[T]):
    """Consumer handle of a live sequence.

    Iterate with ``async for``; call ``close()`` (or leave an
    ``async with`` block) to unsubscribe.
    """

    def __init__(self, on_close: Callable[[], Any] | None = None) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._close_callbacks: list[Callable[[], Any]] = []
        self._closed = False
        if on_close is not None:
            self._close_callbacks.append(on_close)

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(self, callback: Callable[[], Any]) -> None:
        """Register a callback to run when the subscription closes."""
        if self._closed:
            callback()
        else:
            self._close_callbacks.append(callback)

    def push(self, item: T) -> None:
        """Deliver an item to the consumer. Ignored once closed."""
        if not self._closed:
            self._queue.put_nowait(item)

    def end(self) -> None:
        """Signal end-of-stream from the producer side."""
        if not self._closed:
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Unsubscribe and detach the underlying listener. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Subscription close callback failed")

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel so repeated __anext__ calls also stop
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def first(self) -> T:
        """Return the next item, raising ``StopAsyncIteration`` if the stream ended."""
        return await self.__anext__()

    async def __aenter__(self) -> Subscription[T]:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class Channel(Generic[T]):
    """Publish/subscribe fan-out to any number of subscriptions."""

    def __init__(self) -> None:
        self._subscribers: set[Subscription[T]] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription()
        if self._closed:
            subscription.end()
            return subscription
        self._subscribers.add(subscription)
        subscription.add_close_callback(lambda: self._subscribers.discard(subscription))
        return subscription

    def publish(self, item: T) -> None:
        for subscription in list(self._subscribers):
            subscription.push(item)

    def close(self) -> None:
        """End every subscription; later subscribers receive an empty stream."""
        self._closed = True
        for subscription in list(self._subscribers):
            subscription.end()
        self._subscribers.clear()


def _same_result(current: Result[Any], previous: Result[Any] | None) -> bool:
    """Equality for de-duplication; errors match on exception type and message."""
    if isinstance(current, Error) and isinstance(previous, Error):
        return type(current.cause) is type(previous.cause) and current.message == previous.message
    return current == previous


def live_results(
    fetch: Callable[[], Awaitable[T]],
    changes: Subscription[Any] | None = None,
    poll_interval: float | None = None,
    emit_loading: bool = True,
) -> Subscription[Result[T]]:
    """Turn a one-shot query into a live ``Result`` sequence.

    The query runs once immediately, then again after every item on
    ``changes`` (local change notifications) or every ``poll_interval``
    seconds (remote stores without push listeners). A value is only
    emitted when it differs from the previous one.

    Closing the returned subscription cancels the refresh task and
    closes ``changes``.
    """
    if changes is None and poll_interval is None:
        raise ValueError("live_results needs a change subscription or a poll interval")

    subscription: Subscription[Result[T]] = Subscription()

    async def run() -> None:
        if emit_loading:
            subscription.push(LOADING)
        last: Result[T] | None = None
        while not subscription.closed:
            result = await safe_call(fetch)
            if not _same_result(result, last):
                subscription.push(result)
                last = result
            if changes is not None:
                try:
                    await changes.__anext__()
                except StopAsyncIteration:
                    break
            else:
                await asyncio.sleep(poll_interval)  # type: ignore[arg-type]
        subscription.end()

    task = asyncio.create_task(run())

    def detach() -> None:
        task.cancel()
        if changes is not None:
            changes.close()

    subscription.add_close_callback(detach)
    return subscription
