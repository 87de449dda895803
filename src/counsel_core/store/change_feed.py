from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from itertools import count

from loguru import logger

from counsel_core.store.record_store import FeedEvent, Filter

FeedListener = Callable[[FeedEvent], Awaitable[None] | None]

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

_handle_ids = count(1)


class Subscription:
    def __init__(
        self,
        feed: ChangeFeed,
        collection: str,
        event_types: frozenset[str],
        filter: Filter | None,
        listener: FeedListener,
    ):
        self.id = next(_handle_ids)
        self.collection = collection
        self.event_types = event_types
        self.filter = filter
        self._feed = feed
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: FeedEvent) -> bool:
        if not self._active or event.collection != self.collection:
            return False
        if event.type not in self.event_types:
            return False
        return self.filter is None or self.filter.matches(event.new)

    def unsubscribe(self) -> None:
        if self._active:
            self._feed.unsubscribe(self)

    def _deactivate(self) -> None:
        self._active = False


class ChangeFeed:
    """Row-change push channel.

    Store writes are queued by `publish` and a dispatcher task drains the
    queue, so listener timing never depends on where the write happened.
    Delivery is at-least-once from the listener's point of view; consumers
    dedupe by row id.
    """

    def __init__(self, *, batch_size: int = 50):
        self._batch_size = max(1, batch_size)
        self._queue: asyncio.Queue[FeedEvent] = asyncio.Queue()
        self._subscriptions: dict[int, Subscription] = {}
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> None:
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run())

    def subscribe(
        self,
        collection: str,
        event_types: Iterable[str],
        filter: Filter | None,
        on_event: FeedListener,
    ) -> Subscription:
        subscription = Subscription(self, collection, frozenset(event_types), filter, on_event)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Feed subscribe #{subscription.id}: {collection} {sorted(subscription.event_types)}")
        return subscription

    def unsubscribe(self, handle: Subscription) -> None:
        handle._deactivate()
        if self._subscriptions.pop(handle.id, None) is not None:
            logger.debug(f"Feed unsubscribe #{handle.id}: {handle.collection}")

    def publish(self, event: FeedEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)
        if self._task is None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            self._task = asyncio.create_task(self._run())

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._task is None:
            while not self._queue.empty():
                await self._dispatch(self._queue.get_nowait())
                self._queue.task_done()
            return
        await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for subscription in list(self._subscriptions.values()):
            subscription._deactivate()
        self._subscriptions.clear()

    async def _run(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self._batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            for event in batch:
                try:
                    await self._dispatch(event)
                finally:
                    self._queue.task_done()

    async def _dispatch(self, event: FeedEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            try:
                result = subscription._listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as ex:
                logger.error(f"Feed listener #{subscription.id} failed on {event.collection} {event.type}: {ex}")
