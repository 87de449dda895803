from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from loguru import logger

from counsel_core.errors import AuthRequiredError
from counsel_core.store.change_feed import INSERT, ChangeFeed, Subscription
from counsel_core.store.models import Notification, NotificationType
from counsel_core.store.record_store import FeedEvent, Order, RecordStore, eq

ChangeListener = Callable[[tuple[Notification, ...]], None]


class NotificationRouter:
    """Per-user inbox: live feed, single banner slot and the unread ledger.

    The list is replaced wholesale on every mutation, so readers never
    observe a half-applied change. `unread_count` is always derived from
    the list.
    """

    def __init__(
        self,
        store: RecordStore,
        feed: ChangeFeed,
        *,
        banner_duration_ms: int = 4000,
        fetch_limit: int = 50,
    ):
        self._store = store
        self._feed = feed
        self._banner_duration_ms = max(0, banner_duration_ms)
        self._fetch_limit = max(1, fetch_limit)
        self._user_id: str | None = None
        self._notifications: tuple[Notification, ...] = ()
        self._banner: Notification | None = None
        self._banner_task: asyncio.Task | None = None
        self._subscription: Subscription | None = None
        self._listeners: list[ChangeListener] = []

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def notifications(self) -> tuple[Notification, ...]:
        return self._notifications

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications if not n.is_read)

    @property
    def current_banner(self) -> Notification | None:
        return self._banner

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def init(self, user_id: str) -> None:
        if self._user_id == user_id and self._subscription is not None:
            return
        if self._user_id is not None:
            await self.teardown()

        self._user_id = user_id
        self._subscription = self._feed.subscribe(
            "notifications",
            [INSERT],
            eq(user_id=user_id),
            self._on_feed_event,
        )
        rows = await self._store.select(
            "notifications",
            eq(user_id=user_id),
            order=Order("created_at", descending=True),
            limit=self._fetch_limit,
        )
        if self._user_id != user_id:
            return
        fetched = [Notification.from_row(row) for row in rows]
        fetched_ids = {n.id for n in fetched}
        live = [n for n in self._notifications if n.id not in fetched_ids]
        self._set_notifications(tuple(live + fetched))
        logger.info(f"Notifications ready for {user_id}: {len(fetched)} loaded, {self.unread_count} unread")

    async def teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        await self._cancel_banner_timer()
        self._banner = None
        self._user_id = None
        self._set_notifications(())

    def dismiss(self, notification_id: str | None = None) -> None:
        if self._banner is None:
            return
        if notification_id is not None and self._banner.id != notification_id:
            return
        self._banner = None
        if self._banner_task is not None and self._banner_task is not asyncio.current_task():
            self._banner_task.cancel()
        self._banner_task = None
        self._emit()

    async def mark_read(self, notification_id: str) -> None:
        user_id = self._require_user()
        previous = next((n for n in self._notifications if n.id == notification_id), None)
        if previous is None or previous.is_read:
            return
        self._patch_read({notification_id}, True)
        try:
            await self._store.update(
                "notifications",
                eq(id=notification_id, user_id=user_id),
                {"is_read": True},
            )
        except Exception:
            logger.warning(f"mark_read failed for {notification_id}; rolling back")
            self._patch_read({notification_id}, False)
            raise

    async def mark_all_read(self) -> None:
        user_id = self._require_user()
        unread_ids = {n.id for n in self._notifications if not n.is_read}
        if not unread_ids:
            return
        self._patch_read(unread_ids, True)
        try:
            await self._store.update(
                "notifications",
                eq(user_id=user_id, is_read=False),
                {"is_read": True},
            )
        except Exception:
            logger.warning(f"mark_all_read failed for {user_id}; rolling back {len(unread_ids)} entries")
            self._patch_read(unread_ids, False)
            raise

    async def notify(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        row = await self._store.insert(
            "notifications",
            {
                "user_id": recipient_id,
                "type": NotificationType(type),
                "title": title,
                "body": body,
                "data": dict(data or {}),
                "is_read": False,
            },
        )
        logger.debug(f"Notification {row['id']} ({row['type']}) queued for {recipient_id}")
        return Notification.from_row(row)

    async def _on_feed_event(self, event: FeedEvent) -> None:
        if event.new.get("user_id") != self._user_id:
            return
        notification = Notification.from_row(event.new)
        if any(n.id == notification.id for n in self._notifications):
            return
        self._notifications = (notification,) + self._notifications
        await self._show_banner(notification)
        self._emit()

    async def _show_banner(self, notification: Notification) -> None:
        await self._cancel_banner_timer()
        self._banner = notification
        if self._banner_duration_ms > 0:
            self._banner_task = asyncio.create_task(self._auto_dismiss(notification.id))

    async def _auto_dismiss(self, notification_id: str) -> None:
        await asyncio.sleep(self._banner_duration_ms / 1000)
        self.dismiss(notification_id)

    async def _cancel_banner_timer(self) -> None:
        task = self._banner_task
        self._banner_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _patch_read(self, ids: set[str], is_read: bool) -> None:
        self._set_notifications(
            tuple(replace(n, is_read=is_read) if n.id in ids else n for n in self._notifications)
        )

    def _set_notifications(self, notifications: tuple[Notification, ...]) -> None:
        self._notifications = notifications
        self._emit()

    def _emit(self) -> None:
        snapshot = self._notifications
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as ex:
                logger.error(f"Notification listener failed: {ex}")

    def _require_user(self) -> str:
        if self._user_id is None:
            raise AuthRequiredError("No signed-in user for notifications")
        return self._user_id
