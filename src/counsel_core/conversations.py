from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Protocol

from loguru import logger

from counsel_core.errors import (
    ChatLockedError,
    MessageValidationError,
    RecordNotFound,
    SendError,
    StoreError,
    UniqueViolation,
)
from counsel_core.store.change_feed import INSERT, UPDATE, ChangeFeed, Subscription
from counsel_core.store.models import Conversation, Message, Notification, NotificationType
from counsel_core.store.record_store import FeedEvent, Order, RecordStore, eq

MessageListener = Callable[[Message], Awaitable[None] | None]
ConversationListener = Callable[[list[Conversation]], None]
AccessGate = Callable[[str, str], Awaitable[bool]]


class Notifier(Protocol):
    async def notify(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        body: str,
        data: dict | None = None,
    ) -> Notification: ...


def preview_text(text: str, max_chars: int = 50) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class ConversationStore:
    def __init__(
        self,
        store: RecordStore,
        feed: ChangeFeed,
        notifier: Notifier,
        *,
        max_message_length: int = 1000,
        preview_chars: int = 50,
        access_gate: AccessGate | None = None,
    ):
        self._store = store
        self._feed = feed
        self._notifier = notifier
        self._max_message_length = max_message_length
        self._preview_chars = preview_chars
        self._access_gate = access_gate
        self._conversations: dict[str, Conversation] = {}
        self._pair_index: dict[tuple[str, str], str] = {}
        self._pending_pairs: dict[tuple[str, str], asyncio.Task] = {}
        self._logs: dict[str, tuple[Message, ...]] = {}
        self._seen: dict[str, set[str]] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._list_subscription: Subscription | None = None

    def set_access_gate(self, access_gate: AccessGate | None) -> None:
        self._access_gate = access_gate

    async def ensure_conversation(self, client_id: str, counselor_id: str) -> str:
        pair = (client_id, counselor_id)
        cached = self._pair_index.get(pair)
        if cached is not None:
            return cached

        task = self._pending_pairs.get(pair)
        if task is None:
            task = asyncio.create_task(self._resolve_pair(client_id, counselor_id))
            self._pending_pairs[pair] = task
            task.add_done_callback(lambda _t, p=pair: self._pending_pairs.pop(p, None))
        return await asyncio.shield(task)

    async def start_chat(self, client_id: str, counselor_id: str) -> str:
        if self._access_gate is not None and not await self._access_gate(client_id, counselor_id):
            raise ChatLockedError(client_id, counselor_id)
        return await self.ensure_conversation(client_id, counselor_id)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        cached = self._conversations.get(conversation_id)
        if cached is not None:
            return cached
        rows = await self._store.select("conversations", eq(id=conversation_id), limit=1)
        if not rows:
            raise RecordNotFound("conversations", conversation_id)
        return self._remember(Conversation.from_row(rows[0]))

    async def list_conversations(self, user_id: str, role: str) -> list[Conversation]:
        rows = await self._store.select(
            "conversations",
            self._role_filter(user_id, role),
            order=Order("last_message_at", descending=True, nulls_last=True),
        )
        return [self._remember(Conversation.from_row(row)) for row in rows]

    async def watch_conversations(self, user_id: str, role: str, on_change: ConversationListener) -> Subscription:
        if self._list_subscription is not None:
            self._list_subscription.unsubscribe()

        async def refresh(_event: FeedEvent) -> None:
            on_change(await self.list_conversations(user_id, role))

        self._list_subscription = self._feed.subscribe(
            "conversations",
            [INSERT, UPDATE],
            self._role_filter(user_id, role),
            refresh,
        )
        return self._list_subscription

    async def load_history(self, conversation_id: str) -> list[Message]:
        rows = await self._store.select(
            "messages",
            eq(conversation_id=conversation_id),
            order=Order("created_at"),
        )
        fetched = [Message.from_row(row) for row in rows]
        fetched_ids = {m.id for m in fetched}
        newer = [m for m in self._logs.get(conversation_id, ()) if m.id not in fetched_ids]
        merged = tuple(fetched + newer)
        self._logs[conversation_id] = merged
        self._seen[conversation_id] = {m.id for m in merged}
        return list(merged)

    def messages(self, conversation_id: str) -> tuple[Message, ...]:
        return self._logs.get(conversation_id, ())

    def subscribe(self, conversation_id: str, on_message: MessageListener | None = None) -> Subscription:
        previous = self._subscriptions.pop(conversation_id, None)
        if previous is not None:
            logger.debug(f"Replacing message feed for {conversation_id}")
            previous.unsubscribe()
        subscription = self._feed.subscribe(
            "messages",
            [INSERT],
            eq(conversation_id=conversation_id),
            partial(self._on_message_event, conversation_id, on_message),
        )
        self._subscriptions[conversation_id] = subscription
        return subscription

    def unsubscribe(self, conversation_id: str) -> None:
        subscription = self._subscriptions.pop(conversation_id, None)
        if subscription is not None:
            subscription.unsubscribe()

    @property
    def active_subscriptions(self) -> list[str]:
        return [cid for cid, sub in self._subscriptions.items() if sub.active]

    async def send(self, conversation_id: str, sender_id: str, text: str) -> Message:
        content = text.strip()
        if not content:
            raise MessageValidationError("Message cannot be empty")
        if len(content) > self._max_message_length:
            raise MessageValidationError(f"Message exceeds {self._max_message_length} characters")

        try:
            conversation = await self.get_conversation(conversation_id)
            if not conversation.has_participant(sender_id):
                raise MessageValidationError(f"Sender {sender_id} is not part of conversation {conversation_id}")
            row = await self._store.insert(
                "messages",
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "content": content,
                    "is_read": False,
                },
            )
        except StoreError as ex:
            logger.warning(f"Send failed in {conversation_id}: {ex}")
            raise SendError(text, ex) from ex

        message = Message.from_row(row)
        self._append(message)
        await self._touch_last_message_at(conversation, message.created_at)

        recipient_id = conversation.other_participant(sender_id)
        try:
            await self._notifier.notify(
                recipient_id,
                NotificationType.NEW_MESSAGE,
                "New Message",
                preview_text(content, self._preview_chars),
                {"conversation_id": conversation_id, "message_id": message.id},
            )
        except StoreError as ex:
            logger.error(f"Message {message.id} sent but notification for {recipient_id} failed: {ex}")
        return message

    async def teardown(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._list_subscription is not None:
            self._list_subscription.unsubscribe()
            self._list_subscription = None
        for task in list(self._pending_pairs.values()):
            task.cancel()
        self._pending_pairs.clear()
        self._conversations.clear()
        self._pair_index.clear()
        self._logs.clear()
        self._seen.clear()

    async def _resolve_pair(self, client_id: str, counselor_id: str) -> str:
        existing = await self._lookup_pair(client_id, counselor_id)
        if existing is not None:
            return existing.id
        try:
            row = await self._store.insert(
                "conversations",
                {"client_id": client_id, "counselor_id": counselor_id},
            )
        except UniqueViolation:
            logger.warning(f"Conversation for {client_id}/{counselor_id} created concurrently; re-querying")
            existing = await self._lookup_pair(client_id, counselor_id)
            if existing is None:
                raise
            return existing.id
        conversation = self._remember(Conversation.from_row(row))
        logger.info(f"Created conversation {conversation.id} for {client_id}/{counselor_id}")
        return conversation.id

    async def _lookup_pair(self, client_id: str, counselor_id: str) -> Conversation | None:
        rows = await self._store.select(
            "conversations",
            eq(client_id=client_id, counselor_id=counselor_id),
            limit=1,
        )
        if not rows:
            return None
        return self._remember(Conversation.from_row(rows[0]))

    async def _touch_last_message_at(self, conversation: Conversation, created_at: str) -> None:
        current = self._conversations.get(conversation.id, conversation).last_message_at
        if current is not None and current >= created_at:
            return
        try:
            await self._store.update("conversations", eq(id=conversation.id), {"last_message_at": created_at})
        except StoreError as ex:
            logger.error(f"Could not bump last_message_at on {conversation.id}: {ex}")
            return
        self._remember(
            Conversation(
                id=conversation.id,
                client_id=conversation.client_id,
                counselor_id=conversation.counselor_id,
                created_at=conversation.created_at,
                last_message_at=created_at,
            )
        )

    async def _on_message_event(
        self,
        conversation_id: str,
        on_message: MessageListener | None,
        event: FeedEvent,
    ) -> None:
        message = Message.from_row(event.new)
        if message.conversation_id != conversation_id or not self._append(message):
            return
        if on_message is not None:
            result = on_message(message)
            if inspect.isawaitable(result):
                await result

    def _append(self, message: Message) -> bool:
        seen = self._seen.setdefault(message.conversation_id, set())
        if message.id in seen:
            return False
        seen.add(message.id)
        self._logs[message.conversation_id] = self._logs.get(message.conversation_id, ()) + (message,)
        return True

    def _remember(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        self._pair_index[(conversation.client_id, conversation.counselor_id)] = conversation.id
        return conversation

    def _role_filter(self, user_id: str, role: str):
        if role == "client":
            return eq(client_id=user_id)
        if role == "counselor":
            return eq(counselor_id=user_id)
        raise ValueError(f"Unknown role: {role!r}")
