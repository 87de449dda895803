from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from counsel_core.app_config import AppConfig, RuntimeEnv
from counsel_core.auth import AuthUser, LocalAuthService, require_user
from counsel_core.conversations import ConversationStore
from counsel_core.ledger.session_ledger import SessionLedger
from counsel_core.logging_config import setup_logging
from counsel_core.notifications import NotificationRouter
from counsel_core.payments.checkout import ManualCheckout, PaymentCheckout
from counsel_core.payments.paystack import PaystackCheckout
from counsel_core.store import ChangeFeed, SqliteRecordStore

_PLACEHOLDER_PUBLIC_KEY = "pk_test_xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"


@dataclass
class CoreRuntime:
    store: SqliteRecordStore
    feed: ChangeFeed
    auth: LocalAuthService
    notifications: NotificationRouter
    conversations: ConversationStore
    ledger: SessionLedger
    checkout: PaymentCheckout
    log_descriptions: list[str]
    _auth_unsubscribe: Callable[[], None] | None = field(default=None, repr=False)
    _user_id: str | None = field(default=None, repr=False)

    async def on_session_change(self, user: AuthUser | None) -> None:
        previous = self._user_id
        self._user_id = user.id if user is not None else None
        if previous is not None and previous != self._user_id:
            await self.conversations.teardown()
            await self.notifications.teardown()
            logger.info(f"Session for {previous} ended; subscriptions and caches cleared")
        if user is not None:
            await self.notifications.init(user.id)

    async def open_chat(self, counselor_id: str) -> str:
        """Start (or reopen) the signed-in client's chat with a counselor."""
        user = require_user(self.auth)
        return await self.conversations.start_chat(user.id, counselor_id)

    async def shutdown(self) -> None:
        if self._auth_unsubscribe is not None:
            self._auth_unsubscribe()
            self._auth_unsubscribe = None
        await self.conversations.teardown()
        await self.notifications.teardown()
        await self.feed.close()
        self.store.close()


def create_checkout(app: AppConfig, env: RuntimeEnv) -> PaymentCheckout:
    if app.checkout_mode == "paystack":
        if not env.paystack_secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY is required when CheckoutMode is 'paystack'")
        return PaystackCheckout(
            env.paystack_secret_key,
            base_url=app.paystack_base_url,
            callback_url=app.paystack_callback_url,
        )
    if app.checkout_mode == "manual":
        return ManualCheckout(env.paystack_public_key or _PLACEHOLDER_PUBLIC_KEY)
    raise ValueError(f"Unknown checkout mode: {app.checkout_mode!r}. Supported: 'manual', 'paystack'")


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    checkout: PaymentCheckout | None = None,
    configure_logging: bool = True,
) -> CoreRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    db_path = app.database_path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        db_path = str(Path.cwd() / db_path)

    feed = ChangeFeed()
    await feed.start()
    store = SqliteRecordStore(db_path, feed)
    auth = LocalAuthService(store)
    notifications = NotificationRouter(
        store,
        feed,
        banner_duration_ms=app.banner_duration_ms,
        fetch_limit=app.notification_fetch_limit,
    )
    conversations = ConversationStore(
        store,
        feed,
        notifications,
        max_message_length=app.max_message_length,
        preview_chars=app.notification_preview_chars,
    )
    payment_checkout = checkout or create_checkout(app, env)
    ledger = SessionLedger(
        store,
        conversations,
        notifications,
        payment_checkout,
        session_price_kobo=app.session_price_kobo,
        commission_percentage=app.commission_percentage,
    )
    conversations.set_access_gate(ledger.can_chat)

    runtime = CoreRuntime(
        store=store,
        feed=feed,
        auth=auth,
        notifications=notifications,
        conversations=conversations,
        ledger=ledger,
        checkout=payment_checkout,
        log_descriptions=log_descriptions,
    )
    runtime._auth_unsubscribe = auth.on_session_change(runtime.on_session_change)
    logger.info(f"Core runtime ready (db={db_path}, checkout={app.checkout_mode})")
    return runtime
