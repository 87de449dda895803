from __future__ import annotations

import asyncio
from typing import Any

from counsel_core.conversations import ConversationStore, Notifier
from counsel_core.errors import (
    BookingIncompleteError,
    CoreError,
    InvalidTransitionError,
    LedgerInvariantError,
    PaymentVerificationError,
    RecordNotFound,
    StoreError,
    UniqueViolation,
)
from counsel_core.ledger.pricing import (
    COMMISSION_PERCENTAGE,
    SESSION_PRICE_KOBO,
    check_split,
    generate_payment_reference,
    split_amount,
)
from counsel_core.ledger.state_machine import STAMPS, check_transition, unlocks_chat
from counsel_core.logging_config import component_logger
from counsel_core.payments.checkout import CheckoutRequest, PaymentCheckout, PaymentVerification
from counsel_core.store.models import CreditPurchase, NotificationType, Session, SessionStatus, utc_now
from counsel_core.store.record_store import Order, RecordStore, eq, or_

log = component_logger("ledger")

_BALANCE_WRITE_ATTEMPTS = 3


class SessionLedger:
    """Paid sessions and the credit balance, the two ways to unlock chat.

    A session moves pending -> paid -> completed, with cancelled and
    refunded as side exits. Once a payment is confirmed the session is
    never moved back: bookkeeping failures after that point raise
    BookingIncompleteError and a later confirm_payment call with the same
    external reference resumes the unfinished steps.
    """

    def __init__(
        self,
        store: RecordStore,
        conversations: ConversationStore,
        notifier: Notifier,
        checkout: PaymentCheckout,
        *,
        session_price_kobo: int = SESSION_PRICE_KOBO,
        commission_percentage: int = COMMISSION_PERCENTAGE,
    ):
        self._store = store
        self._conversations = conversations
        self._notifier = notifier
        self._checkout = checkout
        self._session_price_kobo = session_price_kobo
        self._commission_percentage = commission_percentage
        self._pending_bookings: dict[str, asyncio.Task] = {}

    async def create_pending_session(
        self,
        client_id: str,
        counselor_id: str,
        amount: int | None = None,
        *,
        payment_reference: str | None = None,
        scheduled_at: str | None = None,
    ) -> Session:
        split = split_amount(self._session_price_kobo if amount is None else amount, self._commission_percentage)
        row = await self._store.insert(
            "sessions",
            {
                "client_id": client_id,
                "counselor_id": counselor_id,
                "scheduled_at": scheduled_at,
                "status": SessionStatus.PENDING,
                "amount": split.amount,
                "commission": split.commission,
                "counselor_payout": split.payout,
                "payment_reference": payment_reference or generate_payment_reference(),
            },
        )
        session = Session.from_row(row)
        log.info(f"Session {session.id} pending: {session.amount} kobo, ref {session.payment_reference}")
        return session

    async def begin_session_checkout(
        self,
        client_id: str,
        counselor_id: str,
        email: str,
        amount: int | None = None,
    ) -> tuple[Session, CheckoutRequest]:
        session = await self.create_pending_session(client_id, counselor_id, amount)
        checkout = await self._checkout.initialize(session.amount, session.payment_reference, email)
        return session, checkout

    async def get_session(self, session_id: str) -> Session:
        rows = await self._store.select("sessions", eq(id=session_id), limit=1)
        if not rows:
            raise RecordNotFound("sessions", session_id)
        return Session.from_row(rows[0])

    async def list_sessions(self, user_id: str, role: str) -> list[Session]:
        field = "client_id" if role == "client" else "counselor_id"
        rows = await self._store.select("sessions", eq(**{field: user_id}), order=Order("created_at", descending=True))
        return [Session.from_row(row) for row in rows]

    async def confirm_payment(
        self,
        session_id: str,
        external_reference: str,
        *,
        client_name: str | None = None,
    ) -> Session:
        session = await self.get_session(session_id)

        if session.status == SessionStatus.PENDING:
            try:
                session = await self._transition(session, SessionStatus.PAID, {"paystack_reference": external_reference})
            except InvalidTransitionError:
                session = await self.get_session(session_id)
                if session.status != SessionStatus.PAID:
                    raise
            except StoreError as ex:
                log.error(f"Payment {external_reference} for session {session_id} not recorded: {ex}")
                raise BookingIncompleteError(session.payment_reference, "status", ex) from ex
            else:
                log.info(f"Session {session_id} paid (external ref {external_reference})")

        if session.status == SessionStatus.PAID:
            if session.paystack_reference not in (None, external_reference):
                raise PaymentVerificationError(
                    f"Session {session_id} was paid with {session.paystack_reference}, not {external_reference}"
                )
        elif not (session.status == SessionStatus.COMPLETED and session.bookkeeping_done):
            raise InvalidTransitionError(session.id, session.status.value, SessionStatus.PAID.value)

        if session.bookkeeping_done:
            return session

        task = self._pending_bookings.get(session.id)
        if task is None:
            task = asyncio.create_task(self._finish_booking(session, client_name))
            self._pending_bookings[session.id] = task
            task.add_done_callback(lambda _t, sid=session.id: self._pending_bookings.pop(sid, None))
        return await asyncio.shield(task)

    async def verify_and_confirm(self, session_id: str, *, client_name: str | None = None) -> Session:
        session = await self.get_session(session_id)
        verification = await self._checkout.verify(session.payment_reference)
        self._check_verification(verification, session.amount)
        return await self.confirm_payment(
            session_id,
            verification.external_reference or session.payment_reference,
            client_name=client_name,
        )

    async def handle_webhook(self, verification: PaymentVerification) -> Session | int | None:
        """Route a verified processor hook to the session or credit purchase it pays for."""
        if not verification.success:
            log.info(f"Ignoring unsuccessful payment hook for {verification.reference}")
            return None
        rows = await self._store.select("sessions", eq(payment_reference=verification.reference), limit=1)
        if rows:
            session = Session.from_row(rows[0])
            self._check_verification(verification, session.amount)
            return await self.confirm_payment(session.id, verification.external_reference or verification.reference)
        purchases = await self._store.select("credit_transactions", eq(payment_reference=verification.reference), limit=1)
        if purchases:
            self._check_verification(verification, int(purchases[0]["naira_amount"]) * 100)
            return await self.confirm_credit_purchase(verification.reference, verification.external_reference)
        raise RecordNotFound("payment", verification.reference)

    async def cancel(self, session_id: str) -> Session:
        session = await self._transition(await self.get_session(session_id), SessionStatus.CANCELLED)
        log.info(f"Session {session_id} cancelled")
        return session

    async def complete(self, session_id: str) -> Session:
        session = await self._transition(await self.get_session(session_id), SessionStatus.COMPLETED)
        log.info(f"Session {session_id} completed")
        return session

    async def refund(self, session_id: str) -> Session:
        session = await self._transition(await self.get_session(session_id), SessionStatus.REFUNDED)
        log.info(f"Session {session_id} refunded")
        return session

    async def purchase_credits(
        self,
        user_id: str,
        credit_amount: int,
        price_amount: int,
        reference: str | None = None,
        *,
        email: str = "",
    ) -> CreditPurchase:
        if isinstance(credit_amount, bool) or not isinstance(credit_amount, int) or credit_amount <= 0:
            raise CoreError(f"Credit amount must be a positive integer, got {credit_amount!r}")
        check_split(price_amount, 0, price_amount)
        if price_amount % 100:
            raise LedgerInvariantError(f"Credit price must be a whole number of naira, got {price_amount} kobo")
        reference = reference or generate_payment_reference()
        try:
            row = await self._store.insert(
                "credit_transactions",
                {
                    "user_id": user_id,
                    "amount": credit_amount,
                    "type": "purchase",
                    "description": f"Purchased {credit_amount} credits",
                    "payment_reference": reference,
                    "naira_amount": price_amount // 100,
                    "status": "pending",
                },
            )
        except UniqueViolation:
            row = await self._credit_transaction(reference)
            if row["user_id"] != user_id or int(row["amount"]) != credit_amount:
                raise
            log.info(f"Credit purchase {reference} already started; reusing")
        checkout = await self._checkout.initialize(price_amount, reference, email)
        return CreditPurchase.from_row(row, checkout_url=checkout.authorization_url)

    async def confirm_credit_purchase(self, reference: str, external_reference: str | None = None) -> int:
        """Apply a paid credit purchase once. Returns the resulting balance.

        The pending -> applied flip on the transaction row is the
        compare-and-set that makes repeated confirmations of the same
        reference a no-op.
        """
        row = await self._credit_transaction(reference)
        user_id = row["user_id"]
        credits = int(row["amount"])

        claimed = await self._store.update(
            "credit_transactions",
            eq(payment_reference=reference, status="pending"),
            {"status": "applied", "paystack_reference": external_reference or reference},
        )
        if claimed == 0:
            log.info(f"Credit purchase {reference} already applied")
            return await self.get_credit_balance(user_id)

        try:
            balance = await self._add_credits(user_id, credits)
        except Exception as ex:
            log.error(f"Credits for {reference} not added to {user_id}: {ex}")
            try:
                await self._store.update(
                    "credit_transactions",
                    eq(payment_reference=reference, status="applied"),
                    {"status": "pending"},
                )
            except StoreError as revert_ex:
                log.error(f"Could not release credit purchase {reference} for retry: {revert_ex}")
            raise BookingIncompleteError(reference, "credits", ex) from ex
        log.info(f"Added {credits} credits to {user_id} (ref {reference}); balance {balance}")
        return balance

    async def get_credit_balance(self, user_id: str) -> int:
        rows = await self._store.select("profiles", eq(id=user_id), limit=1)
        if not rows:
            raise RecordNotFound("profiles", user_id)
        return int(rows[0].get("credits") or 0)

    async def can_chat(self, client_id: str, counselor_id: str) -> bool:
        rows = await self._store.select(
            "sessions",
            eq(client_id=client_id, counselor_id=counselor_id).and_(
                or_(eq(status=SessionStatus.PAID), eq(status=SessionStatus.COMPLETED))
            ),
            limit=1,
        )
        if rows and unlocks_chat(SessionStatus(rows[0]["status"])):
            return True
        try:
            return await self.get_credit_balance(client_id) > 0
        except RecordNotFound:
            return False

    async def _transition(
        self,
        session: Session,
        target: SessionStatus,
        extra: dict[str, Any] | None = None,
    ) -> Session:
        check_transition(session, target)
        patch: dict[str, Any] = {"status": target, **(extra or {})}
        stamp = STAMPS.get(target)
        if stamp is not None:
            patch[stamp] = utc_now()
        changed = await self._store.update(
            "sessions",
            eq(id=session.id, status=session.status),
            patch,
        )
        if changed == 0:
            current = await self.get_session(session.id)
            raise InvalidTransitionError(session.id, current.status.value, target.value)
        updated = await self.get_session(session.id)
        check_split(updated.amount, updated.commission, updated.counselor_payout)
        return updated

    async def _finish_booking(self, session: Session, client_name: str | None) -> Session:
        step = "conversation"
        try:
            conversation_id = session.conversation_id or await self._conversations.ensure_conversation(
                session.client_id, session.counselor_id
            )

            step = "bind_conversation"
            if session.conversation_id != conversation_id:
                await self._store.update("sessions", eq(id=session.id), {"conversation_id": conversation_id})

            check_split(session.amount, session.commission, session.counselor_payout)

            step = "counselor_earnings"
            await self._insert_once(
                "counselor_earnings",
                {
                    "counselor_id": session.counselor_id,
                    "session_id": session.id,
                    "amount": session.counselor_payout,
                    "status": "pending",
                },
            )

            step = "platform_earnings"
            await self._insert_once(
                "platform_earnings",
                {"session_id": session.id, "amount": session.commission},
            )

            step = "notification"
            await self._notify_counselor_once(session, conversation_id, client_name)

            step = "finalize"
            await self._store.update("sessions", eq(id=session.id), {"bookkeeping_done": True})
        except CoreError as ex:
            log.error(f"Session {session.id} paid but booking stopped at {step}: {ex}")
            raise BookingIncompleteError(session.payment_reference, step, ex) from ex

        log.info(f"Session {session.id} booked into conversation {conversation_id}")
        return await self.get_session(session.id)

    async def _notify_counselor_once(self, session: Session, conversation_id: str, client_name: str | None) -> None:
        claimed = await self._store.update(
            "sessions",
            eq(id=session.id, counselor_notified=False),
            {"counselor_notified": True},
        )
        if not claimed:
            log.info(f"Counselor already notified for session {session.id}")
            return
        try:
            await self._notifier.notify(
                session.counselor_id,
                NotificationType.NEW_REQUEST,
                "New Paid Session",
                f"{client_name or 'A client'} has booked a session with you",
                {"conversation_id": conversation_id, "session_id": session.id},
            )
        except CoreError:
            try:
                await self._store.update("sessions", eq(id=session.id), {"counselor_notified": False})
            except StoreError as revert_ex:
                log.error(f"Could not release notification claim on session {session.id}: {revert_ex}")
            raise

    async def _insert_once(self, collection: str, row: dict[str, Any]) -> None:
        try:
            await self._store.insert(collection, row)
        except UniqueViolation:
            log.warning(f"{collection} for session {row['session_id']} already recorded")

    async def _add_credits(self, user_id: str, credits: int) -> int:
        for _ in range(_BALANCE_WRITE_ATTEMPTS):
            balance = await self.get_credit_balance(user_id)
            new_balance = balance + credits
            changed = await self._store.update(
                "profiles",
                eq(id=user_id, credits=balance),
                {"credits": new_balance},
            )
            if changed:
                return new_balance
            log.warning(f"Credit balance for {user_id} moved during update; re-reading")
        raise StoreError(f"Credit balance for {user_id} kept changing")

    async def _credit_transaction(self, reference: str) -> dict[str, Any]:
        rows = await self._store.select("credit_transactions", eq(payment_reference=reference), limit=1)
        if not rows:
            raise RecordNotFound("credit_transactions", reference)
        return rows[0]

    def _check_verification(self, verification: PaymentVerification, expected_amount: int) -> None:
        if not verification.success:
            raise PaymentVerificationError(f"Payment {verification.reference} was not successful")
        if verification.amount is not None and verification.amount != expected_amount:
            raise PaymentVerificationError(
                f"Payment {verification.reference} amount {verification.amount} does not match {expected_amount}"
            )
