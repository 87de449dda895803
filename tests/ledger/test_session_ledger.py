import asyncio

from counsel_core.errors import (
    SUPPORT_GUIDANCE,
    BookingIncompleteError,
    ChatLockedError,
    InvalidTransitionError,
    LedgerInvariantError,
    PaymentVerificationError,
    RecordNotFound,
)
from counsel_core.payments.checkout import PaymentVerification
from counsel_core.store.models import Session, SessionStatus
from tests.store.base import CoreTestCase


class SessionLedgerTests(CoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.create_profile("c1", role="client")
        self.create_profile("k1", role="counselor")

    def test_pending_session_uses_default_price_and_split(self) -> None:
        session = asyncio.run(self._ledger.create_pending_session("c1", "k1"))
        self.assertEqual(SessionStatus.PENDING, session.status)
        self.assertEqual((500_000, 100_000, 400_000), (session.amount, session.commission, session.counselor_payout))
        self.assertRegex(session.payment_reference, r"^CH-\d+-[0-9A-Z]{6}$")
        self.assertIsNone(session.paid_at)

    def test_begin_checkout_returns_redirect_with_reference(self) -> None:
        session, checkout = asyncio.run(self._ledger.begin_session_checkout("c1", "k1", "c1@example.com"))
        self.assertEqual(session.payment_reference, checkout.reference)
        self.assertIn("pk_test_key", checkout.authorization_url)
        self.assertIn(f"ref={session.payment_reference}", checkout.authorization_url)
        self.assertIn("amount=500000", checkout.authorization_url)

    def test_confirm_payment_books_session(self) -> None:
        async def scenario():
            session = await self._ledger.create_pending_session("c1", "k1")
            return await self._ledger.confirm_payment(session.id, "PS-1", client_name="Ada")

        session = asyncio.run(scenario())

        self.assertEqual(SessionStatus.PAID, session.status)
        self.assertEqual("PS-1", session.paystack_reference)
        self.assertIsNotNone(session.paid_at)
        self.assertTrue(session.bookkeeping_done)
        self.assertIsNotNone(session.conversation_id)

        counselor = self._sqlite.execute("SELECT counselor_id, amount, status FROM counselor_earnings").fetchone()
        platform = self._sqlite.execute("SELECT amount FROM platform_earnings").fetchone()
        self.assertEqual(("k1", 400_000, "pending"), (counselor["counselor_id"], counselor["amount"], counselor["status"]))
        self.assertEqual(100_000, platform["amount"])
        self.assertEqual(session.amount, counselor["amount"] + platform["amount"])

        note = self._sqlite.execute("SELECT user_id, type, title, body FROM notifications").fetchone()
        self.assertEqual("k1", note["user_id"])
        self.assertEqual("new_request", note["type"])
        self.assertEqual("New Paid Session", note["title"])
        self.assertEqual("Ada has booked a session with you", note["body"])

        conversation = self._sqlite.execute("SELECT id, client_id, counselor_id FROM conversations").fetchone()
        self.assertEqual(session.conversation_id, conversation["id"])

    def test_repeated_confirmation_does_not_duplicate_bookkeeping(self) -> None:
        async def scenario():
            session = await self._ledger.create_pending_session("c1", "k1")
            await self._ledger.confirm_payment(session.id, "PS-1")
            return await self._ledger.confirm_payment(session.id, "PS-1")

        session = asyncio.run(scenario())
        self.assertEqual(SessionStatus.PAID, session.status)
        self.assertEqual(1, self.count("counselor_earnings"))
        self.assertEqual(1, self.count("platform_earnings"))
        self.assertEqual(1, self.count("notifications"))
        self.assertEqual(1, self.count("conversations"))

    def test_confirm_with_different_external_reference_is_rejected(self) -> None:
        async def scenario() -> None:
            session = await self._ledger.create_pending_session("c1", "k1")
            await self._ledger.confirm_payment(session.id, "PS-1")
            with self.assertRaises(PaymentVerificationError):
                await self._ledger.confirm_payment(session.id, "PS-2")

        asyncio.run(scenario())
        self.assertEqual(1, self.count("counselor_earnings"))

    def test_bookkeeping_failure_keeps_session_paid_and_resumes(self) -> None:
        async def scenario() -> None:
            session = await self._ledger.create_pending_session("c1", "k1")
            self._store.fail("insert", "counselor_earnings")
            with self.assertRaises(BookingIncompleteError) as ctx:
                await self._ledger.confirm_payment(session.id, "PS-1")
            self.assertEqual("counselor_earnings", ctx.exception.step)
            self.assertEqual(session.payment_reference, ctx.exception.reference)
            self.assertIn(SUPPORT_GUIDANCE, str(ctx.exception))

            stuck = await self._ledger.get_session(session.id)
            self.assertEqual(SessionStatus.PAID, stuck.status)
            self.assertFalse(stuck.bookkeeping_done)
            self.assertEqual(0, self.count("notifications"))

            resumed = await self._ledger.confirm_payment(session.id, "PS-1")
            self.assertTrue(resumed.bookkeeping_done)

        asyncio.run(scenario())
        self.assertEqual(1, self.count("counselor_earnings"))
        self.assertEqual(1, self.count("platform_earnings"))
        self.assertEqual(1, self.count("notifications"))

    def test_failed_status_write_leaves_session_pending(self) -> None:
        async def scenario() -> None:
            session = await self._ledger.create_pending_session("c1", "k1")
            self._store.fail("update", "sessions")
            with self.assertRaises(BookingIncompleteError) as ctx:
                await self._ledger.confirm_payment(session.id, "PS-1")
            self.assertEqual("status", ctx.exception.step)
            self.assertEqual(SessionStatus.PENDING, (await self._ledger.get_session(session.id)).status)

        asyncio.run(scenario())
        self.assertEqual(0, self.count("counselor_earnings"))

    def test_concurrent_confirmations_notify_counselor_once(self) -> None:
        async def scenario():
            session = await self._ledger.create_pending_session("c1", "k1")
            return await asyncio.gather(
                self._ledger.confirm_payment(session.id, "PS-1", client_name="Ada"),
                self._ledger.confirm_payment(session.id, "PS-1", client_name="Ada"),
            )

        first, second = asyncio.run(scenario())
        self.assertEqual((SessionStatus.PAID, SessionStatus.PAID), (first.status, second.status))
        self.assertTrue(first.bookkeeping_done and second.bookkeeping_done)
        self.assertEqual(1, self.count("notifications", "type = 'new_request'"))
        self.assertEqual(1, self.count("counselor_earnings"))
        self.assertEqual(1, self.count("conversations"))

    def test_resumed_finalize_does_not_notify_counselor_again(self) -> None:
        async def scenario() -> Session:
            session = await self._ledger.create_pending_session("c1", "k1")
            await self._ledger.confirm_payment(session.id, "PS-1")
            # Finalize never landed; the counselor was already told.
            self._sqlite.execute("UPDATE sessions SET bookkeeping_done = 0 WHERE id = ?", (session.id,))
            self._sqlite.commit()
            return await self._ledger.confirm_payment(session.id, "PS-1")

        session = asyncio.run(scenario())
        self.assertTrue(session.bookkeeping_done)
        self.assertTrue(session.counselor_notified)
        self.assertEqual(1, self.count("notifications", "type = 'new_request'"))

    def test_failed_counselor_notification_is_sent_on_retry(self) -> None:
        async def scenario() -> Session:
            session = await self._ledger.create_pending_session("c1", "k1")
            self._store.fail("insert", "notifications")
            with self.assertRaises(BookingIncompleteError) as ctx:
                await self._ledger.confirm_payment(session.id, "PS-1")
            self.assertEqual("notification", ctx.exception.step)
            self.assertFalse((await self._ledger.get_session(session.id)).counselor_notified)
            return await self._ledger.confirm_payment(session.id, "PS-1")

        session = asyncio.run(scenario())
        self.assertTrue(session.bookkeeping_done)
        self.assertEqual(1, self.count("notifications", "type = 'new_request'"))

    def test_lifecycle_transitions(self) -> None:
        async def scenario() -> None:
            pending = await self._ledger.create_pending_session("c1", "k1")
            cancelled = await self._ledger.cancel(pending.id)
            self.assertEqual(SessionStatus.CANCELLED, cancelled.status)
            with self.assertRaises(InvalidTransitionError):
                await self._ledger.confirm_payment(pending.id, "PS-late")

            paid = await self._ledger.create_pending_session("c1", "k1")
            with self.assertRaises(InvalidTransitionError):
                await self._ledger.complete(paid.id)
            await self._ledger.confirm_payment(paid.id, "PS-1")
            with self.assertRaises(InvalidTransitionError):
                await self._ledger.cancel(paid.id)
            completed = await self._ledger.complete(paid.id)
            self.assertEqual(SessionStatus.COMPLETED, completed.status)
            self.assertIsNotNone(completed.completed_at)
            with self.assertRaises(InvalidTransitionError):
                await self._ledger.refund(paid.id)

            refundable = await self._ledger.create_pending_session("c1", "k1")
            await self._ledger.confirm_payment(refundable.id, "PS-2")
            refunded = await self._ledger.refund(refundable.id)
            self.assertEqual(SessionStatus.REFUNDED, refunded.status)

        asyncio.run(scenario())
        self.assertEqual(2, self.count("counselor_earnings"))

    def test_list_sessions_by_role(self) -> None:
        async def scenario() -> tuple[int, int, int]:
            await self._ledger.create_pending_session("c1", "k1")
            await self._ledger.create_pending_session("c1", "k1")
            return (
                len(await self._ledger.list_sessions("c1", "client")),
                len(await self._ledger.list_sessions("k1", "counselor")),
                len(await self._ledger.list_sessions("k1", "client")),
            )

        self.assertEqual((2, 2, 0), asyncio.run(scenario()))

    def test_verify_and_confirm_with_manual_checkout(self) -> None:
        async def scenario():
            session = await self._ledger.create_pending_session("c1", "k1")
            return session, await self._ledger.verify_and_confirm(session.id)

        pending, paid = asyncio.run(scenario())
        self.assertEqual(SessionStatus.PAID, paid.status)
        self.assertEqual(pending.payment_reference, paid.paystack_reference)

    def test_webhook_routes_to_session(self) -> None:
        async def scenario():
            session = await self._ledger.create_pending_session("c1", "k1")
            mismatch = PaymentVerification(session.payment_reference, True, "991", amount=1)
            with self.assertRaises(PaymentVerificationError):
                await self._ledger.handle_webhook(mismatch)
            failed = PaymentVerification(session.payment_reference, False, "992", amount=session.amount)
            self.assertIsNone(await self._ledger.handle_webhook(failed))
            ok = PaymentVerification(session.payment_reference, True, "993", amount=session.amount)
            return await self._ledger.handle_webhook(ok)

        session = asyncio.run(scenario())
        self.assertEqual(SessionStatus.PAID, session.status)
        self.assertEqual("993", session.paystack_reference)

    def test_webhook_for_unknown_reference(self) -> None:
        with self.assertRaises(RecordNotFound):
            asyncio.run(self._ledger.handle_webhook(PaymentVerification("CH-0-NOPE00", True, "1")))

    def test_credit_purchase_applies_once(self) -> None:
        async def scenario() -> tuple[int, int, int]:
            purchase = await self._ledger.purchase_credits("c1", 1000, 180_000, email="c1@example.com")
            self.assertEqual("pending", purchase.status)
            self.assertEqual(1800, purchase.naira_amount)
            self.assertIn("amount=180000", purchase.checkout_url)
            first = await self._ledger.confirm_credit_purchase(purchase.payment_reference, "PS-9")
            second = await self._ledger.confirm_credit_purchase(purchase.payment_reference, "PS-9")
            return first, second, await self._ledger.get_credit_balance("c1")

        self.assertEqual((1000, 1000, 1000), asyncio.run(scenario()))
        self.assertEqual(1, self.count("credit_transactions", "status = 'applied'"))

    def test_credit_purchase_with_same_reference_reuses_row(self) -> None:
        async def scenario() -> None:
            await self._ledger.purchase_credits("c1", 500, 100_000, "CH-1-RETRY1")
            again = await self._ledger.purchase_credits("c1", 500, 100_000, "CH-1-RETRY1")
            self.assertEqual("CH-1-RETRY1", again.payment_reference)

        asyncio.run(scenario())
        self.assertEqual(1, self.count("credit_transactions"))

    def test_credit_balance_failure_releases_purchase_for_retry(self) -> None:
        async def scenario() -> int:
            purchase = await self._ledger.purchase_credits("c1", 500, 100_000)
            self._store.fail("update", "profiles")
            with self.assertRaises(BookingIncompleteError) as ctx:
                await self._ledger.confirm_credit_purchase(purchase.payment_reference)
            self.assertEqual("credits", ctx.exception.step)
            self.assertEqual(1, self.count("credit_transactions", "status = 'pending'"))
            return await self._ledger.confirm_credit_purchase(purchase.payment_reference)

        self.assertEqual(500, asyncio.run(scenario()))

    def test_credit_price_must_be_whole_naira(self) -> None:
        with self.assertRaises(LedgerInvariantError):
            asyncio.run(self._ledger.purchase_credits("c1", 100, 150_050, "CH-1-FRAC01"))
        self.assertEqual(0, self.count("credit_transactions"))

    def test_webhook_routes_to_credit_purchase(self) -> None:
        async def scenario() -> int:
            purchase = await self._ledger.purchase_credits("c1", 2500, 400_000)
            hook = PaymentVerification(purchase.payment_reference, True, "777", amount=400_000)
            return await self._ledger.handle_webhook(hook)

        self.assertEqual(2500, asyncio.run(scenario()))

    def test_can_chat_and_start_chat_gate(self) -> None:
        self.create_profile("c2", role="client", credits=10)
        self._conversations.set_access_gate(self._ledger.can_chat)

        async def scenario() -> None:
            self.assertFalse(await self._ledger.can_chat("c1", "k1"))
            with self.assertRaises(ChatLockedError):
                await self._conversations.start_chat("c1", "k1")

            self.assertTrue(await self._ledger.can_chat("c2", "k1"))
            await self._conversations.start_chat("c2", "k1")

            session = await self._ledger.create_pending_session("c1", "k1")
            self.assertFalse(await self._ledger.can_chat("c1", "k1"))
            await self._ledger.confirm_payment(session.id, "PS-1")
            self.assertTrue(await self._ledger.can_chat("c1", "k1"))
            self.assertFalse(await self._ledger.can_chat("nobody", "k1"))

        asyncio.run(scenario())
        self.assertEqual(2, self.count("conversations"))
