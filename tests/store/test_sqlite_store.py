import asyncio

from counsel_core.errors import StoreError, UniqueViolation
from counsel_core.store import INSERT, UPDATE, Order, eq, or_
from tests.store.base import CoreTestCase


class SqliteRecordStoreTests(CoreTestCase):
    def test_insert_fills_id_and_created_at(self) -> None:
        row = asyncio.run(self._sqlite.insert("conversations", {"client_id": "c1", "counselor_id": "k1"}))
        self.assertTrue(row["id"])
        self.assertTrue(row["created_at"])
        self.assertIsNone(row["last_message_at"])

    def test_unique_pair_raises_unique_violation(self) -> None:
        async def scenario() -> None:
            await self._sqlite.insert("conversations", {"client_id": "c1", "counselor_id": "k1"})
            with self.assertRaises(UniqueViolation):
                await self._sqlite.insert("conversations", {"client_id": "c1", "counselor_id": "k1"})

        asyncio.run(scenario())
        self.assertEqual(1, self.count("conversations"))

    def test_select_breaks_timestamp_ties_by_insertion_order(self) -> None:
        async def scenario() -> list[str]:
            convo = await self._sqlite.insert("conversations", {"client_id": "c1", "counselor_id": "k1"})
            for text in ("first", "second", "third"):
                await self._sqlite.insert(
                    "messages",
                    {
                        "conversation_id": convo["id"],
                        "sender_id": "c1",
                        "content": text,
                        "created_at": "2026-01-01T00:00:00.000000+00:00",
                    },
                )
            rows = await self._sqlite.select("messages", eq(conversation_id=convo["id"]), order=Order("created_at"))
            return [r["content"] for r in rows]

        self.assertEqual(["first", "second", "third"], asyncio.run(scenario()))

    def test_nulls_last_ordering(self) -> None:
        async def scenario() -> list[str]:
            await self._sqlite.insert("conversations", {"id": "a", "client_id": "c1", "counselor_id": "k1"})
            await self._sqlite.insert(
                "conversations",
                {"id": "b", "client_id": "c1", "counselor_id": "k2", "last_message_at": "2026-01-02T00:00:00+00:00"},
            )
            await self._sqlite.insert(
                "conversations",
                {"id": "c", "client_id": "c1", "counselor_id": "k3", "last_message_at": "2026-01-03T00:00:00+00:00"},
            )
            rows = await self._sqlite.select(
                "conversations",
                eq(client_id="c1"),
                order=Order("last_message_at", descending=True, nulls_last=True),
            )
            return [r["id"] for r in rows]

        self.assertEqual(["c", "b", "a"], asyncio.run(scenario()))

    def test_or_filter_and_update_count(self) -> None:
        async def scenario() -> tuple[int, int]:
            for cid, kid in (("c1", "k1"), ("c2", "k1"), ("c3", "k2")):
                await self._sqlite.insert("conversations", {"client_id": cid, "counselor_id": kid})
            rows = await self._sqlite.select("conversations", or_(eq(client_id="c1"), eq(client_id="c3")))
            changed = await self._sqlite.update(
                "conversations",
                eq(counselor_id="k1"),
                {"last_message_at": "2026-02-01T00:00:00+00:00"},
            )
            return len(rows), changed

        self.assertEqual((2, 2), asyncio.run(scenario()))

    def test_notification_data_round_trips_as_json(self) -> None:
        async def scenario() -> dict:
            await self._sqlite.insert(
                "notifications",
                {
                    "user_id": "u1",
                    "type": "new_message",
                    "title": "New Message",
                    "body": "hi",
                    "data": {"conversation_id": "conv-1"},
                },
            )
            return (await self._sqlite.select("notifications", eq(user_id="u1")))[0]

        row = asyncio.run(scenario())
        self.assertEqual({"conversation_id": "conv-1"}, row["data"])
        self.assertIs(False, row["is_read"])

    def test_session_split_check_constraint(self) -> None:
        async def scenario() -> None:
            with self.assertRaises(StoreError):
                await self._sqlite.insert(
                    "sessions",
                    {
                        "client_id": "c1",
                        "counselor_id": "k1",
                        "status": "pending",
                        "amount": 100,
                        "commission": 30,
                        "counselor_payout": 80,
                        "payment_reference": "CH-1-AAAAAA",
                    },
                )

        asyncio.run(scenario())
        self.assertEqual(0, self.count("sessions"))

    def test_unknown_field_rejected(self) -> None:
        with self.assertRaises(StoreError):
            asyncio.run(self._sqlite.insert("conversations", {"client_id": "c1", "counselor_id": "k1", "bogus": 1}))

    def test_writes_are_published_to_feed(self) -> None:
        seen: list[tuple[str, str]] = []

        async def scenario() -> None:
            self._feed.subscribe("conversations", [INSERT, UPDATE], None, lambda e: seen.append((e.type, e.new["id"])))
            await self._sqlite.insert("conversations", {"id": "x", "client_id": "c1", "counselor_id": "k1"})
            await self._sqlite.update("conversations", eq(id="x"), {"last_message_at": "2026-01-01T00:00:00+00:00"})
            await self._feed.drain()

        asyncio.run(scenario())
        self.assertEqual([(INSERT, "x"), (UPDATE, "x")], seen)

    def test_upsert_inserts_then_updates(self) -> None:
        async def scenario() -> dict:
            await self._sqlite.upsert("conversations", {"id": "u", "client_id": "c1", "counselor_id": "k1"})
            await self._sqlite.upsert(
                "conversations",
                {"id": "u", "client_id": "c1", "counselor_id": "k1", "last_message_at": "2026-03-01T00:00:00+00:00"},
            )
            return (await self._sqlite.select("conversations", eq(id="u")))[0]

        row = asyncio.run(scenario())
        self.assertEqual("2026-03-01T00:00:00+00:00", row["last_message_at"])
        self.assertEqual(1, self.count("conversations"))
