from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from counsel_core.errors import StoreError, TransientStoreError, UniqueViolation
from counsel_core.store.change_feed import DELETE, INSERT, UPDATE, ChangeFeed
from counsel_core.store.models import utc_now
from counsel_core.store.record_store import FeedEvent, Filter, Order, check_identifier, to_sql_value

_JSON_COLUMNS: dict[str, frozenset[str]] = {
    "notifications": frozenset({"data"}),
}

_BOOL_COLUMNS = frozenset({"is_read", "counselor_notified", "bookkeeping_done"})


class SqliteRecordStore:
    """RecordStore backed by a local sqlite database.

    Every committed write is published to the attached ChangeFeed, which
    is how other in-process instances observe it.
    """

    def __init__(self, db_path: str, feed: ChangeFeed | None = None):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._feed = feed
        self._columns: dict[str, list[str]] = {}
        self._initialize_schema()

    @property
    def feed(self) -> ChangeFeed | None:
        return self._feed

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    async def select(
        self,
        collection: str,
        filter: Filter | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._table_columns(collection)
        where, params = (filter or Filter()).to_sql()
        query = f"SELECT rowid AS _rowid, * FROM {collection} WHERE {where}"
        query += f" ORDER BY {order.to_sql()}, rowid ASC" if order else " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(1, limit))
        with self._translate(collection):
            rows = self._conn.execute(query, params).fetchall()
        return [self._decode(collection, row) for row in rows]

    async def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        columns = self._table_columns(collection)
        values = self._encode(collection, row)
        values.setdefault("id", str(uuid4()))
        if "created_at" in columns:
            values.setdefault("created_at", utc_now())
        names = list(values)
        placeholders = ", ".join("?" for _ in names)
        with self._translate(collection), self.transaction():
            cursor = self._conn.execute(
                f"INSERT INTO {collection} ({', '.join(names)}) VALUES ({placeholders})",
                [values[n] for n in names],
            )
            rowid = cursor.lastrowid
        created = self._fetch_by_rowid(collection, rowid)
        logger.debug(f"Inserted {collection} {created['id']}")
        self._publish(FeedEvent(collection, INSERT, created))
        return created

    async def update(self, collection: str, filter: Filter, patch: dict[str, Any]) -> int:
        self._table_columns(collection)
        values = self._encode(collection, patch)
        if not values:
            return 0
        where, params = filter.to_sql()
        before = {
            row["id"]: row
            for row in await self.select(collection, filter)
        }
        assignments = ", ".join(f"{name} = ?" for name in values)
        with self._translate(collection), self.transaction():
            cursor = self._conn.execute(
                f"UPDATE {collection} SET {assignments} WHERE {where}",
                [*values.values(), *params],
            )
            changed = cursor.rowcount
        if changed:
            for row_id, old in before.items():
                new = await self.select(collection, Filter((("id", row_id),)))
                if new:
                    self._publish(FeedEvent(collection, UPDATE, new[0], old))
        logger.debug(f"Updated {changed} {collection} row(s)")
        return changed

    async def upsert(self, collection: str, row: dict[str, Any]) -> None:
        self._table_columns(collection)
        values = self._encode(collection, row)
        values.setdefault("id", str(uuid4()))
        existing = await self.select(collection, Filter((("id", values["id"]),)))
        if existing:
            patch = {k: v for k, v in row.items() if k != "id"}
            await self.update(collection, Filter((("id", values["id"]),)), patch)
        else:
            await self.insert(collection, {**row, "id": values["id"]})

    async def delete(self, collection: str, filter: Filter) -> int:
        self._table_columns(collection)
        where, params = filter.to_sql()
        doomed = await self.select(collection, filter)
        with self._translate(collection), self.transaction():
            cursor = self._conn.execute(f"DELETE FROM {collection} WHERE {where}", params)
            removed = cursor.rowcount
        for old in doomed:
            self._publish(FeedEvent(collection, DELETE, old, old))
        return removed

    def _publish(self, event: FeedEvent) -> None:
        if self._feed is not None:
            self._feed.publish(event)

    def _fetch_by_rowid(self, collection: str, rowid: int | None) -> dict[str, Any]:
        row = self._conn.execute(
            f"SELECT rowid AS _rowid, * FROM {collection} WHERE rowid = ?",
            (rowid,),
        ).fetchone()
        if row is None:
            raise StoreError(f"Inserted {collection} row vanished")
        return self._decode(collection, row)

    def _table_columns(self, collection: str) -> list[str]:
        cached = self._columns.get(collection)
        if cached is not None:
            return cached
        check_identifier(collection)
        rows = self._conn.execute(f"PRAGMA table_info({collection})").fetchall()
        if not rows:
            raise StoreError(f"Unknown collection: {collection}")
        columns = [str(r["name"]) for r in rows]
        self._columns[collection] = columns
        return columns

    def _encode(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        columns = self._table_columns(collection)
        json_columns = _JSON_COLUMNS.get(collection, frozenset())
        encoded: dict[str, Any] = {}
        for name, value in row.items():
            if name not in columns:
                raise StoreError(f"Unknown field {name!r} for {collection}")
            if name in json_columns and value is not None:
                encoded[name] = json.dumps(value, ensure_ascii=True)
            else:
                encoded[name] = to_sql_value(value)
        return encoded

    def _decode(self, collection: str, row: sqlite3.Row) -> dict[str, Any]:
        decoded = dict(row)
        decoded.pop("_rowid", None)
        for name in _JSON_COLUMNS.get(collection, frozenset()):
            raw = decoded.get(name)
            if isinstance(raw, str):
                decoded[name] = json.loads(raw)
        for name in _BOOL_COLUMNS:
            if name in decoded:
                decoded[name] = bool(decoded[name])
        return decoded

    @contextmanager
    def _translate(self, collection: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as ex:
            if "UNIQUE" in str(ex):
                raise UniqueViolation(collection, str(ex)) from ex
            raise StoreError(f"Constraint failed on {collection}: {ex}") from ex
        except sqlite3.OperationalError as ex:
            raise TransientStoreError(f"Store unavailable for {collection}: {ex}") from ex

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT NULL,
                role TEXT NULL CHECK (role IN ('client', 'counselor')),
                credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
                password_hash TEXT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                counselor_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_message_at TEXT NULL,
                UNIQUE(client_id, counselor_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                sender_id TEXT NOT NULL,
                content TEXT NOT NULL CHECK (length(content) BETWEEN 1 AND 1000),
                created_at TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0 CHECK (is_read IN (0, 1))
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('new_message', 'new_request')),
                title TEXT NOT NULL,
                body TEXT NOT NULL,
                data TEXT NOT NULL DEFAULT '{}',
                is_read INTEGER NOT NULL DEFAULT 0 CHECK (is_read IN (0, 1)),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                counselor_id TEXT NOT NULL,
                conversation_id TEXT NULL REFERENCES conversations(id) ON DELETE SET NULL,
                scheduled_at TEXT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'paid', 'completed', 'cancelled', 'refunded')),
                amount INTEGER NOT NULL CHECK (amount >= 0),
                commission INTEGER NOT NULL CHECK (commission >= 0),
                counselor_payout INTEGER NOT NULL CHECK (counselor_payout >= 0),
                payment_reference TEXT NOT NULL UNIQUE,
                paystack_reference TEXT NULL,
                paid_at TEXT NULL,
                completed_at TEXT NULL,
                counselor_notified INTEGER NOT NULL DEFAULT 0 CHECK (counselor_notified IN (0, 1)),
                bookkeeping_done INTEGER NOT NULL DEFAULT 0 CHECK (bookkeeping_done IN (0, 1)),
                created_at TEXT NOT NULL,
                CHECK (commission + counselor_payout = amount)
            );

            CREATE TABLE IF NOT EXISTS counselor_earnings (
                id TEXT PRIMARY KEY,
                counselor_id TEXT NOT NULL,
                session_id TEXT NOT NULL UNIQUE REFERENCES sessions(id) ON DELETE CASCADE,
                amount INTEGER NOT NULL CHECK (amount >= 0),
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS platform_earnings (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL UNIQUE REFERENCES sessions(id) ON DELETE CASCADE,
                amount INTEGER NOT NULL CHECK (amount >= 0),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS credit_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount > 0),
                type TEXT NOT NULL DEFAULT 'purchase',
                description TEXT NOT NULL DEFAULT '',
                payment_reference TEXT NOT NULL UNIQUE,
                paystack_reference TEXT NULL,
                naira_amount INTEGER NOT NULL CHECK (naira_amount >= 0),
                status TEXT NOT NULL CHECK (status IN ('pending', 'applied')),
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
                ON messages(conversation_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_notifications_user_created
                ON notifications(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_conversations_counselor
                ON conversations(counselor_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_pair
                ON sessions(client_id, counselor_id);
            """
        )
        self._conn.commit()
