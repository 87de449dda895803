from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class SessionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class NotificationType(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_REQUEST = "new_request"


@dataclass(frozen=True)
class Conversation:
    id: str
    client_id: str
    counselor_id: str
    created_at: str
    last_message_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Conversation:
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            counselor_id=row["counselor_id"],
            created_at=row["created_at"],
            last_message_at=row.get("last_message_at"),
        )

    def other_participant(self, user_id: str) -> str:
        return self.counselor_id if user_id == self.client_id else self.client_id

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.counselor_id)


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str
    is_read: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            created_at=row["created_at"],
            is_read=bool(row.get("is_read", False)),
        )


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    type: NotificationType
    title: str
    body: str
    created_at: str
    data: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Notification:
        data = row.get("data") or {}
        if isinstance(data, str):
            data = json.loads(data)
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=NotificationType(row["type"]),
            title=row["title"],
            body=row["body"],
            created_at=row["created_at"],
            data=data,
            is_read=bool(row.get("is_read", False)),
        )


@dataclass(frozen=True)
class Session:
    id: str
    client_id: str
    counselor_id: str
    status: SessionStatus
    amount: int
    commission: int
    counselor_payout: int
    payment_reference: str
    created_at: str
    conversation_id: str | None = None
    scheduled_at: str | None = None
    paystack_reference: str | None = None
    paid_at: str | None = None
    completed_at: str | None = None
    counselor_notified: bool = False
    bookkeeping_done: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Session:
        return cls(
            id=row["id"],
            client_id=row["client_id"],
            counselor_id=row["counselor_id"],
            status=SessionStatus(row["status"]),
            amount=int(row["amount"]),
            commission=int(row["commission"]),
            counselor_payout=int(row["counselor_payout"]),
            payment_reference=row["payment_reference"],
            created_at=row["created_at"],
            conversation_id=row.get("conversation_id"),
            scheduled_at=row.get("scheduled_at"),
            paystack_reference=row.get("paystack_reference"),
            paid_at=row.get("paid_at"),
            completed_at=row.get("completed_at"),
            counselor_notified=bool(row.get("counselor_notified", False)),
            bookkeeping_done=bool(row.get("bookkeeping_done", False)),
        )


@dataclass(frozen=True)
class CreditPurchase:
    id: str
    user_id: str
    credits: int
    naira_amount: int
    payment_reference: str
    status: str
    created_at: str
    checkout_url: str | None = None
    paystack_reference: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any], *, checkout_url: str | None = None) -> CreditPurchase:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            credits=int(row["amount"]),
            naira_amount=int(row["naira_amount"]),
            payment_reference=row["payment_reference"],
            status=row["status"],
            created_at=row["created_at"],
            checkout_url=checkout_url,
            paystack_reference=row.get("paystack_reference"),
        )
