from counsel_core.store.change_feed import DELETE, INSERT, UPDATE, ChangeFeed, Subscription
from counsel_core.store.record_store import FeedEvent, Filter, Order, RecordStore, eq, or_
from counsel_core.store.sqlite_store import SqliteRecordStore

__all__ = [
    "DELETE",
    "INSERT",
    "UPDATE",
    "ChangeFeed",
    "FeedEvent",
    "Filter",
    "Order",
    "RecordStore",
    "SqliteRecordStore",
    "Subscription",
    "eq",
    "or_",
]
