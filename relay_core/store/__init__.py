"""
Record store abstraction and backends.

Usage::

    from relay_core.store import InMemoryRecordStore, Record, where

    store = InMemoryRecordStore()
    store.save(Record("AIRequest", "req_1", {"status": "pending"}))
    pending = store.query("AIRequest", [where("status", "==", "pending")])
"""

from .base import NotificationCallback, Record, RecordStore, Subscription
from .errors import RecordNotFoundError, SchemaNotProvisionedError, StoreError, StoreWriteError
from .file_store import FileRecordStore
from .http_store import HttpRecordStore
from .memory import InMemoryRecordStore
from .payload import DEFAULT_INLINE_THRESHOLD, AssetStore, PayloadCodec
from .query import Condition, format_timestamp, parse_timestamp, utc_now, where

__all__ = [
    "NotificationCallback",
    "Record",
    "RecordStore",
    "Subscription",
    "RecordNotFoundError",
    "SchemaNotProvisionedError",
    "StoreError",
    "StoreWriteError",
    "FileRecordStore",
    "HttpRecordStore",
    "InMemoryRecordStore",
    "DEFAULT_INLINE_THRESHOLD",
    "AssetStore",
    "PayloadCodec",
    "Condition",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
    "where",
]
