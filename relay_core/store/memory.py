"""
In-process record store.

Used by tests and by single-process deployments (worker and client in one
interpreter). Supports push notifications, delivered on a small thread pool so
callbacks can safely write back to the store. Push can be switched off to
exercise the polling paths, and ``lazy_schema`` reproduces stores that only
learn a record type on its first write.
"""

import copy
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .base import NotificationCallback, RecordStore, Subscription
from .errors import RecordNotFoundError, SchemaNotProvisionedError
from .payload import DEFAULT_INLINE_THRESHOLD, MemoryAssetStore
from .query import Condition, Row, matches_all, select_rows

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    """Thread-safe dictionary-backed store."""

    supports_push = True

    def __init__(
        self,
        inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
        lazy_schema: bool = False,
        push_enabled: bool = True,
    ):
        super().__init__(MemoryAssetStore(), inline_threshold=inline_threshold)
        self.lazy_schema = lazy_schema
        self.push_enabled = push_enabled
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._known_types: Set[str] = set()
        self._subscribers: Dict[str, Tuple[str, List[Condition], NotificationCallback]] = {}
        self._lock = threading.RLock()
        self._dispatcher = ThreadPoolExecutor(max_workers=2, thread_name_prefix="store-push")

    # -- backend hooks --

    def _write(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        with self._lock:
            if self.lazy_schema and record_type not in self._known_types:
                # First write provisions the type but is itself rejected
                self._known_types.add(record_type)
                raise SchemaNotProvisionedError(record_type)
            self._known_types.add(record_type)
            self._records.setdefault(record_type, {})[record_id] = copy.deepcopy(stored)
        self._notify(record_type, record_id, stored)

    def _read(self, record_type: str, record_id: str) -> Dict[str, Any]:
        with self._lock:
            self._check_type(record_type)
            stored = self._records.get(record_type, {}).get(record_id)
            if stored is None:
                raise RecordNotFoundError(record_type, record_id)
            return copy.deepcopy(stored)

    def _select(
        self,
        record_type: str,
        conditions: List[Condition],
        sort_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Row]:
        with self._lock:
            self._check_type(record_type)
            rows = [(rid, copy.deepcopy(f)) for rid, f in self._records.get(record_type, {}).items()]
        return select_rows(rows, conditions, sort_by, descending, limit)

    def _remove(self, record_type: str, record_id: str) -> None:
        with self._lock:
            self._records.get(record_type, {}).pop(record_id, None)

    def _check_type(self, record_type: str) -> None:
        if self.lazy_schema and record_type not in self._known_types:
            raise SchemaNotProvisionedError(record_type)

    # -- push --

    def subscribe(
        self,
        record_type: str,
        conditions: Iterable[Condition],
        callback: NotificationCallback,
    ) -> Subscription:
        sub_id = uuid.uuid4().hex
        with self._lock:
            self._subscribers[sub_id] = (record_type, list(conditions), callback)
        logger.debug(f"subscription_created: id={sub_id} type={record_type}")
        return Subscription(cancel=lambda: self._unsubscribe(sub_id))

    def _unsubscribe(self, sub_id: str) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)

    def _notify(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        if not self.push_enabled:
            return
        with self._lock:
            targets = [
                cb for (rtype, conds, cb) in self._subscribers.values()
                if rtype == record_type and matches_all(stored, conds)
            ]
        for callback in targets:
            self._dispatcher.submit(self._deliver, callback, record_type, record_id)

    @staticmethod
    def _deliver(callback: NotificationCallback, record_type: str, record_id: str) -> None:
        try:
            callback(record_type, record_id)
        except Exception:
            logger.exception(f"push_callback_failed: type={record_type} id={record_id}")

    def count(self, record_type: str) -> int:
        with self._lock:
            return len(self._records.get(record_type, {}))

    def close(self) -> None:
        self.push_enabled = False
        self._dispatcher.shutdown(wait=False)
