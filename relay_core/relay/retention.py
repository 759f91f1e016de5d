"""
Retention sweeper: removes relay records past the retention window.

- ``AIRequest`` records older than the window are deleted unless still
  ``pending``.
- ``AIResponse`` records older than the window are deleted.

Runs once at ``start()`` and then every ``interval`` seconds (6h by default).
"""

import logging
import threading
from datetime import timedelta
from typing import Dict, Optional

from ..store import RecordStore, StoreError, format_timestamp, utc_now, where
from .models import REQUEST_RECORD_TYPE, RESPONSE_RECORD_TYPE, RequestStatus

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 6 * 60 * 60  # seconds
DEFAULT_RETENTION = 24 * 60 * 60


class RetentionSweeper:
    def __init__(
        self,
        store: RecordStore,
        retention_seconds: float = DEFAULT_RETENTION,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock=utc_now,
    ):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval = interval
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self) -> Dict[str, int]:
        cutoff = format_timestamp(self.clock() - timedelta(seconds=self.retention_seconds))
        old = [where("created_at", "<", cutoff)]

        removed_requests = 0
        for record in self.store.query(REQUEST_RECORD_TYPE, old):
            if record.fields.get("status") == RequestStatus.PENDING.value:
                continue
            if self._delete(REQUEST_RECORD_TYPE, record.record_id):
                removed_requests += 1

        removed_responses = 0
        for record in self.store.query(RESPONSE_RECORD_TYPE, old):
            if self._delete(RESPONSE_RECORD_TYPE, record.record_id):
                removed_responses += 1

        logger.info(f"retention_sweep: requests={removed_requests} responses={removed_responses} cutoff={cutoff}")
        return {"requests": removed_requests, "responses": removed_responses}

    def _delete(self, record_type: str, record_id: str) -> bool:
        try:
            self.store.delete(record_type, record_id)
            return True
        except StoreError as e:
            logger.warning(f"retention_delete_failed: type={record_type} id={record_id} error={e}")
            return False

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="relay-retention")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("retention_sweep_failed")
            self._stop_event.wait(self.interval)
