"""
REQUEST_SUBMITTER
=================

Client (mobile) side of the relay: write a ``RelayRequest`` into the record
store and wait for the worker's ``RelayResponse``.

Resolution is a race between two paths:

1. **Push**: a store subscription on ``AIResponse`` records. When a
   notification arrives, the response is fetched and, if its ``request_id``
   matches an outstanding wait, that wait is fulfilled.
2. **Poll**: the calling thread queries for a response with the matching
   ``request_id`` every ``poll_interval`` seconds, at most
   ``max_poll_attempts`` times. Between polls it waits on the wait's event,
   so a push resolution wakes it immediately.

Push is best effort and may never fire; polling alone is sufficient for
correctness. Exhausting the poll budget raises ``RelayTimeoutError``.

Waits are independent: each request id owns its own ``PendingWait`` and its
own poll loop runs in the caller's thread.

Cancellation
------------
``cancel_request(id)`` removes the local wait (the blocked caller receives
``RequestCancelledError``) and best-effort marks the stored request
``cancelled``. The worker may still answer; responses without an outstanding
wait are ignored.
"""

import asyncio
import functools
import logging
import math
import threading
import time
from typing import Dict, Optional

from ..store import RecordNotFoundError, RecordStore, StoreError, where
from .errors import (
    InvalidResponseError,
    NotConnectedError,
    RelayTimeoutError,
    RequestCancelledError,
    SendFailedError,
)
from .models import (
    REQUEST_RECORD_TYPE,
    RESPONSE_RECORD_TYPE,
    RecordFormatError,
    RelayRequest,
    RelayResponse,
    RequestStatus,
)
from .statistics import RelayStatistics

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0  # seconds
DEFAULT_MAX_POLL_ATTEMPTS = 60  # ~5 minutes at the default interval


def poll_attempts_for(timeout: float, poll_interval: float) -> int:
    """Polls needed to cover ``timeout``, rounding up; 0.3s at 0.1s is 3."""
    # Absorbs float error such as 0.3 / 0.1 == 2.9999999999999996
    return max(1, math.ceil(timeout / poll_interval - 1e-9))


class PendingWait:
    """Bookkeeping for one outstanding request."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.event = threading.Event()
        self.response: Optional[RelayResponse] = None
        self.error: Optional[Exception] = None
        self.cancelled = False
        self.started = time.monotonic()

    @property
    def resolved(self) -> bool:
        return self.event.is_set()

    def resolve(self, response: RelayResponse) -> None:
        self.response = response
        self.event.set()

    def fail(self, error: Exception) -> None:
        self.error = error
        self.event.set()


class RequestSubmitter:
    """Submits relay requests and resolves their responses."""

    def __init__(
        self,
        store: RecordStore,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        default_target_device_id: Optional[str] = None,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.default_target_device_id = default_target_device_id
        self.statistics = RelayStatistics()

        # request_id -> PendingWait
        self._waits: Dict[str, PendingWait] = {}
        self._lock = threading.Lock()
        self._subscription = store.subscribe(RESPONSE_RECORD_TYPE, [], self._on_response_notification)

    # ========================================================================
    # SENDING
    # ========================================================================

    def send_request(
        self,
        service_id: str,
        service_name: str,
        endpoint: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        target_device_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RelayResponse:
        """
        Relay one HTTP call and block until its response arrives.

        Args:
            service_id: Id of the service on the worker
            service_name: Display name (informational)
            endpoint: Path appended to the service base URL
            method: HTTP method
            headers: HTTP headers to forward
            body: Raw request body
            target_device_id: Worker device id (defaults to the connected one)
            timeout: Overall budget in seconds; converted into a poll count

        Returns:
            The worker's RelayResponse

        Raises:
            NotConnectedError, SendFailedError, RelayTimeoutError,
            InvalidResponseError, RequestCancelledError
        """
        target = target_device_id or self.default_target_device_id
        if not target:
            raise NotConnectedError()

        request = RelayRequest(
            service_id=service_id,
            service_name=service_name,
            endpoint=endpoint,
            method=method.upper(),
            headers=headers or {},
            body=body,
            target_device_id=target,
        )
        wait = PendingWait(request.id)
        with self._lock:
            self._waits[request.id] = wait

        try:
            self.store.save(request.to_record())
        except StoreError as e:
            self._discard(request.id)
            self.statistics.record(False, 0)
            logger.error(f"request_send_failed: id={request.id} error={e}")
            raise SendFailedError(f"Could not write request {request.id}: {e}") from e

        logger.info(f"request_sent: id={request.id} service={service_id} endpoint={endpoint} target={target}")

        attempts = self.max_poll_attempts
        if timeout is not None and self.poll_interval > 0:
            attempts = poll_attempts_for(timeout, self.poll_interval)

        try:
            response = self._await_response(wait, attempts)
        except RequestCancelledError:
            raise
        except Exception:
            self.statistics.record(False, self._elapsed_ms(wait))
            raise
        finally:
            self._discard(request.id)

        self.statistics.record(response.is_success, self._elapsed_ms(wait))
        return response

    async def send_request_async(self, *args, **kwargs) -> RelayResponse:
        """Run ``send_request`` in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.send_request, *args, **kwargs))

    def _await_response(self, wait: PendingWait, attempts: int) -> RelayResponse:
        for attempt in range(1, attempts + 1):
            if wait.resolved:
                break
            response = self._poll_once(wait.request_id)
            if response is not None:
                self._fulfil(wait.request_id, response, source="poll")
                break
            if wait.event.wait(self.poll_interval):
                break
            logger.debug(f"poll_miss: id={wait.request_id} attempt={attempt}/{attempts}")

        if wait.cancelled:
            raise RequestCancelledError(wait.request_id)
        if wait.error is not None:
            raise wait.error
        if wait.response is not None:
            return wait.response

        elapsed = time.monotonic() - wait.started
        logger.warning(f"request_timeout: id={wait.request_id} attempts={attempts} elapsed={elapsed:.2f}s")
        raise RelayTimeoutError(wait.request_id, attempts, elapsed)

    def _poll_once(self, request_id: str) -> Optional[RelayResponse]:
        try:
            records = self.store.query(
                RESPONSE_RECORD_TYPE,
                [where("request_id", "==", request_id)],
                sort_by="created_at",
                limit=1,
            )
        except StoreError as e:
            logger.warning(f"poll_failed: id={request_id} error={e}")
            return None
        if not records:
            return None
        try:
            return RelayResponse.from_record(records[0])
        except RecordFormatError as e:
            self._fail(request_id, InvalidResponseError(str(e)))
            return None

    # ========================================================================
    # PUSH
    # ========================================================================

    def _on_response_notification(self, record_type: str, record_id: str) -> None:
        try:
            record = self.store.fetch(record_type, record_id)
        except (RecordNotFoundError, StoreError) as e:
            logger.debug(f"push_fetch_failed: id={record_id} error={e}")
            return

        request_id = record.fields.get("request_id")
        with self._lock:
            outstanding = request_id in self._waits
        if not outstanding:
            # Late, duplicate, or cancelled: no one is waiting
            logger.debug(f"push_ignored: response={record_id} request={request_id}")
            return

        try:
            response = RelayResponse.from_record(record)
        except RecordFormatError as e:
            self._fail(request_id, InvalidResponseError(str(e)))
            return
        self._fulfil(request_id, response, source="push")

    # ========================================================================
    # WAIT BOOKKEEPING
    # ========================================================================

    def _fulfil(self, request_id: str, response: RelayResponse, source: str) -> None:
        with self._lock:
            wait = self._waits.get(request_id)
            if wait is None or wait.resolved:
                return
            wait.resolve(response)
        logger.info(
            f"response_received: id={request_id} status={response.status_code} via={source} "
            f"processing_ms={response.processing_time_ms}"
        )

    def _fail(self, request_id: str, error: Exception) -> None:
        with self._lock:
            wait = self._waits.get(request_id)
            if wait is None or wait.resolved:
                return
            wait.fail(error)

    def _discard(self, request_id: str) -> None:
        with self._lock:
            self._waits.pop(request_id, None)

    @staticmethod
    def _elapsed_ms(wait: PendingWait) -> float:
        return (time.monotonic() - wait.started) * 1000

    def cancel_request(self, request_id: str) -> bool:
        """Drop the local wait and best-effort mark the request cancelled.

        Returns True if a wait was outstanding.
        """
        with self._lock:
            wait = self._waits.pop(request_id, None)
            if wait is not None and not wait.resolved:
                wait.cancelled = True
                wait.event.set()

        try:
            self.store.update(REQUEST_RECORD_TYPE, request_id, status=RequestStatus.CANCELLED.value)
        except StoreError as e:
            logger.warning(f"cancel_status_update_failed: id={request_id} error={e}")

        logger.info(f"request_cancelled: id={request_id} outstanding={wait is not None}")
        return wait is not None

    def pending_count(self) -> int:
        with self._lock:
            return len(self._waits)

    def close(self) -> None:
        self._subscription.cancel()
        with self._lock:
            waits = list(self._waits.values())
            self._waits.clear()
        for wait in waits:
            wait.cancelled = True
            wait.event.set()
