"""
REQUEST_PROCESSOR
=================

Worker (desktop) side of the relay: pick up ``RelayRequest`` records aimed at
this device, execute them against local HTTP services, and write back a
``RelayResponse``.

Intake
------
- **Push**: a store subscription on ``AIRequest`` records for this device.
- **Poll**: a daemon thread re-queries pending requests every
  ``poll_interval`` seconds. Push may be missing entirely; polling is enough.

Both paths hand record ids to a small thread pool. Each worker re-reads the
record and only proceeds while its status is still ``pending``.

Processing (``process_request``)
--------------------------------
1. Reject on device mismatch or when the id is already being processed.
2. Claim the id and best-effort mark the record ``processing``.
3. Resolve the service in the local registry; unknown services get a 500
   "Service not found" response.
4. URL is the service base URL plus the request endpoint.
5. For OpenAI-format language models, inject tool definitions.
6. Execute the HTTP call (300s timeout).
7. Pass the response body through the tool orchestrator.
8. Persist the response and mark the request ``completed``. Any exception
   persists a 500 response and marks the request ``failed``.
9. Release the id.
10. Update statistics and emit ``request_completed`` / ``request_failed``.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Set

import requests

from ..store import RecordNotFoundError, RecordStore, StoreError, Subscription, where
from .errors import ServiceNotFoundError
from .events import REQUEST_COMPLETED, REQUEST_FAILED, EventBus
from .models import (
    REQUEST_RECORD_TYPE,
    RecordFormatError,
    RelayRequest,
    RelayResponse,
    RequestStatus,
)
from .statistics import RelayStatistics

logger = logging.getLogger(__name__)

DEFAULT_WORKER_POLL_INTERVAL = 5.0  # seconds
DEFAULT_MAX_WORKERS = 4
DEFAULT_REQUEST_TIMEOUT = 300  # seconds

# The stored body is decoded and may be rewritten by the orchestrator, so
# these no longer describe it
DROPPED_RESPONSE_HEADERS = frozenset({
    "content-length", "content-encoding", "transfer-encoding",
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "upgrade",
})


def persistable_headers(headers) -> Dict[str, str]:
    return {
        str(k): str(v)
        for k, v in dict(headers).items()
        if str(k).lower() not in DROPPED_RESPONSE_HEADERS
    }


class RequestProcessor:
    """Executes relayed requests addressed to this device."""

    def __init__(
        self,
        store: RecordStore,
        registry,
        device_id: str,
        orchestrator=None,
        session: Optional[requests.Session] = None,
        events: Optional[EventBus] = None,
        poll_interval: float = DEFAULT_WORKER_POLL_INTERVAL,
        max_workers: int = DEFAULT_MAX_WORKERS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.store = store
        self.registry = registry
        self.device_id = device_id
        self.orchestrator = orchestrator
        self.session = session or requests.Session()
        self.events = events or EventBus()
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.statistics = RelayStatistics()

        self.active_request_ids: Set[str] = set()
        self._queued: Set[str] = set()
        self._lock = threading.Lock()

        self.max_workers = max_workers
        self._pool = self._new_pool()
        self._pool_closed = False
        self._subscription: Optional[Subscription] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relay-worker")

    def start(self) -> None:
        """Clean up stale requests, subscribe, and start the poll loop."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        if self._pool_closed:
            self._pool = self._new_pool()
            self._pool_closed = False

        removed = self.cleanup_stale_pending()
        if removed:
            logger.info(f"stale_requests_removed: count={removed}")

        self._subscription = self.store.subscribe(
            REQUEST_RECORD_TYPE,
            [where("target_device_id", "==", self.device_id)],
            self.handle_notification,
        )
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="relay-processor")
        self._thread.start()
        logger.info(
            f"processor_started: device={self.device_id} poll_interval={self.poll_interval} "
            f"push={self._subscription.active}"
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._pool.shutdown(wait=True, cancel_futures=True)
        self._pool_closed = True
        with self._lock:
            # Cancelled before they ran; the next start re-queues them
            self._queued.clear()
        logger.info(f"processor_stopped: device={self.device_id}")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("processor_poll_failed")
            self._stop_event.wait(self.poll_interval)

    # ========================================================================
    # INTAKE
    # ========================================================================

    def pending_requests(self):
        records = self.store.query(
            REQUEST_RECORD_TYPE,
            [
                where("target_device_id", "==", self.device_id),
                where("status", "==", RequestStatus.PENDING.value),
            ],
            sort_by="created_at",
        )
        requests_ = []
        for record in records:
            try:
                requests_.append(RelayRequest.from_record(record))
            except RecordFormatError as e:
                logger.warning(f"request_malformed: id={record.record_id} error={e}")
        return requests_

    def poll_once(self) -> int:
        """Queue every pending request for this device; returns how many were queued."""
        queued = 0
        for request in self.pending_requests():
            if self._enqueue(request.id):
                queued += 1
        return queued

    def handle_notification(self, record_type: str, record_id: str) -> None:
        """Push entry point: queue the request for processing."""
        if record_type != REQUEST_RECORD_TYPE:
            return
        self._enqueue(record_id)

    def _enqueue(self, request_id: str) -> bool:
        with self._lock:
            if request_id in self._queued or request_id in self.active_request_ids:
                return False
            self._queued.add(request_id)
        try:
            self._pool.submit(self._process_by_id, request_id)
        except RuntimeError:
            # Pool already shut down
            with self._lock:
                self._queued.discard(request_id)
            return False
        return True

    def _process_by_id(self, request_id: str) -> None:
        try:
            try:
                record = self.store.fetch(REQUEST_RECORD_TYPE, request_id)
                request = RelayRequest.from_record(record)
            except RecordNotFoundError:
                return
            except (RecordFormatError, StoreError) as e:
                logger.warning(f"request_load_failed: id={request_id} error={e}")
                return
            if request.status != RequestStatus.PENDING:
                return
            self.process_request(request)
        except Exception:
            logger.exception(f"request_worker_failed: id={request_id}")
        finally:
            with self._lock:
                self._queued.discard(request_id)

    # ========================================================================
    # PROCESSING
    # ========================================================================

    def process_request(self, request: RelayRequest) -> Optional[RelayResponse]:
        """Execute one request; returns the persisted response, or None if rejected."""
        if request.target_device_id != self.device_id:
            logger.debug(f"request_rejected: id={request.id} reason=device_mismatch target={request.target_device_id}")
            return None

        with self._lock:
            if request.id in self.active_request_ids:
                logger.debug(f"request_rejected: id={request.id} reason=already_processing")
                return None
            self.active_request_ids.add(request.id)

        started = time.monotonic()
        try:
            self._set_status(request.id, RequestStatus.PROCESSING)

            service = self.registry.get(request.service_id)
            if service is None:
                raise ServiceNotFoundError(request.service_id)

            response = self._execute(request, service, started)
            self._persist(response)
            self._set_status(request.id, RequestStatus.COMPLETED)
            self.statistics.record(True, response.processing_time_ms)
            logger.info(
                f"request_processed: id={request.id} service={request.service_id} "
                f"status={response.status_code} ms={response.processing_time_ms}"
            )
            self.events.emit(REQUEST_COMPLETED, request_id=request.id, response=response)
            return response

        except Exception as e:
            elapsed_ms = self._elapsed_ms(started)
            message = str(e) or type(e).__name__
            logger.error(f"request_failed: id={request.id} service={request.service_id} error={message}")
            response = RelayResponse.failure(request.id, message, processing_time_ms=elapsed_ms)
            try:
                self._persist(response)
            except StoreError as store_error:
                logger.error(f"response_write_failed: id={request.id} error={store_error}")
            self._set_status(request.id, RequestStatus.FAILED)
            self.statistics.record(False, elapsed_ms)
            self.events.emit(REQUEST_FAILED, request_id=request.id, error=message, response=response)
            return response

        finally:
            with self._lock:
                self.active_request_ids.discard(request.id)

    def _execute(self, request: RelayRequest, service, started: float) -> RelayResponse:
        url = service.url + request.endpoint
        use_tools = self.orchestrator is not None and self.orchestrator.should_inject_tools(service)

        body = request.body
        if use_tools:
            body = self.orchestrator.inject_tools(body)

        http_response = self.session.request(
            request.method,
            url,
            headers=dict(request.headers),
            data=body,
            timeout=self.request_timeout,
        )
        response_body = http_response.content

        if use_tools:
            response_body = self.orchestrator.handle_response(response_body, request, service)

        return RelayResponse(
            request_id=request.id,
            status_code=http_response.status_code,
            headers=persistable_headers(http_response.headers),
            body=response_body,
            processing_time_ms=self._elapsed_ms(started),
        )

    def _persist(self, response: RelayResponse) -> None:
        self.store.save(response.to_record())

    def _set_status(self, request_id: str, status: RequestStatus) -> None:
        try:
            self.store.update(REQUEST_RECORD_TYPE, request_id, status=status.value)
        except StoreError as e:
            logger.warning(f"status_update_failed: id={request_id} status={status.value} error={e}")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    def cleanup_stale_pending(self) -> int:
        """Delete pending requests for services this device no longer knows."""
        known = set(self.registry.known_ids())
        removed = 0
        for request in self.pending_requests():
            if request.service_id in known:
                continue
            try:
                self.store.delete(REQUEST_RECORD_TYPE, request.id)
                removed += 1
                logger.info(f"stale_request_deleted: id={request.id} service={request.service_id}")
            except StoreError as e:
                logger.warning(f"stale_request_delete_failed: id={request.id} error={e}")
        return removed
