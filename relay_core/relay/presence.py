"""
PRESENCE
========

Device announcements: each device upserts one ``DeviceAnnouncement`` record
(keyed by its device id) listing the services it can relay to. Clients
discover workers by querying announcements refreshed within the staleness
window.

- ``announce()`` publishes running, non-hidden services. Image-generation
  and ComfyUI-format services carry the workflow list.
- ``start()`` announces immediately, then every ``announce_interval`` seconds,
  and again whenever the service registry reports a change.
- ``discover(kind)`` returns active devices of that kind seen within
  ``staleness_window`` seconds, newest first.
- ``mark_inactive()`` keeps the record but flags the device as gone.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..store import RecordNotFoundError, RecordStore, StoreError, format_timestamp, utc_now, where
from .models import (
    ANNOUNCEMENT_RECORD_TYPE,
    ApiFormat,
    DeviceAnnouncement,
    DeviceKind,
    RecordFormatError,
    ServiceDescriptor,
    ServiceKind,
)

logger = logging.getLogger(__name__)

DEFAULT_ANNOUNCE_INTERVAL = 30.0  # seconds
DEFAULT_STALENESS_WINDOW = 120.0  # seconds

Clock = Callable[[], datetime]


def wants_workflows(service: ServiceDescriptor) -> bool:
    return service.kind == ServiceKind.IMAGE_GENERATION or service.api_format == ApiFormat.COMFYUI


def discover_devices(
    store: RecordStore,
    kind: DeviceKind = DeviceKind.DESKTOP,
    staleness_window: float = DEFAULT_STALENESS_WINDOW,
    now: Optional[datetime] = None,
) -> List[DeviceAnnouncement]:
    """Active announcements of ``kind`` no older than ``staleness_window`` seconds."""
    now = now or utc_now()
    cutoff = now - timedelta(seconds=staleness_window)
    records = store.query(
        ANNOUNCEMENT_RECORD_TYPE,
        [
            where("device_kind", "==", DeviceKind(kind).value),
            where("last_seen_at", ">=", format_timestamp(cutoff)),
        ],
        sort_by="last_seen_at",
        descending=True,
    )

    devices = []
    for record in records:
        try:
            announcement = DeviceAnnouncement.from_record(record)
        except RecordFormatError as e:
            logger.warning(f"announcement_malformed: id={record.record_id} error={e}")
            continue
        if not announcement.is_active:
            continue
        if announcement.age_seconds(now) > staleness_window:
            continue
        devices.append(announcement)
    return devices


class PresenceService:
    """Publishes this device's announcement and discovers peers."""

    def __init__(
        self,
        store: RecordStore,
        registry=None,
        workflows=None,
        device_id: str = "",
        device_name: str = "",
        device_kind: DeviceKind = DeviceKind.DESKTOP,
        announce_interval: float = DEFAULT_ANNOUNCE_INTERVAL,
        staleness_window: float = DEFAULT_STALENESS_WINDOW,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.registry = registry
        self.workflows = workflows
        self.device_id = device_id
        self.device_name = device_name or device_id
        self.device_kind = DeviceKind(device_kind)
        self.announce_interval = announce_interval
        self.staleness_window = staleness_window
        self.clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._announce_lock = threading.Lock()

        if registry is not None:
            registry.on_change(self._on_registry_change)

    # ========================================================================
    # ANNOUNCING
    # ========================================================================

    def current_services(self) -> List[ServiceDescriptor]:
        if self.registry is None:
            return []
        workflows = None
        services = []
        for service in self.registry.running_services():
            descriptor = service.to_descriptor()
            if wants_workflows(descriptor) and self.workflows is not None:
                if workflows is None:
                    workflows = self.workflows.list_workflows()
                descriptor.workflows = list(workflows)
            services.append(descriptor)
        return services

    def announce(self, is_active: bool = True) -> DeviceAnnouncement:
        """Upsert this device's announcement record."""
        announcement = DeviceAnnouncement(
            device_id=self.device_id,
            device_name=self.device_name,
            device_kind=self.device_kind,
            services=self.current_services(),
            last_seen_at=self.clock(),
            is_active=is_active,
        )
        with self._announce_lock:
            self._upsert(announcement)
        logger.info(
            f"device_announced: device={self.device_id} services={len(announcement.services)} active={is_active}"
        )
        return announcement

    def _upsert(self, announcement: DeviceAnnouncement) -> None:
        record = announcement.to_record()
        try:
            existing = self.store.fetch(ANNOUNCEMENT_RECORD_TYPE, self.device_id)
        except RecordNotFoundError:
            self.store.save(record)
            return
        existing.fields.update(record.fields)
        self.store.save(existing)

    def mark_inactive(self) -> None:
        """Flag this device inactive, keeping the record."""
        try:
            self.announce(is_active=False)
        except StoreError as e:
            logger.warning(f"mark_inactive_failed: device={self.device_id} error={e}")

    def _on_registry_change(self, _services) -> None:
        if not self._running:
            return
        try:
            self.announce()
        except StoreError as e:
            logger.warning(f"announce_failed: device={self.device_id} error={e}")

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="relay-presence")
        self._thread.start()

    def stop(self, mark_inactive: bool = True) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        if mark_inactive:
            self.mark_inactive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.announce()
            except Exception:
                logger.exception(f"announce_failed: device={self.device_id}")
            self._stop_event.wait(self.announce_interval)

    # ========================================================================
    # DISCOVERY
    # ========================================================================

    def discover(self, kind: DeviceKind = DeviceKind.DESKTOP) -> List[DeviceAnnouncement]:
        return discover_devices(self.store, kind, self.staleness_window, now=self.clock())
