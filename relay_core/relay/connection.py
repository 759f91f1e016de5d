"""
Client-side connection to a worker device.

A client gets its target either out of band (a bootstrap payload scanned from
a QR code or pasted) or by discovery. The auto-connect policy on each
discovery pass:

1. not connected and the previously connected device is visible: reconnect
2. not connected and exactly one device is visible: connect to it
3. otherwise: leave the choice to the user (``available_devices``)

Discovery runs every 10s while disconnected and every 30s once connected.
A connected device that drops out of discovery is treated as disconnected
but remembered, so it reconnects automatically when it reappears.
"""

import logging
import threading
from typing import List, Optional, Union

from ..store import RecordStore, StoreError, utc_now
from .errors import NotConnectedError
from .events import CONNECTED, DISCONNECTED, SERVICES_CHANGED, EventBus
from .models import BootstrapPayload, DeviceAnnouncement, DeviceKind, RelayResponse, ServiceDescriptor
from .presence import DEFAULT_STALENESS_WINDOW, discover_devices

logger = logging.getLogger(__name__)

DISCONNECTED_DISCOVERY_INTERVAL = 10.0  # seconds
CONNECTED_DISCOVERY_INTERVAL = 30.0


def build_bootstrap_payload(device_id: str, services=None) -> BootstrapPayload:
    """Handshake payload a worker shows to clients.

    ``services`` may hold ``ServiceDescriptor`` or ``LocalService`` items.
    """
    descriptors = None
    if services is not None:
        descriptors = [s if isinstance(s, ServiceDescriptor) else s.to_descriptor() for s in services]
    return BootstrapPayload(device_id=device_id, timestamp=utc_now(), services=descriptors)


class RelayConnection:
    """Tracks which worker the client talks to and relays requests to it."""

    def __init__(
        self,
        store: RecordStore,
        submitter=None,
        events: Optional[EventBus] = None,
        device_kind: DeviceKind = DeviceKind.DESKTOP,
        staleness_window: float = DEFAULT_STALENESS_WINDOW,
        disconnected_interval: float = DISCONNECTED_DISCOVERY_INTERVAL,
        connected_interval: float = CONNECTED_DISCOVERY_INTERVAL,
        clock=utc_now,
    ):
        self.store = store
        self.submitter = submitter
        self.events = events or EventBus()
        self.device_kind = DeviceKind(device_kind)
        self.staleness_window = staleness_window
        self.disconnected_interval = disconnected_interval
        self.connected_interval = connected_interval
        self.clock = clock

        self.target_device_id: Optional[str] = None
        self.target_device_name: Optional[str] = None
        self.services: List[ServiceDescriptor] = []
        self.available_devices: List[DeviceAnnouncement] = []
        self.is_connected = False
        self._last_device_id: Optional[str] = None

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ========================================================================
    # CONNECTING
    # ========================================================================

    def connect_with_bootstrap(self, payload: Union[str, BootstrapPayload]) -> BootstrapPayload:
        """Seed the target from a bootstrap payload. Raises ``ValueError`` if invalid."""
        if isinstance(payload, str):
            payload = BootstrapPayload.parse(payload)
        self._connect(payload.device_id, payload.device_id, payload.services or [])
        return payload

    def connect_to(self, announcement: DeviceAnnouncement) -> None:
        self._connect(announcement.device_id, announcement.device_name, announcement.services)

    def _connect(self, device_id: str, device_name: str, services: List[ServiceDescriptor]) -> None:
        with self._lock:
            self.target_device_id = device_id
            self.target_device_name = device_name
            self.services = list(services)
            self.is_connected = True
            self._last_device_id = device_id
            if self.submitter is not None:
                self.submitter.default_target_device_id = device_id
        logger.info(f"relay_connected: device={device_id} services={len(services)}")
        self.events.emit(CONNECTED, device_id=device_id, device_name=device_name)
        self.events.emit(SERVICES_CHANGED, device_id=device_id, services=list(services))

    def disconnect(self) -> None:
        """Forget the target entirely; auto-reconnect will not pick it again."""
        with self._lock:
            device_id = self.target_device_id
            self.target_device_id = None
            self.target_device_name = None
            self.services = []
            self.is_connected = False
            self._last_device_id = None
            if self.submitter is not None:
                self.submitter.default_target_device_id = None
        if device_id:
            logger.info(f"relay_disconnected: device={device_id}")
            self.events.emit(DISCONNECTED, device_id=device_id)

    def _lost(self, device_id: str) -> None:
        with self._lock:
            self.is_connected = False
            if self.submitter is not None:
                self.submitter.default_target_device_id = None
        logger.warning(f"relay_device_lost: device={device_id}")
        self.events.emit(DISCONNECTED, device_id=device_id)

    # ========================================================================
    # DISCOVERY
    # ========================================================================

    def discover_and_connect(self) -> List[DeviceAnnouncement]:
        """Run one discovery pass, apply the auto-connect policy, return the devices seen."""
        devices = discover_devices(self.store, self.device_kind, self.staleness_window, now=self.clock())
        with self._lock:
            self.available_devices = devices
            connected = self.is_connected
            target = self.target_device_id
            remembered = self._last_device_id

        by_id = {d.device_id: d for d in devices}

        if connected:
            current = by_id.get(target)
            if current is None:
                self._lost(target)
            elif current.services != self.services:
                with self._lock:
                    self.services = list(current.services)
                logger.info(f"relay_services_changed: device={target} services={len(current.services)}")
                self.events.emit(SERVICES_CHANGED, device_id=target, services=list(current.services))
            return devices

        if remembered and remembered in by_id:
            logger.info(f"relay_reconnecting: device={remembered}")
            self.connect_to(by_id[remembered])
        elif len(devices) == 1:
            logger.info(f"relay_auto_connecting: device={devices[0].device_id}")
            self.connect_to(devices[0])
        return devices

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="relay-discovery")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.discover_and_connect()
            except StoreError as e:
                logger.warning(f"discovery_failed: error={e}")
            except Exception:
                logger.exception("discovery_failed")
            interval = self.connected_interval if self.is_connected else self.disconnected_interval
            self._stop_event.wait(interval)

    # ========================================================================
    # REQUESTS
    # ========================================================================

    def send_request(self, service_id: str, service_name: str, endpoint: str, **kwargs) -> RelayResponse:
        with self._lock:
            target = self.target_device_id if self.is_connected else None
        if not target or self.submitter is None:
            raise NotConnectedError()
        return self.submitter.send_request(service_id, service_name, endpoint, target_device_id=target, **kwargs)
