"""
SERVICE_REGISTRY
================

The worker's view of the HTTP services it can relay to.

A ``ServiceRegistry`` is created once at startup and handed to the request
processor (read-only lookup) and the presence service (announcements,
change notifications). Services are configured in a JSON file::

    {"services": [
        {"id": "ollama", "name": "Ollama", "kind": "Language Model",
         "port": 11434, "api_format": "OpenAI"},
        {"id": "comfy", "name": "ComfyUI", "kind": "Image Generation",
         "port": 8188, "api_format": "ComfyUI", "hidden": false}
    ]}

Health checks
-------------
``check_health(service)`` issues a GET against the service's health endpoint
with a 1.5s timeout, retrying once after 200ms. Any 2xx or 3xx status counts
as healthy.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from ..relay.models import ApiFormat, ServiceDescriptor, ServiceKind

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_S = 1.5
HEALTH_ATTEMPTS = 2
HEALTH_RETRY_DELAY_S = 0.2

ChangeCallback = Callable[[List["LocalService"]], None]


# ============================================================================
# LOCAL SERVICE
# ============================================================================

@dataclass
class LocalService:
    """A service reachable from this machine."""
    id: str
    name: str
    port: int
    kind: ServiceKind = ServiceKind.CUSTOM
    api_format: ApiFormat = ApiFormat.CUSTOM
    is_running: bool = True
    hidden: bool = False
    base_url: Optional[str] = None  # remote services; overrides localhost:port
    health_check_endpoint: str = "/"

    @property
    def url(self) -> str:
        """Base URL requests are sent to."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"http://localhost:{self.port}"

    def to_descriptor(self) -> ServiceDescriptor:
        return ServiceDescriptor(
            id=self.id,
            name=self.name,
            kind=self.kind,
            port=self.port,
            api_format=self.api_format,
            is_running=self.is_running,
            base_url=self.base_url,
        )

    def to_dict(self) -> Dict:
        result = {
            "id": self.id,
            "name": self.name,
            "port": self.port,
            "kind": self.kind.value,
            "api_format": self.api_format.value,
            "is_running": self.is_running,
        }
        if self.hidden:
            result["hidden"] = True
        if self.base_url:
            result["base_url"] = self.base_url
        if self.health_check_endpoint != "/":
            result["health_check_endpoint"] = self.health_check_endpoint
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "LocalService":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            port=int(data.get("port", 0)),
            kind=ServiceKind(data.get("kind", ServiceKind.CUSTOM.value)),
            api_format=ApiFormat(data.get("api_format", ApiFormat.CUSTOM.value)),
            is_running=data.get("is_running", True),
            hidden=data.get("hidden", False),
            base_url=data.get("base_url"),
            health_check_endpoint=data.get("health_check_endpoint", "/"),
        )


# ============================================================================
# REGISTRY
# ============================================================================

class ServiceRegistry:
    """Thread-safe collection of local services with change callbacks."""

    def __init__(self, services: Optional[List[LocalService]] = None):
        self._services: Dict[str, LocalService] = {}
        self._listeners: List[ChangeCallback] = []
        self._lock = threading.Lock()
        for service in services or []:
            self._services[service.id] = service

    # -- lookup --

    def get(self, service_id: str) -> Optional[LocalService]:
        """Visible service by id (hidden services are not relayable)."""
        with self._lock:
            service = self._services.get(service_id)
        if service is None or service.hidden:
            return None
        return service

    def all_services(self) -> List[LocalService]:
        with self._lock:
            return list(self._services.values())

    def visible_services(self) -> List[LocalService]:
        return [s for s in self.all_services() if not s.hidden]

    def running_services(self) -> List[LocalService]:
        return [s for s in self.visible_services() if s.is_running]

    def known_ids(self) -> List[str]:
        with self._lock:
            return list(self._services.keys())

    # -- mutation --

    def add(self, service: LocalService) -> None:
        with self._lock:
            self._services[service.id] = service
        self._changed()

    def remove(self, service_id: str) -> bool:
        with self._lock:
            removed = self._services.pop(service_id, None)
        if removed:
            self._changed()
        return removed is not None

    def set_running(self, service_id: str, is_running: bool) -> None:
        with self._lock:
            service = self._services.get(service_id)
            if service is None or service.is_running == is_running:
                return
            service.is_running = is_running
        self._changed()

    def set_hidden(self, service_id: str, hidden: bool) -> None:
        with self._lock:
            service = self._services.get(service_id)
            if service is None or service.hidden == hidden:
                return
            service.hidden = hidden
        self._changed()

    def replace_all(self, services: List[LocalService]) -> None:
        with self._lock:
            self._services = {s.id: s for s in services}
        self._changed()

    # -- notifications --

    def on_change(self, callback: ChangeCallback) -> None:
        with self._lock:
            self._listeners.append(callback)

    def _changed(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        snapshot = self.all_services()
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("service_change_listener_failed")

    # -- persistence --

    @classmethod
    def load(cls, path: str) -> "ServiceRegistry":
        file_path = Path(path)
        if not file_path.exists():
            logger.info(f"services_file_missing: path={path}")
            return cls()
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"services_file_unreadable: path={path} error={e}")
            return cls()

        services = []
        for entry in data.get("services", []):
            try:
                services.append(LocalService.from_dict(entry))
            except (KeyError, ValueError) as e:
                logger.warning(f"service_entry_skipped: entry={entry} error={e}")
        logger.info(f"services_loaded: count={len(services)} path={path}")
        return cls(services)

    def save(self, path: str) -> None:
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        data = {"services": [s.to_dict() for s in self.all_services()]}
        file_path.write_text(json.dumps(data, indent=2), encoding="utf-8")


# ============================================================================
# HEALTH
# ============================================================================

def check_health(
    service: LocalService,
    session=None,
    timeout: float = HEALTH_TIMEOUT_S,
    attempts: int = HEALTH_ATTEMPTS,
    retry_delay: float = HEALTH_RETRY_DELAY_S,
) -> bool:
    """Return True if the service answers its health endpoint with 2xx/3xx."""
    http = session or requests
    url = f"{service.url}{service.health_check_endpoint}"
    for attempt in range(1, attempts + 1):
        try:
            response = http.get(url, timeout=timeout, allow_redirects=False)
            if 200 <= response.status_code < 400:
                return True
            logger.debug(f"health_check_status: service={service.id} status={response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.debug(f"health_check_error: service={service.id} attempt={attempt} error={e}")
        if attempt < attempts:
            time.sleep(retry_delay)
    return False
