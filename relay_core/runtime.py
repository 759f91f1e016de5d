"""
WORKER_RUNTIME
==============

Composition root for a desktop worker. Every long-lived service is built
once here and handed its collaborators explicitly.

::

    WorkerRuntime
    ├── store          RecordStore (memory / file / http from config)
    ├── registry       ServiceRegistry (services.json)
    ├── tools          ToolBackend (user tools + tool servers)
    ├── orchestrator   ToolOrchestrator
    ├── processor      RequestProcessor   (poll thread + worker pool)
    ├── presence       PresenceService    (announce thread)
    └── sweeper        RetentionSweeper   (sweep thread)

Usage::

    runtime = WorkerRuntime.from_config(get_config_manager().global_config)
    runtime.start()
    ...
    runtime.stop()
"""

import logging
from typing import Optional

from .config.loader import GlobalConfig
from .orchestrator import ToolOrchestrator
from .relay.events import EventBus
from .relay.models import DeviceKind
from .relay.presence import PresenceService
from .relay.processor import RequestProcessor
from .relay.retention import RetentionSweeper
from .services import ServiceRegistry, WorkflowStore
from .store import FileRecordStore, HttpRecordStore, InMemoryRecordStore, RecordStore
from .tools import ToolBackend, ToolServerManager

logger = logging.getLogger(__name__)


def build_local_store(config: GlobalConfig) -> RecordStore:
    """A store held on this machine (``memory`` or ``file``)."""
    if config.store.backend == "memory":
        return InMemoryRecordStore(inline_threshold=config.store.inline_threshold)
    return FileRecordStore(config.paths.store_dir, inline_threshold=config.store.inline_threshold)


def build_store(config: GlobalConfig) -> RecordStore:
    backend = config.store.backend
    if backend == "http":
        if not config.store.url:
            raise ValueError("store.url is required for the http backend")
        return HttpRecordStore(config.store.url, inline_threshold=config.store.inline_threshold)
    if backend in ("memory", "file"):
        return build_local_store(config)
    raise ValueError(f"Unknown store backend: {backend}")


def build_tool_backend(config: GlobalConfig, events: Optional[EventBus] = None) -> ToolBackend:
    tools_cfg = config.tools
    allowed_paths = tools_cfg.allowed_paths or [config.paths.sandbox_dir]
    servers = ToolServerManager(
        events=events,
        filesystem_paths=allowed_paths,
        call_timeout=tools_cfg.rpc_timeout,
        slow_call_timeout=tools_cfg.rpc_slow_timeout,
    )
    backend = ToolBackend.from_directories(
        tools_dir=config.paths.tools_dir,
        servers_dir=config.paths.tool_servers_dir,
        allowed_paths=allowed_paths,
        builtin_file_tools=tools_cfg.builtin_file_tools,
        servers=servers,
    )
    backend.registry.default_timeout = tools_cfg.script_timeout
    backend.registry.max_output_size = tools_cfg.max_output_size
    return backend


class WorkerRuntime:
    """Owns the worker-side services and their threads."""

    def __init__(
        self,
        config: GlobalConfig,
        store: RecordStore,
        registry: ServiceRegistry,
        tools: ToolBackend,
        events: Optional[EventBus] = None,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.tools = tools
        self.events = events or EventBus()

        device = config.device
        self.orchestrator = ToolOrchestrator(tools, timeout=config.relay.request_timeout)
        self.processor = RequestProcessor(
            store,
            registry,
            device.device_id,
            orchestrator=self.orchestrator if config.tools.enabled else None,
            events=self.events,
            poll_interval=config.relay.worker_poll_interval,
            max_workers=config.relay.max_workers,
            request_timeout=config.relay.request_timeout,
        )
        self.presence = PresenceService(
            store,
            registry,
            WorkflowStore(config.paths.workflows_dir),
            device_id=device.device_id,
            device_name=device.device_name,
            device_kind=DeviceKind(device.kind),
            announce_interval=config.presence.announce_interval,
            staleness_window=config.presence.staleness_window,
        )
        self.sweeper = RetentionSweeper(
            store,
            retention_seconds=config.retention.retention_seconds,
            interval=config.retention.sweep_interval,
        )
        self._running = False

    @classmethod
    def from_config(cls, config: GlobalConfig) -> "WorkerRuntime":
        events = EventBus()
        return cls(
            config,
            build_store(config),
            ServiceRegistry.load(config.paths.services_file),
            build_tool_backend(config, events),
            events=events,
        )

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.config.tools.enabled and self.tools.servers is not None:
            started = self.tools.servers.start_all()
            logger.info(f"tool_servers_started: {sum(started.values())}/{len(started)}")
        self.sweeper.start()
        self.presence.start()
        self.processor.start()
        logger.info(f"worker_started: device={self.config.device.device_id}")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.processor.stop()
        self.presence.stop()
        self.sweeper.stop()
        self.tools.shutdown()
        self.store.close()
        logger.info(f"worker_stopped: device={self.config.device.device_id}")

    def status(self) -> dict:
        return {
            "device_id": self.config.device.device_id,
            "running": self._running,
            "services": [s.id for s in self.registry.running_services()],
            "active_requests": len(self.processor.active_request_ids),
            "statistics": self.processor.statistics.to_dict(),
        }
