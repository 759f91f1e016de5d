"""
CONFIG_LOADER
=============

Configuration management for relayCore.

Handles:
- Directory layout (record store, tools, tool servers, workflows, logs)
- Device identity (id generated once and persisted)
- Store backend selection
- Relay, presence, retention and tool timings

Usage:
    from relay_core.config import get_config_manager

    config = get_config_manager()
    print(config.global_config.device.device_id)
    print(config.global_config.store.backend)
"""

import json
import logging
import platform
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def _find_project_root() -> Path:
    """
    Find the project root directory.

    Looks for data/relayCore/CONFIG/config.json as the definitive marker,
    since this only exists at the true project root.
    """
    current = Path(__file__).resolve().parent

    # Walk up looking for the config file (definitive marker)
    for _ in range(5):
        config_file = current / "data" / "relayCore" / "CONFIG" / "config.json"
        if config_file.exists():
            return current
        current = current.parent

    # loader.py is at relay_core/config/loader.py,
    # so project root is 3 levels up: config -> relay_core -> project_root
    return Path(__file__).resolve().parent.parent.parent


def _get_data_dir() -> Path:
    """Get the relayCore data directory path."""
    return _find_project_root() / "data" / "relayCore"


def generate_device_id(kind: str = "desktop") -> str:
    """``mac-<8 hex>`` for desktop workers, ``ios-<8 hex>`` for mobile clients."""
    prefix = "ios" if kind == "mobile" else "mac"
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class PathsConfig:
    """Directory paths configuration."""
    store_dir: str = "./data/relayCore/STORE"
    tools_dir: str = "./data/relayCore/TOOLS"
    tool_servers_dir: str = "./data/relayCore/TOOL_SERVERS"
    workflows_dir: str = "./data/relayCore/WORKFLOWS"
    sandbox_dir: str = "./data/relayCore/SANDBOX"
    logs_dir: str = "./data/relayCore/LOGS"
    services_file: str = "./data/relayCore/CONFIG/services.json"

    def to_dict(self) -> Dict:
        return {
            "store_dir": self.store_dir,
            "tools_dir": self.tools_dir,
            "tool_servers_dir": self.tool_servers_dir,
            "workflows_dir": self.workflows_dir,
            "sandbox_dir": self.sandbox_dir,
            "logs_dir": self.logs_dir,
            "services_file": self.services_file,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PathsConfig":
        defaults = cls()
        return cls(**{key: data.get(key, value) for key, value in defaults.to_dict().items()})

    def resolve(self, base_path: Path) -> "PathsConfig":
        """Resolve relative paths against base path."""
        return PathsConfig(**{
            key: str((base_path / value).resolve())
            for key, value in self.to_dict().items()
        })


@dataclass
class DeviceConfig:
    """Identity of this device."""
    device_id: Optional[str] = None
    device_name: str = field(default_factory=platform.node)
    kind: str = "desktop"  # "desktop" or "mobile"

    def to_dict(self) -> Dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DeviceConfig":
        return cls(
            device_id=data.get("device_id"),
            device_name=data.get("device_name") or platform.node(),
            kind=data.get("kind", "desktop"),
        )


@dataclass
class StoreConfig:
    """Record store backend."""
    backend: str = "file"  # "memory", "file" or "http"
    url: Optional[str] = None  # http backend
    inline_threshold: int = 900_000  # bytes
    server_host: str = "127.0.0.1"
    server_port: int = 8765

    def to_dict(self) -> Dict:
        return {
            "backend": self.backend,
            "url": self.url,
            "inline_threshold": self.inline_threshold,
            "server_host": self.server_host,
            "server_port": self.server_port,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StoreConfig":
        return cls(
            backend=data.get("backend", "file"),
            url=data.get("url"),
            inline_threshold=data.get("inline_threshold", 900_000),
            server_host=data.get("server_host", "127.0.0.1"),
            server_port=data.get("server_port", 8765),
        )


@dataclass
class RelayConfig:
    """Submitter and processor timings."""
    poll_interval: float = 5.0
    max_poll_attempts: int = 60
    request_timeout: int = 300
    worker_poll_interval: float = 5.0
    max_workers: int = 4

    def to_dict(self) -> Dict:
        return {
            "poll_interval": self.poll_interval,
            "max_poll_attempts": self.max_poll_attempts,
            "request_timeout": self.request_timeout,
            "worker_poll_interval": self.worker_poll_interval,
            "max_workers": self.max_workers,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RelayConfig":
        return cls(
            poll_interval=data.get("poll_interval", 5.0),
            max_poll_attempts=data.get("max_poll_attempts", 60),
            request_timeout=data.get("request_timeout", 300),
            worker_poll_interval=data.get("worker_poll_interval", 5.0),
            max_workers=data.get("max_workers", 4),
        )


@dataclass
class PresenceConfig:
    announce_interval: float = 30.0
    staleness_window: float = 120.0
    discovery_interval: float = 10.0
    connected_discovery_interval: float = 30.0

    def to_dict(self) -> Dict:
        return {
            "announce_interval": self.announce_interval,
            "staleness_window": self.staleness_window,
            "discovery_interval": self.discovery_interval,
            "connected_discovery_interval": self.connected_discovery_interval,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PresenceConfig":
        return cls(
            announce_interval=data.get("announce_interval", 30.0),
            staleness_window=data.get("staleness_window", 120.0),
            discovery_interval=data.get("discovery_interval", 10.0),
            connected_discovery_interval=data.get("connected_discovery_interval", 30.0),
        )


@dataclass
class RetentionConfig:
    sweep_interval: int = 6 * 60 * 60  # seconds
    retention_seconds: int = 24 * 60 * 60

    def to_dict(self) -> Dict:
        return {
            "sweep_interval": self.sweep_interval,
            "retention_seconds": self.retention_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RetentionConfig":
        return cls(
            sweep_interval=data.get("sweep_interval", 6 * 60 * 60),
            retention_seconds=data.get("retention_seconds", 24 * 60 * 60),
        )


@dataclass
class ToolsConfig:
    """Tool execution settings."""
    enabled: bool = True
    script_timeout: int = 30
    max_output_size: int = 100000
    rpc_timeout: float = 5.0
    rpc_slow_timeout: float = 10.0
    allowed_paths: List[str] = field(default_factory=list)
    builtin_file_tools: bool = False

    def to_dict(self) -> Dict:
        result = {
            "enabled": self.enabled,
            "script_timeout": self.script_timeout,
            "max_output_size": self.max_output_size,
            "rpc_timeout": self.rpc_timeout,
            "rpc_slow_timeout": self.rpc_slow_timeout,
            "builtin_file_tools": self.builtin_file_tools,
        }
        if self.allowed_paths:
            result["allowed_paths"] = self.allowed_paths
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolsConfig":
        return cls(
            enabled=data.get("enabled", True),
            script_timeout=data.get("script_timeout", 30),
            max_output_size=data.get("max_output_size", 100000),
            rpc_timeout=data.get("rpc_timeout", 5.0),
            rpc_slow_timeout=data.get("rpc_slow_timeout", 10.0),
            allowed_paths=list(data.get("allowed_paths") or []),
            builtin_file_tools=data.get("builtin_file_tools", False),
        )


@dataclass
class GlobalConfig:
    """Global configuration for relayCore."""
    version: str = "1.0.0"
    paths: PathsConfig = field(default_factory=PathsConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging_level: str = "INFO"
    logging_file: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "paths": self.paths.to_dict(),
            "device": self.device.to_dict(),
            "store": self.store.to_dict(),
            "relay": self.relay.to_dict(),
            "presence": self.presence.to_dict(),
            "retention": self.retention.to_dict(),
            "tools": self.tools.to_dict(),
            "logging": {
                "level": self.logging_level,
                "file": self.logging_file,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        logging_section = data.get("logging", {})
        return cls(
            version=data.get("version", "1.0.0"),
            paths=PathsConfig.from_dict(data.get("paths", {})),
            device=DeviceConfig.from_dict(data.get("device", {})),
            store=StoreConfig.from_dict(data.get("store", {})),
            relay=RelayConfig.from_dict(data.get("relay", {})),
            presence=PresenceConfig.from_dict(data.get("presence", {})),
            retention=RetentionConfig.from_dict(data.get("retention", {})),
            tools=ToolsConfig.from_dict(data.get("tools", {})),
            logging_level=logging_section.get("level", "INFO"),
            logging_file=logging_section.get("file"),
        )

    @classmethod
    def create_default(cls) -> "GlobalConfig":
        return cls()


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """Load, persist and resolve the global configuration."""

    def __init__(self, config_dir: Optional[str] = None, project_root: Optional[str] = None):
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = _get_data_dir() / "CONFIG"

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.global_config: GlobalConfig = GlobalConfig.create_default()
        self._project_root = Path(project_root) if project_root else _find_project_root()

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    def load_global(self) -> GlobalConfig:
        """Load global configuration from file, writing defaults on first use."""
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                self.global_config = GlobalConfig.from_dict(data)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"config_unreadable: path={self.config_path} error={e}, using defaults")
                self.global_config = GlobalConfig.create_default()
        else:
            self.global_config = GlobalConfig.create_default()

        # Device id is generated once and then kept
        if not self.global_config.device.device_id:
            self.global_config.device.device_id = generate_device_id(self.global_config.device.kind)
            logger.info(f"device_id_generated: id={self.global_config.device.device_id}")
            self.save_global()
        elif not self.config_path.exists():
            self.save_global()

        # Resolve paths relative to project root (after saving, so the file keeps relative paths)
        self.global_config.paths = self.global_config.paths.resolve(self._project_root)
        return self.global_config

    def save_global(self) -> None:
        """Save global configuration to file."""
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(self.global_config.to_dict(), f, indent=2)

    def get_resolved_path(self, path_name: str) -> Path:
        """Get a resolved path from configuration."""
        path_str = getattr(self.global_config.paths, path_name, None)
        if path_str:
            return Path(path_str)
        return _get_data_dir() / path_name.upper().replace("_DIR", "")


# ============================================================================
# GLOBAL INSTANCE
# ============================================================================

_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Optional[str] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_dir)
        _config_manager.load_global()
    return _config_manager


def load_global_config() -> GlobalConfig:
    """Load and return global configuration."""
    return get_config_manager().load_global()
