"""
Configuration management for relayCore.
"""

from .loader import (
    ConfigManager,
    GlobalConfig,
    PathsConfig,
    DeviceConfig,
    StoreConfig,
    RelayConfig,
    PresenceConfig,
    RetentionConfig,
    ToolsConfig,
    generate_device_id,
    get_config_manager,
    load_global_config,
)

__all__ = [
    "ConfigManager",
    "GlobalConfig",
    "PathsConfig",
    "DeviceConfig",
    "StoreConfig",
    "RelayConfig",
    "PresenceConfig",
    "RetentionConfig",
    "ToolsConfig",
    "generate_device_id",
    "get_config_manager",
    "load_global_config",
]
