from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path

from relay_core.config import ConfigManager, GlobalConfig, generate_device_id
from relay_core.logging_config import setup_logging
from relay_core.runtime import WorkerRuntime, build_store, build_tool_backend
from relay_core.store import FileRecordStore, InMemoryRecordStore


def test_generate_device_id_prefix() -> None:
    assert re.fullmatch(r"mac-[0-9a-f]{8}", generate_device_id("desktop"))
    assert re.fullmatch(r"ios-[0-9a-f]{8}", generate_device_id("mobile"))


def test_first_load_writes_defaults_and_keeps_device_id(tmp_path: Path) -> None:
    manager = ConfigManager(config_dir=str(tmp_path / "CONFIG"), project_root=str(tmp_path))
    config = manager.load_global()

    saved = json.loads(manager.config_path.read_text())
    assert saved["device"]["device_id"] == config.device.device_id
    assert saved["paths"]["store_dir"] == "./data/relayCore/STORE"
    assert config.paths.store_dir == str((tmp_path / "data/relayCore/STORE").resolve())

    again = ConfigManager(config_dir=str(tmp_path / "CONFIG"), project_root=str(tmp_path)).load_global()
    assert again.device.device_id == config.device.device_id


def test_partial_file_fills_defaults(tmp_path: Path) -> None:
    config_dir = tmp_path / "CONFIG"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({
        "device": {"device_id": "mac-cafebabe", "kind": "desktop"},
        "store": {"backend": "memory"},
        "logging": {"level": "DEBUG", "file": "none"},
    }))

    config = ConfigManager(config_dir=str(config_dir), project_root=str(tmp_path)).load_global()

    assert config.device.device_id == "mac-cafebabe"
    assert config.store.backend == "memory"
    assert config.store.inline_threshold == 900_000
    assert config.presence.staleness_window == 120.0
    assert config.tools.rpc_timeout == 5.0
    assert config.logging_level == "DEBUG"
    assert config.logging_file == "none"


def test_round_trip() -> None:
    config = GlobalConfig()
    config.device.device_id = "ios-12345678"
    config.relay.max_poll_attempts = 10

    restored = GlobalConfig.from_dict(json.loads(json.dumps(config.to_dict())))

    assert restored.to_dict() == config.to_dict()


def test_build_store_from_config(tmp_path: Path) -> None:
    config = GlobalConfig()
    config.store.backend = "memory"
    assert isinstance(build_store(config), InMemoryRecordStore)

    config.store.backend = "file"
    config.paths.store_dir = str(tmp_path / "store")
    assert isinstance(build_store(config), FileRecordStore)


def test_build_tool_backend_defaults_to_sandbox(tmp_path: Path) -> None:
    config = GlobalConfig()
    config.paths = config.paths.resolve(tmp_path)
    config.tools.builtin_file_tools = True
    config.tools.script_timeout = 7

    backend = build_tool_backend(config)
    try:
        assert backend.registry.default_timeout == 7
        assert backend.registry.has("read_file")
        assert backend.servers.definitions() == []
    finally:
        backend.shutdown()


def test_setup_logging_stamps_device_id(tmp_path: Path) -> None:
    parent = setup_logging(level="debug", logs_dir=str(tmp_path), device_id="mac-1234abcd")
    try:
        setup_logging(level="DEBUG", logs_dir=str(tmp_path), device_id="mac-1234abcd")
        assert len(parent.handlers) == 2
        logging.getLogger("relay_core.test").info("hello: key=value")
        for handler in parent.handlers:
            handler.flush()

        line = (tmp_path / "relaycore.log").read_text().strip()
        assert "| mac-1234abcd | relay_core.test | hello: key=value" in line
    finally:
        for handler in list(parent.handlers):
            parent.removeHandler(handler)
            handler.close()
        parent.propagate = True
        parent.setLevel(logging.NOTSET)


def test_worker_runtime_lifecycle(tmp_path: Path) -> None:
    config = GlobalConfig()
    config.paths = config.paths.resolve(tmp_path)
    config.store.backend = "memory"
    config.device.device_id = "mac-0000beef"
    runtime = WorkerRuntime.from_config(config)

    runtime.start()
    try:
        for _ in range(200):
            if runtime.store.count("DeviceAnnouncement"):
                break
            time.sleep(0.01)
        status = runtime.status()
        assert status["running"] is True
        assert status["device_id"] == "mac-0000beef"
        assert status["active_requests"] == 0
    finally:
        runtime.stop()

    assert runtime.status()["running"] is False
    assert runtime.store.fetch("DeviceAnnouncement", "mac-0000beef").fields["is_active"] is False
