"""
Logging setup for relayCore processes.

Handlers hang off the ``relay_core`` parent logger, so module loggers
(``relay_core.relay.processor``, ``relay_core.tools.mcp_session``, ...) need no
configuration of their own. Every line carries the local device id: a relay
spans two machines and their logs are usually read side by side.

Line format::

    2025-06-01 12:00:00 | INFO     | mac-1f3a | relay_core.relay.processor | request_completed: ...
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "relay_core"
LOG_FILENAME = "relaycore.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(device_id)s | %(name)s | %(message)s"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("urllib3", "httpx", "uvicorn.access")


class DeviceFilter(logging.Filter):
    """Stamps ``record.device_id`` so the formatter can print it."""

    def __init__(self, device_id: str):
        super().__init__()
        self.device_id = device_id or "-"

    def filter(self, record: logging.LogRecord) -> bool:
        record.device_id = self.device_id
        return True


def _owned_handlers(logger: logging.Logger):
    return [h for h in logger.handlers if getattr(h, "_relay_core", False)]


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    logs_dir: Optional[str] = None,
    device_id: str = "",
) -> logging.Logger:
    """Attach console and file handlers to the ``relay_core`` logger.

    Calling it again replaces the handlers it installed before, so a CLI
    command can reconfigure after loading the config.

    Args:
        level: Level name; unknown names fall back to INFO.
        log_file: ``None`` writes ``<logs_dir>/relaycore.log``, ``"none"``
            disables the file, anything else is used as the path.
        logs_dir: Directory for the default log file.
        device_id: Printed on every line.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    parent = logging.getLogger(ROOT_LOGGER)
    for handler in _owned_handlers(parent):
        parent.removeHandler(handler)
        handler.close()

    parent.setLevel(numeric_level)
    parent.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    device_filter = DeviceFilter(device_id)

    handlers = [logging.StreamHandler()]
    path = _resolve_log_path(log_file, logs_dir)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ))

    for handler in handlers:
        handler._relay_core = True
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(device_filter)
        parent.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    return parent


def _resolve_log_path(log_file: Optional[str], logs_dir: Optional[str]) -> Optional[Path]:
    if isinstance(log_file, str) and log_file.lower() == "none":
        return None
    if log_file:
        return Path(log_file)
    if logs_dir:
        return Path(logs_dir) / LOG_FILENAME
    return None
