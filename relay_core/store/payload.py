"""
PAYLOAD_ROUTING
===============

Binary field encoding for record stores.

Record stores hold JSON-compatible field maps. ``bytes`` values are converted
at this boundary:

- up to ``inline_threshold`` bytes: stored inline as ``{"$bytes": <base64>}``
- larger: written to an ``AssetStore`` and replaced by ``{"$asset": <handle>}``

Decoding reverses both forms, so callers of ``RecordStore`` always get the
original ``bytes`` back and never see which path was used.
"""

import base64
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_INLINE_THRESHOLD = 900_000  # bytes

INLINE_KEY = "$bytes"
ASSET_KEY = "$asset"


# ============================================================================
# ASSET STORES
# ============================================================================

class AssetStore(ABC):
    """Out-of-band storage for large binary payloads."""

    @abstractmethod
    def put(self, handle: str, data: bytes) -> None:
        pass

    @abstractmethod
    def get(self, handle: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, handle: str) -> None:
        pass


class MemoryAssetStore(AssetStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, handle: str, data: bytes) -> None:
        with self._lock:
            self._blobs[handle] = bytes(data)

    def get(self, handle: str) -> bytes:
        with self._lock:
            if handle not in self._blobs:
                raise KeyError(f"Asset not found: {handle}")
            return self._blobs[handle]

    def delete(self, handle: str) -> None:
        with self._lock:
            self._blobs.pop(handle, None)

    def __len__(self) -> int:
        return len(self._blobs)


class DirectoryAssetStore(AssetStore):
    """One file per asset inside ``root``."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, handle: str) -> Path:
        if "/" in handle or "\\" in handle or handle.startswith("."):
            raise ValueError(f"Invalid asset handle: {handle}")
        return self.root / f"{handle}.bin"

    def put(self, handle: str, data: bytes) -> None:
        path = self._path(handle)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def get(self, handle: str) -> bytes:
        path = self._path(handle)
        if not path.exists():
            raise KeyError(f"Asset not found: {handle}")
        return path.read_bytes()

    def delete(self, handle: str) -> None:
        path = self._path(handle)
        if path.exists():
            path.unlink()


# ============================================================================
# CODEC
# ============================================================================

class PayloadCodec:
    """Converts record fields to and from their stored representation."""

    def __init__(self, assets: AssetStore, inline_threshold: int = DEFAULT_INLINE_THRESHOLD):
        self.assets = assets
        self.inline_threshold = inline_threshold

    def encode(self, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for key, value in fields.items():
            if isinstance(value, (bytes, bytearray)):
                encoded[key] = self._encode_bytes(record_id, key, bytes(value))
            else:
                encoded[key] = value
        return encoded

    def decode(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        decoded = {}
        for key, value in stored.items():
            if is_inline(value):
                decoded[key] = base64.b64decode(value[INLINE_KEY])
            elif is_asset(value):
                decoded[key] = self.assets.get(value[ASSET_KEY])
            else:
                decoded[key] = value
        return decoded

    def release(self, stored: Dict[str, Any]) -> None:
        """Delete every asset referenced by a stored field map."""
        for handle in asset_handles(stored):
            try:
                self.assets.delete(handle)
            except OSError as e:
                logger.warning(f"asset_release_failed: handle={handle} error={e}")

    def _encode_bytes(self, record_id: str, key: str, data: bytes) -> Dict[str, str]:
        if len(data) <= self.inline_threshold:
            return {INLINE_KEY: base64.b64encode(data).decode("ascii")}
        handle = f"{record_id}.{key}"
        self.assets.put(handle, data)
        logger.debug(f"asset_written: handle={handle} size={len(data)}")
        return {ASSET_KEY: handle}


def is_inline(value: Any) -> bool:
    return isinstance(value, dict) and len(value) == 1 and INLINE_KEY in value


def is_asset(value: Any) -> bool:
    return isinstance(value, dict) and len(value) == 1 and ASSET_KEY in value


def asset_handles(stored: Dict[str, Any]) -> List[str]:
    return [v[ASSET_KEY] for v in stored.values() if is_asset(v)]


def asset_handle(stored: Dict[str, Any], key: str) -> Optional[str]:
    value = stored.get(key)
    return value[ASSET_KEY] if is_asset(value) else None
