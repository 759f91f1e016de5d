"""
FILE_RECORD_STORE
=================

Directory-backed record store: one JSON file per record.

Layout::

    <root>/
    ├── AIRequest/<id>.json
    ├── AIResponse/<id>.json
    ├── DeviceAnnouncement/<device_id>.json
    └── _assets/<id>.<field>.bin

Each file holds ``{"record_type", "record_id", "modified_at", "fields"}``.
Writes go through a temp file and ``os.replace`` so readers never observe a
partial record. Pointing two processes (or two machines, through a synced
folder) at the same root is enough to relay between them. There is no push
channel; consumers rely on polling.
"""

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base import RecordStore
from .errors import RecordNotFoundError, StoreError
from .payload import DEFAULT_INLINE_THRESHOLD, DirectoryAssetStore
from .query import Condition, Row, format_timestamp, select_rows, utc_now

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
ASSETS_DIR = "_assets"


class FileRecordStore(RecordStore):
    """JSON-file record store rooted at a directory."""

    def __init__(self, root: str, inline_threshold: int = DEFAULT_INLINE_THRESHOLD):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        super().__init__(DirectoryAssetStore(str(self.root / ASSETS_DIR)), inline_threshold=inline_threshold)
        self._lock = threading.Lock()

    def _path(self, record_type: str, record_id: str) -> Path:
        for name in (record_type, record_id):
            if not _SAFE_NAME.match(name):
                raise StoreError(f"Unsafe record name: {name!r}")
        return self.root / record_type / f"{record_id}.json"

    def _write(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        path = self._path(record_type, record_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "record_type": record_type,
            "record_id": record_id,
            "modified_at": format_timestamp(utc_now()),
            "fields": stored,
        }
        tmp = path.with_name(f".{record_id}.{threading.get_ident()}.tmp")
        with self._lock:
            tmp.write_text(json.dumps(document), encoding="utf-8")
            os.replace(tmp, path)

    def _read(self, record_type: str, record_id: str) -> Dict[str, Any]:
        path = self._path(record_type, record_id)
        if not path.exists():
            raise RecordNotFoundError(record_type, record_id)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Unreadable record {path.name}: {e}") from e
        return document.get("fields", {})

    def _select(
        self,
        record_type: str,
        conditions: List[Condition],
        sort_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Row]:
        type_dir = self.root / record_type
        if not type_dir.is_dir():
            return []

        rows = []
        for path in type_dir.glob("*.json"):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue  # deleted between glob and read
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"record_unreadable: path={path} error={e}")
                continue
            rows.append((document.get("record_id", path.stem), document.get("fields", {})))
        return select_rows(rows, conditions, sort_by, descending, limit)

    def _remove(self, record_type: str, record_id: str) -> None:
        path = self._path(record_type, record_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
