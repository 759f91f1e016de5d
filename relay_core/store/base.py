"""
RECORD_STORE
============

Abstraction over the shared, durable record store the relay runs through.

Neither device can reach the other directly; both read and write records here.
Any backend that can save, fetch, query, and delete keyed field maps qualifies.
Push notifications are optional and best effort.

Architecture
------------
::

    RecordStore (abstract)
    ├── save(record)                 upsert by id (one retry on schema gap)
    ├── fetch(type, id)              Record or RecordNotFoundError
    ├── query(type, conditions, ...) [Record] (schema gap → [])
    ├── delete(type, id)             no-op when missing, releases assets
    ├── update(type, id, **fields)   read-modify-write helper
    └── subscribe(type, conditions, callback) → Subscription

    Backend hooks: _write, _read, _select, _remove

Binary fields pass through ``PayloadCodec`` on the way in and out, which
decides between inline storage and the asset path (see ``payload.py``).

Schema provisioning
-------------------
Some stores create a record type lazily on the first write and report the
type as unknown until then. Backends signal this with
``SchemaNotProvisionedError``; this class maps it to an empty query result,
a ``RecordNotFoundError`` on fetch, and exactly one retry on save, so no
caller ever special-cases it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import RecordNotFoundError, SchemaNotProvisionedError, StoreError, StoreWriteError
from .payload import AssetStore, DEFAULT_INLINE_THRESHOLD, PayloadCodec
from .query import Condition, Row

logger = logging.getLogger(__name__)

NotificationCallback = Callable[[str, str], None]


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Record:
    """A typed, keyed field map as exchanged through the store."""
    record_type: str
    record_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    modified_at: Optional[datetime] = None


class Subscription:
    """Handle returned by ``RecordStore.subscribe``."""

    def __init__(self, cancel: Optional[Callable[[], None]] = None, active: bool = True):
        self._cancel = cancel
        self._active = active and cancel is not None

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active and self._cancel:
            self._cancel()
        self._active = False


# ============================================================================
# RECORD STORE
# ============================================================================

class RecordStore(ABC):
    """Base class for record store backends."""

    supports_push = False

    def __init__(self, assets: AssetStore, inline_threshold: int = DEFAULT_INLINE_THRESHOLD):
        self.codec = PayloadCodec(assets, inline_threshold=inline_threshold)

    # -- public API --

    def save(self, record: Record) -> None:
        stored = self.codec.encode(record.record_id, record.fields)
        try:
            self._write(record.record_type, record.record_id, stored)
        except SchemaNotProvisionedError:
            logger.info(f"schema_gap_retry: type={record.record_type} id={record.record_id}")
            try:
                self._write(record.record_type, record.record_id, stored)
            except (StoreError, OSError) as e:
                raise StoreWriteError(f"Save failed after retry: {e}") from e
        except StoreWriteError:
            raise
        except (StoreError, OSError) as e:
            raise StoreWriteError(f"Save failed: {e}") from e

    def fetch(self, record_type: str, record_id: str) -> Record:
        try:
            stored = self._read(record_type, record_id)
        except SchemaNotProvisionedError:
            raise RecordNotFoundError(record_type, record_id)
        return Record(record_type, record_id, self.codec.decode(stored))

    def query(
        self,
        record_type: str,
        conditions: Iterable[Condition] = (),
        sort_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        try:
            rows = self._select(record_type, list(conditions), sort_by, descending, limit)
        except SchemaNotProvisionedError:
            logger.debug(f"query_schema_gap: type={record_type}")
            return []

        records = []
        for record_id, stored in rows:
            try:
                records.append(Record(record_type, record_id, self.codec.decode(stored)))
            except (KeyError, OSError, ValueError) as e:
                logger.warning(f"record_decode_failed: type={record_type} id={record_id} error={e}")
        return records

    def delete(self, record_type: str, record_id: str) -> None:
        try:
            stored = self._read(record_type, record_id)
        except (RecordNotFoundError, SchemaNotProvisionedError):
            return
        self.codec.release(stored)
        self._remove(record_type, record_id)

    def update(self, record_type: str, record_id: str, **fields: Any) -> Record:
        """Fetch a record, overwrite the given fields, and save it back."""
        record = self.fetch(record_type, record_id)
        record.fields.update(fields)
        self.save(record)
        return record

    def subscribe(
        self,
        record_type: str,
        conditions: Iterable[Condition],
        callback: NotificationCallback,
    ) -> Subscription:
        """Register for create/update notifications. Best effort.

        Backends without push return an inactive subscription; callers must
        keep polling regardless.
        """
        logger.debug(f"subscribe_unsupported: backend={type(self).__name__} type={record_type}")
        return Subscription(active=False)

    # -- stored representation (diagnostics and the record-store server) --

    def stored_fields(self, record_type: str, record_id: str) -> Dict[str, Any]:
        """Return the raw stored representation of a record."""
        return self._read(record_type, record_id)

    def write_stored(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        """Write an already-encoded field map, bypassing the payload codec."""
        self._write(record_type, record_id, stored)

    def select_stored(
        self,
        record_type: str,
        conditions: Iterable[Condition] = (),
        sort_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        return self._select(record_type, list(conditions), sort_by, descending, limit)

    @property
    def assets(self) -> AssetStore:
        return self.codec.assets

    def close(self) -> None:
        pass

    # -- backend hooks --

    @abstractmethod
    def _write(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def _read(self, record_type: str, record_id: str) -> Dict[str, Any]:
        """Return stored fields or raise ``RecordNotFoundError``."""
        pass

    @abstractmethod
    def _select(
        self,
        record_type: str,
        conditions: List[Condition],
        sort_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Row]:
        pass

    @abstractmethod
    def _remove(self, record_type: str, record_id: str) -> None:
        pass
