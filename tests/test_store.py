from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from relay_core.store import (
    FileRecordStore,
    InMemoryRecordStore,
    Record,
    RecordNotFoundError,
    SchemaNotProvisionedError,
    StoreWriteError,
    format_timestamp,
    parse_timestamp,
    where,
)
from relay_core.store.payload import ASSET_KEY, INLINE_KEY, MemoryAssetStore, PayloadCodec


# ============================================================================
# PAYLOAD ROUTING
# ============================================================================

def test_payload_at_threshold_is_inline() -> None:
    codec = PayloadCodec(MemoryAssetStore(), inline_threshold=900_000)
    stored = codec.encode("req_1", {"body": b"x" * 900_000})

    assert INLINE_KEY in stored["body"]
    assert len(codec.assets) == 0
    assert codec.decode(stored)["body"] == b"x" * 900_000


def test_payload_over_threshold_goes_to_asset() -> None:
    codec = PayloadCodec(MemoryAssetStore(), inline_threshold=900_000)
    stored = codec.encode("req_1", {"body": b"x" * 900_001, "status": "pending"})

    assert stored["body"] == {ASSET_KEY: "req_1.body"}
    assert stored["status"] == "pending"
    assert codec.decode(stored)["body"] == b"x" * 900_001


def test_delete_releases_assets(store: InMemoryRecordStore) -> None:
    store.codec.inline_threshold = 4
    store.save(Record("AIResponse", "resp_1", {"body": b"0123456789"}))
    assert len(store.assets) == 1

    store.delete("AIResponse", "resp_1")

    assert len(store.assets) == 0
    with pytest.raises(RecordNotFoundError):
        store.fetch("AIResponse", "resp_1")


def test_empty_and_missing_body_round_trip(store: InMemoryRecordStore) -> None:
    store.save(Record("AIResponse", "resp_1", {"body": b"", "error": None}))
    fields = store.fetch("AIResponse", "resp_1").fields

    assert fields["body"] == b""
    assert fields["error"] is None


# ============================================================================
# QUERY
# ============================================================================

def test_query_filters_sorts_and_limits(store: InMemoryRecordStore) -> None:
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for i in range(5):
        store.save(Record("AIRequest", f"req_{i}", {
            "status": "pending" if i % 2 == 0 else "completed",
            "created_at": format_timestamp(base + timedelta(seconds=10 - i)),
        }))

    records = store.query("AIRequest", [where("status", "==", "pending")], sort_by="created_at")
    assert [r.record_id for r in records] == ["req_4", "req_2", "req_0"]

    newest = store.query("AIRequest", sort_by="created_at", descending=True, limit=2)
    assert [r.record_id for r in newest] == ["req_0", "req_1"]


def test_datetime_condition_compares_against_wire_format(store: InMemoryRecordStore) -> None:
    cutoff = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    store.save(Record("AIRequest", "old", {"created_at": format_timestamp(cutoff - timedelta(seconds=1))}))
    store.save(Record("AIRequest", "new", {"created_at": format_timestamp(cutoff + timedelta(seconds=1))}))

    records = store.query("AIRequest", [where("created_at", "<", cutoff)])

    assert [r.record_id for r in records] == ["old"]


def test_timestamp_format_round_trip() -> None:
    value = datetime(2025, 3, 4, 5, 6, 7, 123456, tzinfo=timezone.utc)
    text = format_timestamp(value)

    assert text == "2025-03-04T05:06:07.123456Z"
    assert parse_timestamp(text) == value


def test_unknown_operator_rejected() -> None:
    with pytest.raises(ValueError):
        where("status", "~=", "pending")


# ============================================================================
# SCHEMA GAP
# ============================================================================

def test_lazy_schema_query_and_fetch_before_first_write() -> None:
    store = InMemoryRecordStore(lazy_schema=True)
    try:
        assert store.query("AIRequest") == []
        with pytest.raises(RecordNotFoundError):
            store.fetch("AIRequest", "missing")
    finally:
        store.close()


def test_lazy_schema_save_retries_once() -> None:
    store = InMemoryRecordStore(lazy_schema=True)
    try:
        store.save(Record("AIRequest", "req_1", {"status": "pending"}))
        assert store.fetch("AIRequest", "req_1").fields["status"] == "pending"
    finally:
        store.close()


def test_second_schema_failure_raises_write_error() -> None:
    class AlwaysMissing(InMemoryRecordStore):
        def _write(self, record_type, record_id, stored):
            raise SchemaNotProvisionedError(record_type)

    store = AlwaysMissing()
    try:
        with pytest.raises(StoreWriteError):
            store.save(Record("AIRequest", "req_1", {}))
    finally:
        store.close()


# ============================================================================
# PUSH
# ============================================================================

def test_subscription_notifies_matching_writes(store: InMemoryRecordStore) -> None:
    seen = []
    done = threading.Event()

    def callback(record_type, record_id):
        seen.append((record_type, record_id))
        done.set()

    sub = store.subscribe("AIRequest", [where("target_device_id", "==", "mac-1")], callback)
    store.save(Record("AIRequest", "other", {"target_device_id": "mac-2"}))
    store.save(Record("AIRequest", "mine", {"target_device_id": "mac-1"}))

    assert done.wait(2)
    assert seen == [("AIRequest", "mine")]
    assert sub.active
    sub.cancel()
    assert not sub.active


def test_update_overwrites_fields(store: InMemoryRecordStore) -> None:
    store.save(Record("AIRequest", "req_1", {"status": "pending", "endpoint": "/x"}))

    store.update("AIRequest", "req_1", status="processing")

    fields = store.fetch("AIRequest", "req_1").fields
    assert fields == {"status": "processing", "endpoint": "/x"}


# ============================================================================
# FILE STORE
# ============================================================================

def test_file_store_persists_across_instances(tmp_path) -> None:
    first = FileRecordStore(str(tmp_path), inline_threshold=8)
    first.save(Record("AIResponse", "resp_1", {"status_code": 200, "body": b"a much longer body"}))

    second = FileRecordStore(str(tmp_path), inline_threshold=8)
    record = second.fetch("AIResponse", "resp_1")

    assert record.fields["body"] == b"a much longer body"
    assert (tmp_path / "_assets" / "resp_1.body.bin").exists()
    document = json.loads((tmp_path / "AIResponse" / "resp_1.json").read_text())
    assert document["fields"]["body"] == {ASSET_KEY: "resp_1.body"}


def test_file_store_query_on_empty_type(tmp_path) -> None:
    assert FileRecordStore(str(tmp_path)).query("DeviceAnnouncement") == []


def test_file_store_delete_missing_is_noop(tmp_path) -> None:
    FileRecordStore(str(tmp_path)).delete("AIRequest", "nope")


def test_file_store_rejects_path_traversal(tmp_path) -> None:
    store = FileRecordStore(str(tmp_path))
    with pytest.raises(StoreWriteError):
        store.save(Record("AIRequest", "../escape", {}))
