from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from relay_core.relay import (
    BOOTSTRAP_VERSION,
    BootstrapPayload,
    DeviceAnnouncement,
    EventBus,
    RecordFormatError,
    RelayRequest,
    RelayResponse,
    RelayStatistics,
    RequestStatus,
    ServiceDescriptor,
    ServiceKind,
)
from relay_core.store import Record


def test_request_record_embeds_headers_as_json_string() -> None:
    request = RelayRequest(
        service_id="ollama",
        service_name="Ollama",
        endpoint="/api/chat",
        headers={"Content-Type": "application/json"},
        body=b'{"x": 1}',
        target_device_id="mac-1a2b3c4d",
    )
    record = request.to_record()

    assert record.record_type == "AIRequest"
    assert record.record_id == request.id
    assert isinstance(record.fields["headers"], str)
    assert json.loads(record.fields["headers"]) == {"Content-Type": "application/json"}
    assert record.fields["status"] == "pending"

    restored = RelayRequest.from_record(record)
    assert restored.headers == request.headers
    assert restored.body == request.body
    assert restored.status is RequestStatus.PENDING


def test_request_created_at_keeps_microseconds() -> None:
    created = datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
    request = RelayRequest(service_id="s", endpoint="/", target_device_id="d", created_at=created)

    assert RelayRequest.from_record(request.to_record()).created_at == created


def test_malformed_request_record_raises_format_error() -> None:
    with pytest.raises(RecordFormatError):
        RelayRequest.from_record(Record("AIRequest", "req_1", {"endpoint": "/"}))


def test_response_success_and_failure() -> None:
    ok = RelayResponse(request_id="req_1", status_code=204)
    failed = RelayResponse.failure("req_1", "Service not found", processing_time_ms=3)

    assert ok.is_success
    assert not failed.is_success
    assert failed.status_code == 500
    assert failed.error == "Service not found"


def test_response_body_helpers() -> None:
    response = RelayResponse(request_id="req_1", status_code=200, body=b'{"ok": true}')

    assert response.text == '{"ok": true}'
    assert response.json_body() == {"ok": True}


def test_announcement_services_stored_as_json_string() -> None:
    announcement = DeviceAnnouncement(
        device_id="mac-1",
        device_name="Studio",
        services=[ServiceDescriptor(id="ollama", name="Ollama", port=11434, kind=ServiceKind.LANGUAGE_MODEL)],
    )
    record = announcement.to_record()

    assert record.record_id == "mac-1"
    assert isinstance(record.fields["services"], str)
    restored = DeviceAnnouncement.from_record(record)
    assert restored.services == announcement.services
    assert restored.services[0].kind is ServiceKind.LANGUAGE_MODEL


def test_announcement_age() -> None:
    seen = datetime(2025, 1, 1, tzinfo=timezone.utc)
    announcement = DeviceAnnouncement(device_id="mac-1", device_name="x", last_seen_at=seen)

    assert announcement.age_seconds(seen + timedelta(seconds=90)) == 90


def test_bootstrap_round_trip() -> None:
    payload = BootstrapPayload(
        device_id="mac-1",
        services=[ServiceDescriptor(id="comfy", name="ComfyUI", port=8188)],
    )

    parsed = BootstrapPayload.parse(payload.to_json())

    assert parsed.device_id == "mac-1"
    assert parsed.version == BOOTSTRAP_VERSION
    assert parsed.services[0].id == "comfy"


def test_bootstrap_without_services_omits_field() -> None:
    text = BootstrapPayload(device_id="mac-1").to_json()

    assert "services" not in json.loads(text)
    assert BootstrapPayload.parse(text).services is None


@pytest.mark.parametrize("text", [
    "not json",
    json.dumps({"timestamp": "2025-01-01T00:00:00Z", "version": BOOTSTRAP_VERSION}),
    json.dumps({"device_id": "mac-1", "version": BOOTSTRAP_VERSION - 1}),
])
def test_bootstrap_rejects_invalid_payloads(text: str) -> None:
    with pytest.raises(ValueError):
        BootstrapPayload.parse(text)


def test_statistics_running_average() -> None:
    stats = RelayStatistics()
    stats.record(True, 100)
    stats.record(False, 300)

    data = stats.to_dict()
    assert data["total"] == 2
    assert data["successful"] == 1
    assert data["failed"] == 1
    assert data["average_processing_time_ms"] == 200.0
    assert data["last_request_at"] is not None


def test_event_bus_isolates_failing_listener() -> None:
    bus = EventBus()
    received = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe("connected", broken)
    unsubscribe = bus.subscribe("connected", received.append)
    bus.emit("connected", device_id="mac-1")
    unsubscribe()
    bus.emit("connected", device_id="mac-2")

    assert received == [{"device_id": "mac-1"}]
