from __future__ import annotations

import threading
import time

import requests

from relay_core.relay import EventBus, RelayRequest, RelayResponse, RequestSubmitter
from relay_core.relay.events import REQUEST_COMPLETED, REQUEST_FAILED
from relay_core.relay.processor import RequestProcessor
from relay_core.store import InMemoryRecordStore, where

from .conftest import FakeResponse, FakeSession


def _processor(store, registry, session=None, **kwargs) -> RequestProcessor:
    return RequestProcessor(store, registry, "mac-1", session=session or FakeSession(), **kwargs)


def _request(**overrides) -> RelayRequest:
    fields = dict(
        service_id="ollama",
        service_name="Ollama",
        endpoint="/api/tags",
        method="GET",
        target_device_id="mac-1",
    )
    fields.update(overrides)
    return RelayRequest(**fields)


def test_successful_request_is_persisted_and_completed(store, registry) -> None:
    session = FakeSession([FakeResponse(200, b'{"models": []}', {"Content-Type": "application/json"})])
    events = EventBus()
    completed = []
    events.subscribe(REQUEST_COMPLETED, completed.append)
    processor = _processor(store, registry, session, events=events)
    request = _request(headers={"Accept": "application/json"})
    store.save(request.to_record())

    response = processor.process_request(request)

    assert response.status_code == 200
    assert response.body == b'{"models": []}'
    assert session.calls[0]["method"] == "GET"
    assert session.calls[0]["url"] == "http://localhost:11434/api/tags"
    assert session.calls[0]["headers"] == {"Accept": "application/json"}
    assert session.calls[0]["timeout"] == 300

    stored = store.query("AIResponse", [where("request_id", "==", request.id)])
    assert len(stored) == 1
    assert RelayResponse.from_record(stored[0]).headers == {"Content-Type": "application/json"}
    assert store.fetch("AIRequest", request.id).fields["status"] == "completed"
    assert completed[0]["request_id"] == request.id
    assert processor.statistics.successful == 1
    assert processor.active_request_ids == set()


def test_request_for_other_device_is_ignored(store, registry) -> None:
    session = FakeSession()
    processor = _processor(store, registry, session)

    assert processor.process_request(_request(target_device_id="mac-2")) is None
    assert session.calls == []


def test_request_already_in_flight_is_rejected(store, registry) -> None:
    session = FakeSession()
    processor = _processor(store, registry, session)
    request = _request()
    processor.active_request_ids.add(request.id)

    assert processor.process_request(request) is None
    assert session.calls == []


def test_unknown_service_yields_500(store, registry) -> None:
    events = EventBus()
    failed = []
    events.subscribe(REQUEST_FAILED, failed.append)
    session = FakeSession()
    processor = _processor(store, registry, session, events=events)
    request = _request(service_id="missing")
    store.save(request.to_record())

    response = processor.process_request(request)

    assert response.status_code == 500
    assert response.error == "Service not found"
    assert session.calls == []
    assert store.fetch("AIRequest", request.id).fields["status"] == "failed"
    assert failed[0]["error"] == "Service not found"
    assert processor.statistics.failed == 1


def test_hidden_service_is_not_found(store, registry) -> None:
    registry.set_hidden("ollama", True)
    processor = _processor(store, registry)

    response = processor.process_request(_request())

    assert response.status_code == 500


def test_transport_error_yields_500(store, registry) -> None:
    session = FakeSession([requests.exceptions.ConnectionError("refused")])
    processor = _processor(store, registry, session)
    request = _request()
    store.save(request.to_record())

    response = processor.process_request(request)

    assert response.status_code == 500
    assert "refused" in response.error
    assert store.fetch("AIRequest", request.id).fields["status"] == "failed"


def test_upstream_error_status_is_relayed_verbatim(store, registry) -> None:
    session = FakeSession([FakeResponse(404, b"no such model")])
    processor = _processor(store, registry, session)

    response = processor.process_request(_request())

    assert response.status_code == 404
    assert response.body == b"no such model"
    assert response.error is None


def test_concurrent_duplicate_processing_persists_one_response(store, registry) -> None:
    release = threading.Event()
    entered = threading.Event()

    class BlockingSession(FakeSession):
        def request(self, method, url, **kwargs):
            entered.set()
            release.wait(5)
            return super().request(method, url, **kwargs)

    session = BlockingSession()
    processor = _processor(store, registry, session)
    request = _request()
    store.save(request.to_record())
    results = []
    first = threading.Thread(target=lambda: results.append(processor.process_request(request)))
    first.start()
    assert entered.wait(5)

    results.append(processor.process_request(request))
    release.set()
    first.join(5)

    assert results[0] is None
    assert results[1].status_code == 200
    assert len(session.calls) == 1
    assert len(store.query("AIResponse", [where("request_id", "==", request.id)])) == 1
    assert processor.active_request_ids == set()


def test_cleanup_removes_requests_for_unknown_services(store, registry) -> None:
    known = _request()
    stale = _request(service_id="retired")
    other_device = _request(service_id="retired", target_device_id="mac-2")
    for request in (known, stale, other_device):
        store.save(request.to_record())

    removed = _processor(store, registry).cleanup_stale_pending()

    assert removed == 1
    ids = {r.record_id for r in store.query("AIRequest")}
    assert ids == {known.id, other_device.id}


def test_poll_processes_each_request_once(registry) -> None:
    store = InMemoryRecordStore(push_enabled=False)
    session = FakeSession()
    processor = _processor(store, registry, session)
    store.save(_request().to_record())

    processor.poll_once()
    processor._pool.shutdown(wait=True)

    assert len(session.calls) == 1
    store.close()


def test_pending_requests_oldest_first(store, registry) -> None:
    processor = _processor(store, registry)
    first = _request()
    time.sleep(0.002)
    second = _request()
    store.save(second.to_record())
    store.save(first.to_record())

    assert [r.id for r in processor.pending_requests()] == [first.id, second.id]


def test_end_to_end_with_submitter(store, registry) -> None:
    session = FakeSession(default=FakeResponse(200, b"hello"))
    processor = _processor(store, registry, session, poll_interval=0.05)
    submitter = RequestSubmitter(store, poll_interval=0.05, max_poll_attempts=100, default_target_device_id="mac-1")
    processor.start()
    try:
        response = submitter.send_request("ollama", "Ollama", "/api/generate", body=b"{}")
    finally:
        processor.stop()
        submitter.close()

    assert response.status_code == 200
    assert response.body == b"hello"
    assert session.calls[0]["data"] == b"{}"


def test_restart_after_stop_still_processes(store, registry) -> None:
    session = FakeSession(default=FakeResponse(200, b"again"))
    processor = _processor(store, registry, session, poll_interval=0.05)
    submitter = RequestSubmitter(store, poll_interval=0.05, max_poll_attempts=100, default_target_device_id="mac-1")

    processor.start()
    processor.stop()
    processor.start()
    try:
        response = submitter.send_request("ollama", "Ollama", "/api/tags")
    finally:
        processor.stop()
        submitter.close()

    assert response.status_code == 200
    assert response.body == b"again"


def test_transfer_headers_are_not_persisted(store, registry) -> None:
    headers = {
        "Content-Type": "application/json",
        "Content-Length": "999",
        "Content-Encoding": "gzip",
        "Transfer-Encoding": "chunked",
        "Connection": "keep-alive",
        "X-Request-Id": "abc",
    }
    session = FakeSession([FakeResponse(200, b'{"ok": true}', headers)])
    processor = _processor(store, registry, session)
    request = _request()
    store.save(request.to_record())

    processor.process_request(request)

    stored = store.query("AIResponse", [where("request_id", "==", request.id)])[0]
    assert RelayResponse.from_record(stored).headers == {
        "Content-Type": "application/json",
        "X-Request-Id": "abc",
    }
