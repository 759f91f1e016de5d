from __future__ import annotations

import threading
import time

import pytest

from relay_core.relay import (
    NotConnectedError,
    RelayResponse,
    RelayTimeoutError,
    RequestCancelledError,
    RequestSubmitter,
    SendFailedError,
)
from relay_core.relay.submitter import poll_attempts_for
from relay_core.store import InMemoryRecordStore, StoreError, where


def _answer_when_written(store: InMemoryRecordStore, status_code: int = 200, delay: float = 0.0) -> threading.Thread:
    """Background stand-in for a worker: answers the first request it sees."""

    def run():
        for _ in range(200):
            pending = store.query("AIRequest", [where("status", "==", "pending")])
            if pending:
                time.sleep(delay)
                request = pending[0]
                response = RelayResponse(request_id=request.record_id, status_code=status_code, body=b"pong")
                store.save(response.to_record())
                return
            time.sleep(0.01)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_send_without_target_raises_not_connected(store) -> None:
    submitter = RequestSubmitter(store)

    with pytest.raises(NotConnectedError):
        submitter.send_request("ollama", "Ollama", "/api/tags")
    assert store.count("AIRequest") == 0


def test_push_resolves_before_next_poll(store) -> None:
    submitter = RequestSubmitter(store, poll_interval=5.0, default_target_device_id="mac-1")
    _answer_when_written(store)

    started = time.monotonic()
    response = submitter.send_request("ollama", "Ollama", "/api/tags", method="get")

    assert response.status_code == 200
    assert response.body == b"pong"
    assert time.monotonic() - started < 4.0
    assert submitter.pending_count() == 0
    assert submitter.statistics.successful == 1
    submitter.close()


def test_polling_alone_resolves_without_push() -> None:
    store = InMemoryRecordStore(push_enabled=False)
    submitter = RequestSubmitter(store, poll_interval=0.05, max_poll_attempts=100, default_target_device_id="mac-1")
    _answer_when_written(store, delay=0.1)

    response = submitter.send_request("ollama", "Ollama", "/v1/models")

    assert response.status_code == 200
    store.close()


def test_request_record_targets_device_and_uppercases_method(store) -> None:
    submitter = RequestSubmitter(store, poll_interval=0.01, max_poll_attempts=1)

    with pytest.raises(RelayTimeoutError):
        submitter.send_request("ollama", "Ollama", "/api/tags", method="get", target_device_id="mac-9")

    record = store.query("AIRequest")[0]
    assert record.fields["target_device_id"] == "mac-9"
    assert record.fields["method"] == "GET"


def test_timeout_after_poll_budget() -> None:
    store = InMemoryRecordStore(push_enabled=False)
    submitter = RequestSubmitter(store, poll_interval=0.01, max_poll_attempts=3, default_target_device_id="mac-1")

    started = time.monotonic()
    with pytest.raises(RelayTimeoutError) as info:
        submitter.send_request("ollama", "Ollama", "/api/tags")
    elapsed = time.monotonic() - started

    assert info.value.attempts == 3
    # Three full waits of one interval each, then give up
    assert 0.03 <= elapsed < 0.03 + 1.0
    assert submitter.statistics.failed == 1
    assert submitter.pending_count() == 0
    store.close()


def test_timeout_argument_converts_to_poll_count() -> None:
    store = InMemoryRecordStore(push_enabled=False)
    submitter = RequestSubmitter(store, poll_interval=0.02, max_poll_attempts=1000, default_target_device_id="mac-1")

    with pytest.raises(RelayTimeoutError) as info:
        submitter.send_request("ollama", "Ollama", "/api/tags", timeout=0.08)

    assert info.value.attempts == 4
    store.close()


def test_poll_attempts_round_up() -> None:
    assert poll_attempts_for(0.3, 0.1) == 3
    assert poll_attempts_for(0.25, 0.1) == 3
    assert poll_attempts_for(0.05, 0.1) == 1
    assert poll_attempts_for(10, 5.0) == 2


def test_timeout_argument_covers_whole_budget() -> None:
    store = InMemoryRecordStore(push_enabled=False)
    submitter = RequestSubmitter(store, poll_interval=0.1, max_poll_attempts=1000, default_target_device_id="mac-1")

    started = time.monotonic()
    with pytest.raises(RelayTimeoutError) as info:
        submitter.send_request("ollama", "Ollama", "/api/tags", timeout=0.3)
    elapsed = time.monotonic() - started

    assert info.value.attempts == 3
    assert elapsed >= 0.3
    store.close()


def test_cancel_releases_waiter_and_marks_record(store) -> None:
    submitter = RequestSubmitter(store, poll_interval=0.05, max_poll_attempts=200, default_target_device_id="mac-1")
    errors = []

    def send():
        try:
            submitter.send_request("ollama", "Ollama", "/api/chat")
        except RequestCancelledError as e:
            errors.append(e)

    thread = threading.Thread(target=send)
    thread.start()
    for _ in range(100):
        if store.count("AIRequest"):
            break
        time.sleep(0.01)

    request_id = store.query("AIRequest")[0].record_id
    assert submitter.cancel_request(request_id) is True
    thread.join(timeout=2)

    assert len(errors) == 1
    assert store.fetch("AIRequest", request_id).fields["status"] == "cancelled"
    assert submitter.cancel_request(request_id) is False


def test_late_response_after_cancel_is_ignored(store) -> None:
    submitter = RequestSubmitter(store, default_target_device_id="mac-1")
    late = RelayResponse(request_id="req_unknown", status_code=200)

    store.save(late.to_record())
    time.sleep(0.05)

    assert submitter.pending_count() == 0


def test_write_failure_raises_send_failed() -> None:
    class BrokenStore(InMemoryRecordStore):
        def _write(self, record_type, record_id, stored):
            raise StoreError("disk full")

    store = BrokenStore()
    submitter = RequestSubmitter(store, default_target_device_id="mac-1")

    with pytest.raises(SendFailedError):
        submitter.send_request("ollama", "Ollama", "/api/tags")
    assert submitter.pending_count() == 0
    store.close()
