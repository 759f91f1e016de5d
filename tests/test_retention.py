from __future__ import annotations

from datetime import timedelta

from relay_core.relay import RelayRequest, RelayResponse, RequestStatus
from relay_core.relay.retention import RetentionSweeper


def test_sweep_removes_old_records_but_keeps_pending(store, clock) -> None:
    old = clock.now - timedelta(hours=25)
    fresh = clock.now - timedelta(hours=1)

    done = RelayRequest(service_id="s", endpoint="/", target_device_id="mac-1",
                        created_at=old, status=RequestStatus.COMPLETED)
    waiting = RelayRequest(service_id="s", endpoint="/", target_device_id="mac-1", created_at=old)
    recent = RelayRequest(service_id="s", endpoint="/", target_device_id="mac-1",
                          created_at=fresh, status=RequestStatus.FAILED)
    for request in (done, waiting, recent):
        store.save(request.to_record())
    store.save(RelayResponse(request_id=done.id, status_code=200, created_at=old).to_record())
    store.save(RelayResponse(request_id=recent.id, status_code=500, created_at=fresh).to_record())

    removed = RetentionSweeper(store, retention_seconds=24 * 3600, clock=clock).sweep()

    assert removed == {"requests": 1, "responses": 1}
    assert {r.record_id for r in store.query("AIRequest")} == {waiting.id, recent.id}
    assert [r.fields["request_id"] for r in store.query("AIResponse")] == [recent.id]


def test_sweep_releases_large_bodies(store, clock) -> None:
    store.codec.inline_threshold = 16
    old = clock.now - timedelta(days=2)
    store.save(RelayResponse(request_id="req_1", status_code=200, body=b"x" * 64, created_at=old).to_record())
    assert len(store.assets) == 1

    RetentionSweeper(store, clock=clock).sweep()

    assert len(store.assets) == 0


def test_sweep_on_empty_store(store, clock) -> None:
    assert RetentionSweeper(store, clock=clock).sweep() == {"requests": 0, "responses": 0}
