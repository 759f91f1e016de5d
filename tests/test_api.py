from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from relay_core.api import create_app
from relay_core.relay import RelayRequest, RelayResponse
from relay_core.relay.processor import RequestProcessor
from relay_core.store import (
    HttpRecordStore,
    InMemoryRecordStore,
    Record,
    RecordNotFoundError,
    where,
)

from .conftest import FakeResponse, FakeSession


@pytest.fixture
def backing():
    store = InMemoryRecordStore()
    yield store
    store.close()


@pytest.fixture
def client(backing) -> TestClient:
    return TestClient(create_app(backing))


@pytest.fixture
def remote(client) -> HttpRecordStore:
    return HttpRecordStore("http://testserver", session=client, inline_threshold=32)


def test_health(client) -> None:
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["backend"] == "InMemoryRecordStore"


def test_record_routes(client) -> None:
    assert client.put("/records/AIRequest/req_1", json={"fields": {"status": "pending"}}).status_code == 200
    assert client.get("/records/AIRequest/req_1").json()["fields"] == {"status": "pending"}

    query = client.post("/records/AIRequest/query", json={"conditions": [
        {"field": "status", "op": "==", "value": "pending"},
    ]})
    assert query.json()["records"] == [{"record_id": "req_1", "fields": {"status": "pending"}}]

    assert client.delete("/records/AIRequest/req_1").status_code == 200
    assert client.get("/records/AIRequest/req_1").status_code == 404
    assert client.delete("/records/AIRequest/req_1").status_code == 404


def test_invalid_query_operator_is_400(client) -> None:
    response = client.post("/records/AIRequest/query", json={"conditions": [
        {"field": "status", "op": "LIKE", "value": "p%"},
    ]})

    assert response.status_code == 400


def test_asset_routes(client) -> None:
    data = base64.b64encode(b"\x00\x01binary").decode()

    assert client.put("/assets/resp_1.body", json={"data": data}).json()["size"] == 8
    assert client.get("/assets/resp_1.body").content == b"\x00\x01binary"
    assert client.put("/assets/bad", json={"data": "***"}).status_code == 400
    client.delete("/assets/resp_1.body")
    assert client.get("/assets/resp_1.body").status_code == 404


def test_http_store_round_trip_with_inline_and_asset_bodies(remote, backing) -> None:
    remote.save(Record("AIResponse", "small", {"body": b"tiny", "status_code": 200}))
    remote.save(Record("AIResponse", "large", {"body": b"L" * 100, "status_code": 200}))

    assert remote.fetch("AIResponse", "small").fields["body"] == b"tiny"
    assert remote.fetch("AIResponse", "large").fields["body"] == b"L" * 100
    assert backing.stored_fields("AIResponse", "large")["body"] == {"$asset": "large.body"}
    assert {r.record_id for r in remote.query("AIResponse", [where("status_code", "==", 200)])} == {"small", "large"}

    remote.delete("AIResponse", "large")
    assert len(backing.assets) == 0
    with pytest.raises(RecordNotFoundError):
        remote.fetch("AIResponse", "large")
    remote.delete("AIResponse", "large")


def test_http_store_schema_gap_is_transparent() -> None:
    backing = InMemoryRecordStore(lazy_schema=True)
    remote = HttpRecordStore("http://testserver", session=TestClient(create_app(backing)))

    assert remote.query("AIRequest") == []
    with pytest.raises(RecordNotFoundError):
        remote.fetch("AIRequest", "req_1")
    remote.save(Record("AIRequest", "req_1", {"status": "pending"}))
    assert remote.fetch("AIRequest", "req_1").fields == {"status": "pending"}
    backing.close()


def test_relay_through_http_store(remote, registry) -> None:
    session = FakeSession(default=FakeResponse(200, b"x" * 64, {"Content-Type": "text/plain"}))
    processor = RequestProcessor(remote, registry, "mac-1", session=session)
    request = RelayRequest(service_id="ollama", endpoint="/api/tags", method="GET", target_device_id="mac-1")
    remote.save(request.to_record())

    response = processor.process_request(request)
    stored = remote.query("AIResponse", [where("request_id", "==", request.id)])

    assert response.status_code == 200
    assert RelayResponse.from_record(stored[0]).body == b"x" * 64
    assert remote.fetch("AIRequest", request.id).fields["status"] == "completed"
