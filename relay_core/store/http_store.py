"""
HTTP_RECORD_STORE
=================

Client for the record-store HTTP server (``relay_core.api.app``).

Payload encoding happens on this side: the server only ever sees stored field
maps and opaque asset blobs. Any object with a ``requests``-style
``request(method, url, params=..., json=..., timeout=...)`` method can be used
as the session, which lets tests run against FastAPI's ``TestClient``.

Status mapping:
    404 → RecordNotFoundError
    409 → SchemaNotProvisionedError
    other >= 400, transport errors → StoreError
"""

import base64
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .base import RecordStore
from .errors import RecordNotFoundError, SchemaNotProvisionedError, StoreError
from .payload import AssetStore, DEFAULT_INLINE_THRESHOLD
from .query import Condition, Row

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds


def _check(response, record_type: str = "", record_id: str = "") -> None:
    if response.status_code < 400:
        return
    if response.status_code == 404:
        raise RecordNotFoundError(record_type, record_id)
    if response.status_code == 409:
        raise SchemaNotProvisionedError(record_type)
    raise StoreError(f"Record store returned HTTP {response.status_code}: {response.text[:200]}")


class _HttpClient:
    def __init__(self, base_url: str, session=None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def call(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise StoreError(f"Record store unreachable: {e}") from e


class HttpAssetStore(AssetStore):
    def __init__(self, client: _HttpClient):
        self._client = client

    def put(self, handle: str, data: bytes) -> None:
        payload = {"data": base64.b64encode(data).decode("ascii")}
        _check(self._client.call("PUT", f"/assets/{quote(handle)}", json=payload))

    def get(self, handle: str) -> bytes:
        response = self._client.call("GET", f"/assets/{quote(handle)}")
        if response.status_code == 404:
            raise KeyError(f"Asset not found: {handle}")
        _check(response)
        return response.content

    def delete(self, handle: str) -> None:
        _check(self._client.call("DELETE", f"/assets/{quote(handle)}"))


class HttpRecordStore(RecordStore):
    """Record store reached over HTTP."""

    def __init__(
        self,
        base_url: str,
        session=None,
        timeout: float = DEFAULT_TIMEOUT,
        inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
    ):
        self._client = _HttpClient(base_url, session=session, timeout=timeout)
        super().__init__(HttpAssetStore(self._client), inline_threshold=inline_threshold)

    def _record_path(self, record_type: str, record_id: str) -> str:
        return f"/records/{quote(record_type)}/{quote(record_id)}"

    def _write(self, record_type: str, record_id: str, stored: Dict[str, Any]) -> None:
        response = self._client.call("PUT", self._record_path(record_type, record_id), json={"fields": stored})
        _check(response, record_type, record_id)

    def _read(self, record_type: str, record_id: str) -> Dict[str, Any]:
        response = self._client.call("GET", self._record_path(record_type, record_id))
        _check(response, record_type, record_id)
        return response.json().get("fields", {})

    def _select(
        self,
        record_type: str,
        conditions: List[Condition],
        sort_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ) -> List[Row]:
        body = {
            "conditions": [c.to_dict() for c in conditions],
            "sort_by": sort_by,
            "descending": descending,
            "limit": limit,
        }
        response = self._client.call("POST", f"/records/{quote(record_type)}/query", json=body)
        _check(response, record_type)
        return [(item["record_id"], item.get("fields", {})) for item in response.json().get("records", [])]

    def _remove(self, record_type: str, record_id: str) -> None:
        response = self._client.call("DELETE", self._record_path(record_type, record_id))
        if response.status_code == 404:
            return
        _check(response, record_type, record_id)
