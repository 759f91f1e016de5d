from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from relay_core.relay.models import ApiFormat, ServiceKind
from relay_core.services import LocalService, ServiceRegistry
from relay_core.store import InMemoryRecordStore


class FakeResponse:
    """Just enough of ``requests.Response`` for the relay code paths."""

    def __init__(self, status_code: int = 200, content: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class FakeSession:
    """Records every call and answers from a queue (or a fixed response)."""

    def __init__(self, responses: Optional[List[FakeResponse]] = None, default: Optional[FakeResponse] = None):
        self.responses = list(responses or [])
        self.default = default or FakeResponse(200, b"{}", {"Content-Type": "application/json"})
        self.calls: List[Dict] = []
        self._lock = threading.Lock()

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append({"method": method, "url": url, **kwargs})
            if self.responses:
                response = self.responses.pop(0)
            else:
                response = self.default
        if isinstance(response, Exception):
            raise response
        return response


class FixedClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def store():
    s = InMemoryRecordStore()
    yield s
    s.close()


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry([
        LocalService(
            id="ollama",
            name="Ollama",
            port=11434,
            kind=ServiceKind.LANGUAGE_MODEL,
            api_format=ApiFormat.OPENAI,
        ),
        LocalService(id="comfy", name="ComfyUI", port=8188, kind=ServiceKind.IMAGE_GENERATION,
                     api_format=ApiFormat.COMFYUI),
    ])


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
