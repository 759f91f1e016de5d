"""
Pydantic models for the relay wire schema.

These models define the records exchanged between the mobile client and the
desktop worker through the shared record store, plus the out-of-band
bootstrap payload.

Each record model converts to and from a store ``Record`` at the edge:
header maps and service lists become embedded JSON strings, timestamps become
fixed-width UTC strings, and bodies stay ``bytes`` (the store decides between
inline and asset storage).
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..store import Record, format_timestamp, parse_timestamp, utc_now


# ============ RECORD TYPES ============

REQUEST_RECORD_TYPE = "AIRequest"
RESPONSE_RECORD_TYPE = "AIResponse"
ANNOUNCEMENT_RECORD_TYPE = "DeviceAnnouncement"

BOOTSTRAP_VERSION = 4


class RecordFormatError(ValueError):
    """A stored record could not be decoded into its model."""


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def generate_response_id() -> str:
    return f"resp_{uuid.uuid4().hex[:12]}"


# ============ ENUMS ============

class RequestStatus(str, Enum):
    """Lifecycle of a relayed request."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ServiceKind(str, Enum):
    """What a local service does."""
    LANGUAGE_MODEL = "Language Model"
    IMAGE_GENERATION = "Image Generation"
    VOICE_GENERATION = "Voice Generation"
    MUSIC_GENERATION = "Music Generation"
    CUSTOM = "Custom"


class ApiFormat(str, Enum):
    """Protocol a local service speaks."""
    OPENAI = "OpenAI"
    COMFYUI = "ComfyUI"
    GRADIO = "Gradio"
    CUSTOM = "Custom"


class DeviceKind(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


# ============ SERVICES ============

class WorkflowSummary(BaseModel):
    """A file-based workflow advertised alongside an image-generation service."""
    id: str
    name: str
    filename: str


class ServiceDescriptor(BaseModel):
    """A service as advertised to other devices."""
    id: str = Field(..., description="Stable service identifier")
    name: str = Field(..., description="Display name")
    kind: ServiceKind = Field(default=ServiceKind.CUSTOM)
    port: int = Field(..., description="Local port the service listens on")
    api_format: ApiFormat = Field(default=ApiFormat.CUSTOM)
    is_running: bool = True
    base_url: Optional[str] = Field(None, description="Explicit base URL, overrides localhost:port")
    workflows: Optional[List[WorkflowSummary]] = None


def _dump_services(services: List[ServiceDescriptor]) -> str:
    return json.dumps([s.model_dump(mode="json", exclude_none=True) for s in services])


def _load_services(raw: Any) -> List[ServiceDescriptor]:
    if not raw:
        return []
    items = json.loads(raw) if isinstance(raw, str) else raw
    return [ServiceDescriptor.model_validate(item) for item in items]


def _load_headers(raw: Any) -> Dict[str, str]:
    if not raw:
        return {}
    headers = json.loads(raw) if isinstance(raw, str) else raw
    return {str(k): str(v) for k, v in headers.items()}


# ============ REQUEST / RESPONSE ============

class RelayRequest(BaseModel):
    """An HTTP call the mobile client wants executed on a desktop worker."""
    id: str = Field(default_factory=generate_request_id)
    service_id: str
    service_name: str = ""
    endpoint: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[bytes] = None
    created_at: datetime = Field(default_factory=utc_now)
    target_device_id: str
    status: RequestStatus = RequestStatus.PENDING

    def to_record(self) -> Record:
        return Record(REQUEST_RECORD_TYPE, self.id, {
            "service_id": self.service_id,
            "service_name": self.service_name,
            "endpoint": self.endpoint,
            "method": self.method,
            "headers": json.dumps(self.headers),
            "body": self.body,
            "created_at": format_timestamp(self.created_at),
            "target_device_id": self.target_device_id,
            "status": self.status.value,
        })

    @classmethod
    def from_record(cls, record: Record) -> "RelayRequest":
        f = record.fields
        try:
            return cls(
                id=record.record_id,
                service_id=f["service_id"],
                service_name=f.get("service_name") or "",
                endpoint=f["endpoint"],
                method=f.get("method") or "POST",
                headers=_load_headers(f.get("headers")),
                body=f.get("body"),
                created_at=parse_timestamp(f["created_at"]),
                target_device_id=f["target_device_id"],
                status=RequestStatus(f.get("status", RequestStatus.PENDING.value)),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise RecordFormatError(f"Malformed request record {record.record_id}: {e}") from e


class RelayResponse(BaseModel):
    """The worker's answer to a ``RelayRequest``."""
    id: str = Field(default_factory=generate_response_id)
    request_id: str
    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[bytes] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    processing_time_ms: int = 0

    @property
    def is_success(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return (self.body or b"").decode("utf-8", errors="replace")

    def json_body(self) -> Any:
        return json.loads(self.body or b"null")

    def to_record(self) -> Record:
        return Record(RESPONSE_RECORD_TYPE, self.id, {
            "request_id": self.request_id,
            "status_code": self.status_code,
            "headers": json.dumps(self.headers),
            "body": self.body,
            "error": self.error,
            "created_at": format_timestamp(self.created_at),
            "processing_time_ms": self.processing_time_ms,
        })

    @classmethod
    def from_record(cls, record: Record) -> "RelayResponse":
        f = record.fields
        try:
            return cls(
                id=record.record_id,
                request_id=f["request_id"],
                status_code=int(f["status_code"]),
                headers=_load_headers(f.get("headers")),
                body=f.get("body"),
                error=f.get("error"),
                created_at=parse_timestamp(f["created_at"]),
                processing_time_ms=int(f.get("processing_time_ms") or 0),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise RecordFormatError(f"Malformed response record {record.record_id}: {e}") from e

    @classmethod
    def failure(cls, request_id: str, message: str, processing_time_ms: int = 0) -> "RelayResponse":
        """A 500 response carrying a human-readable error."""
        return cls(
            request_id=request_id,
            status_code=500,
            error=message,
            processing_time_ms=processing_time_ms,
        )


# ============ PRESENCE ============

class DeviceAnnouncement(BaseModel):
    """Periodically refreshed presence record, one per device."""
    device_id: str
    device_name: str
    device_kind: DeviceKind = DeviceKind.DESKTOP
    services: List[ServiceDescriptor] = Field(default_factory=list)
    last_seen_at: datetime = Field(default_factory=utc_now)
    is_active: bool = True

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utc_now()) - self.last_seen_at).total_seconds()

    def to_record(self) -> Record:
        return Record(ANNOUNCEMENT_RECORD_TYPE, self.device_id, {
            "device_name": self.device_name,
            "device_kind": self.device_kind.value,
            "services": _dump_services(self.services),
            "last_seen_at": format_timestamp(self.last_seen_at),
            "is_active": self.is_active,
        })

    @classmethod
    def from_record(cls, record: Record) -> "DeviceAnnouncement":
        f = record.fields
        try:
            return cls(
                device_id=record.record_id,
                device_name=f.get("device_name") or record.record_id,
                device_kind=DeviceKind(f.get("device_kind", DeviceKind.DESKTOP.value)),
                services=_load_services(f.get("services")),
                last_seen_at=parse_timestamp(f["last_seen_at"]),
                is_active=bool(f.get("is_active", True)),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise RecordFormatError(f"Malformed announcement {record.record_id}: {e}") from e


# ============ BOOTSTRAP ============

class BootstrapPayload(BaseModel):
    """Out-of-band handshake (QR code or pasted text) seeding a client."""
    device_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    version: int = BOOTSTRAP_VERSION
    services: Optional[List[ServiceDescriptor]] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def parse(cls, text: str) -> "BootstrapPayload":
        try:
            payload = cls.model_validate_json(text)
        except ValidationError as e:
            raise ValueError(f"Invalid bootstrap payload: {e}") from e
        if payload.version != BOOTSTRAP_VERSION:
            raise ValueError(
                f"Unsupported bootstrap version {payload.version} (expected {BOOTSTRAP_VERSION})"
            )
        return payload
