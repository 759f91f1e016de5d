"""
Relay protocol: wire models, client submitter, worker processor, presence.

Only the dependency-free pieces are re-exported here; import
``relay_core.relay.processor``, ``.presence``, ``.connection`` and
``.retention`` directly.
"""

from .models import (
    ANNOUNCEMENT_RECORD_TYPE,
    BOOTSTRAP_VERSION,
    REQUEST_RECORD_TYPE,
    RESPONSE_RECORD_TYPE,
    ApiFormat,
    BootstrapPayload,
    DeviceAnnouncement,
    DeviceKind,
    RecordFormatError,
    RelayRequest,
    RelayResponse,
    RequestStatus,
    ServiceDescriptor,
    ServiceKind,
    WorkflowSummary,
)
from .errors import (
    InvalidResponseError,
    NotConnectedError,
    RelayError,
    RelayTimeoutError,
    RequestCancelledError,
    SendFailedError,
    ServiceNotFoundError,
    ServiceUnreachableError,
    ToolExecutionError,
)
from .events import EventBus
from .statistics import RelayStatistics
from .submitter import RequestSubmitter

__all__ = [
    "ANNOUNCEMENT_RECORD_TYPE",
    "BOOTSTRAP_VERSION",
    "REQUEST_RECORD_TYPE",
    "RESPONSE_RECORD_TYPE",
    "ApiFormat",
    "BootstrapPayload",
    "DeviceAnnouncement",
    "DeviceKind",
    "RecordFormatError",
    "RelayRequest",
    "RelayResponse",
    "RequestStatus",
    "ServiceDescriptor",
    "ServiceKind",
    "WorkflowSummary",
    "InvalidResponseError",
    "NotConnectedError",
    "RelayError",
    "RelayTimeoutError",
    "RequestCancelledError",
    "SendFailedError",
    "ServiceNotFoundError",
    "ServiceUnreachableError",
    "ToolExecutionError",
    "EventBus",
    "RelayStatistics",
    "RequestSubmitter",
]
