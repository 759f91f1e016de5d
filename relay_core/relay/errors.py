"""
Relay error taxonomy.

Submitter-side errors propagate to callers. Processor-side errors never
escape a request: they are converted into a 500 ``RelayResponse``.
"""


class RelayError(Exception):
    """Base class for relay failures."""


class NotConnectedError(RelayError):
    """No target device is known."""

    def __init__(self, message: str = "Not connected to a relay device"):
        super().__init__(message)


class RelayTimeoutError(RelayError):
    """The poll budget ran out before a response appeared."""

    def __init__(self, request_id: str, attempts: int, elapsed_s: float):
        super().__init__(f"No response for {request_id} after {attempts} polls ({elapsed_s:.1f}s)")
        self.request_id = request_id
        self.attempts = attempts
        self.elapsed_s = elapsed_s


class SendFailedError(RelayError):
    """The request could not be written to the record store."""


class InvalidResponseError(RelayError):
    """A response record was found but could not be decoded."""


class RequestCancelledError(RelayError):
    """The caller cancelled the wait before a response arrived."""

    def __init__(self, request_id: str):
        super().__init__(f"Request cancelled: {request_id}")
        self.request_id = request_id


class ServiceNotFoundError(RelayError):
    """The request names a service the worker does not know."""

    def __init__(self, service_id: str):
        super().__init__("Service not found")
        self.service_id = service_id


class ServiceUnreachableError(RelayError):
    """The HTTP call to the local service failed at the transport level."""


class ToolExecutionError(RelayError):
    """A single tool invocation failed."""
