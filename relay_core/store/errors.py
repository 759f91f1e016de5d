"""
Errors raised by record store backends.

Only ``RecordNotFoundError`` and ``StoreWriteError`` escape the public
``RecordStore`` API. ``SchemaNotProvisionedError`` is a backend signal that
the base class turns into an empty result (reads) or a single retry (writes).
"""


class StoreError(Exception):
    """Base class for record store failures."""


class RecordNotFoundError(StoreError):
    """No record exists for the requested type and id."""

    def __init__(self, record_type: str, record_id: str):
        super().__init__(f"{record_type} record not found: {record_id}")
        self.record_type = record_type
        self.record_id = record_id


class SchemaNotProvisionedError(StoreError):
    """The backing store does not know this record type yet."""

    def __init__(self, record_type: str):
        super().__init__(f"Record type not provisioned: {record_type}")
        self.record_type = record_type


class StoreWriteError(StoreError):
    """A write failed and was not recovered by the one allowed retry."""
