"""
Per-side relay counters.

The submitter and the processor each own one ``RelayStatistics``; nothing is
shared across devices.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ..store import format_timestamp, utc_now


@dataclass
class RelayStatistics:
    """Running totals with a weighted average processing time."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    average_processing_time_ms: float = 0.0
    last_request_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, success: bool, processing_time_ms: float) -> None:
        with self._lock:
            self.total += 1
            if success:
                self.successful += 1
            else:
                self.failed += 1
            self.average_processing_time_ms += (
                processing_time_ms - self.average_processing_time_ms
            ) / self.total
            self.last_request_at = utc_now()

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
                "average_processing_time_ms": round(self.average_processing_time_ms, 1),
                "success_rate": round(self.success_rate, 3),
                "last_request_at": format_timestamp(self.last_request_at) if self.last_request_at else None,
            }
