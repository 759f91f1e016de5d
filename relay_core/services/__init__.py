"""
Local services the worker relays to.
"""

from .registry import LocalService, ServiceRegistry, check_health
from .workflows import WorkflowStore

__all__ = [
    "LocalService",
    "ServiceRegistry",
    "check_health",
    "WorkflowStore",
]
