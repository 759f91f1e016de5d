"""
HTTP API for relayCore.

Usage:
    python -m relay_core.cli store-server --port 8765
"""

from .app import create_app

__all__ = ["create_app"]
