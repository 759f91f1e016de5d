"""
CLI MODULE
==========

Command-line interface for relayCore.

Usage:
    python -m relay_core.cli worker
    python -m relay_core.cli discover
    python -m relay_core.cli send <device_id> <service_id> <endpoint>
    python -m relay_core.cli store-server
"""

from .main import main, cli_bootstrap, cli_discover, cli_send, cli_services, cli_sweep, cli_tools

__all__ = [
    'main',
    'cli_bootstrap',
    'cli_discover',
    'cli_send',
    'cli_services',
    'cli_sweep',
    'cli_tools',
]
