"""
relayCore
=========

Relays HTTP calls from a phone to services running on a desktop through a
shared record store, with tool-calling support for local chat models.

Packages:
    store         Record store backends (memory, file, http) and payload codec
    relay         Wire models, request submitter, processor, presence
    services      Local service registry and workflow listing
    tools         User tools, file tools, and MCP tool servers
    orchestrator  Tool-call round trip for chat completions
    config        JSON configuration
    api           FastAPI record-store server
    cli           Command-line entry point
"""

__version__ = "1.0.0"
