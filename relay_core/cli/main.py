"""
CLI_MAIN
========

Command-line entry point for relayCore.

Worker commands:
    worker           Run the desktop worker (processor, presence, sweeper)
    services         List configured local services and their health
    tools            List the tools exposed to chat services
    sweep            Run one retention sweep and exit
    bootstrap        Print the bootstrap payload for this device

Client commands:
    discover         List recently announced devices
    send             Relay one HTTP call to a worker and print the response

Server commands:
    store-server     Serve the local record store over HTTP

Usage:
    python -m relay_core.cli worker
    python -m relay_core.cli send mac-1a2b3c4d ollama /api/tags --method GET
    python -m relay_core.cli store-server --port 8765
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Dict, List, Optional

from ..config.loader import GlobalConfig, get_config_manager
from ..logging_config import setup_logging

logger = logging.getLogger(__name__)


# ============================================================================
# WORKER COMMANDS
# ============================================================================

def cli_worker(config: GlobalConfig) -> Dict:
    """Run the worker until interrupted."""
    from ..runtime import WorkerRuntime

    runtime = WorkerRuntime.from_config(config)
    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    runtime.start()
    print(f"Worker running as {config.device.device_id} (Ctrl+C to stop)")
    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        status = runtime.status()
        runtime.stop()
    return status


def cli_services(config: GlobalConfig, check: bool = False) -> List[Dict]:
    """List configured services, optionally probing each health endpoint."""
    from ..services import ServiceRegistry, check_health

    registry = ServiceRegistry.load(config.paths.services_file)
    results = []
    for service in registry.all_services():
        entry = {
            "id": service.id,
            "name": service.name,
            "url": service.url,
            "kind": service.kind.value,
            "running": service.is_running,
            "hidden": service.hidden,
        }
        if check:
            entry["healthy"] = check_health(service)
        results.append(entry)
    return results


def cli_tools(config: GlobalConfig, start_servers: bool = False) -> List[Dict]:
    """List tool schemas; tool servers contribute only when started."""
    from ..runtime import build_tool_backend

    backend = build_tool_backend(config)
    try:
        if start_servers and backend.servers is not None:
            backend.servers.start_all()
        return [
            {
                "name": schema["function"]["name"],
                "description": schema["function"].get("description", ""),
            }
            for schema in backend.available_tools()
        ]
    finally:
        backend.shutdown()


def cli_sweep(config: GlobalConfig) -> Dict:
    """Delete requests and responses older than the retention window."""
    from ..relay.retention import RetentionSweeper
    from ..runtime import build_store

    store = build_store(config)
    try:
        sweeper = RetentionSweeper(store, retention_seconds=config.retention.retention_seconds)
        return sweeper.sweep()
    finally:
        store.close()


def cli_bootstrap(config: GlobalConfig) -> Dict:
    """Return the bootstrap payload a client can scan or paste."""
    from ..relay.connection import build_bootstrap_payload
    from ..services import ServiceRegistry

    registry = ServiceRegistry.load(config.paths.services_file)
    payload = build_bootstrap_payload(config.device.device_id, registry.running_services())
    return json.loads(payload.to_json())


# ============================================================================
# CLIENT COMMANDS
# ============================================================================

def cli_discover(config: GlobalConfig, kind: str = "desktop") -> List[Dict]:
    """List devices whose announcements are within the staleness window."""
    from ..relay.models import DeviceKind
    from ..relay.presence import discover_devices
    from ..runtime import build_store

    store = build_store(config)
    try:
        devices = discover_devices(store, DeviceKind(kind), config.presence.staleness_window)
    finally:
        store.close()
    return [
        {
            "device_id": d.device_id,
            "device_name": d.device_name,
            "last_seen_at": d.last_seen_at.isoformat(),
            "age_seconds": round(d.age_seconds(), 1),
            "services": [s.id for s in d.services],
        }
        for d in devices
    ]


def _parse_headers(values: Optional[List[str]]) -> Dict[str, str]:
    headers = {}
    for value in values or []:
        if ":" not in value:
            raise ValueError(f"Header must look like 'Name: value', got {value!r}")
        name, _, content = value.partition(":")
        headers[name.strip()] = content.strip()
    return headers


def cli_send(
    config: GlobalConfig,
    device_id: str,
    service_id: str,
    endpoint: str,
    method: str = "POST",
    body: Optional[str] = None,
    headers: Optional[List[str]] = None,
    timeout: Optional[float] = None,
) -> Dict:
    """Relay one call through the record store and wait for the answer."""
    from ..relay import RelayError, RequestSubmitter
    from ..runtime import build_store

    try:
        header_map = _parse_headers(headers)
    except ValueError as e:
        return {"error": str(e)}
    if body is not None and "Content-Type" not in header_map:
        header_map["Content-Type"] = "application/json"

    store = build_store(config)
    submitter = RequestSubmitter(
        store,
        poll_interval=config.relay.poll_interval,
        max_poll_attempts=config.relay.max_poll_attempts,
        default_target_device_id=device_id,
    )
    try:
        response = submitter.send_request(
            service_id,
            service_id,
            endpoint,
            method=method,
            headers=header_map,
            body=body.encode("utf-8") if body is not None else None,
            timeout=timeout,
        )
    except RelayError as e:
        return {"error": str(e), "error_type": type(e).__name__}
    finally:
        submitter.close()
        store.close()

    return {
        "request_id": response.request_id,
        "status_code": response.status_code,
        "headers": response.headers,
        "body": response.text,
        "error": response.error,
        "processing_time_ms": response.processing_time_ms,
    }


# ============================================================================
# SERVER COMMANDS
# ============================================================================

def cli_store_server(config: GlobalConfig, host: Optional[str] = None, port: Optional[int] = None) -> None:
    from ..api.app import main as run_store_server
    from ..runtime import build_local_store

    run_store_server(
        host=host or config.store.server_host,
        port=port or config.store.server_port,
        store=build_local_store(config),
    )


# ============================================================================
# MAIN
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="relaycore",
        description="relayCore - relay HTTP calls from a phone to services on a desktop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES
========

Desktop:
  %(prog)s worker
  %(prog)s services --check
  %(prog)s tools --start-servers
  %(prog)s bootstrap

Client:
  %(prog)s discover
  %(prog)s send mac-1a2b3c4d ollama /api/tags --method GET
  %(prog)s send mac-1a2b3c4d ollama /v1/chat/completions --body '{"model": "llama3"}'

Shared store:
  %(prog)s store-server --port 8765
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 1.0.0"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>"
    )

    subparsers.add_parser("worker", help="Run the desktop worker until interrupted")

    services_parser = subparsers.add_parser("services", help="List configured local services")
    services_parser.add_argument("--check", action="store_true", help="Probe each health endpoint")

    tools_parser = subparsers.add_parser("tools", help="List tools available to chat services")
    tools_parser.add_argument("--start-servers", action="store_true",
                              help="Start tool servers to include their tools")

    subparsers.add_parser("sweep", help="Run one retention sweep")
    subparsers.add_parser("bootstrap", help="Print this device's bootstrap payload")

    discover_parser = subparsers.add_parser("discover", help="List announced devices")
    discover_parser.add_argument("--kind", default="desktop", choices=["desktop", "mobile"])

    send_parser = subparsers.add_parser("send", help="Relay one HTTP call to a worker")
    send_parser.add_argument("device_id", help="Target worker device id")
    send_parser.add_argument("service_id", help="Service id on the worker")
    send_parser.add_argument("endpoint", help="Path appended to the service URL")
    send_parser.add_argument("--method", "-X", default="POST")
    send_parser.add_argument("--body", "-d", help="Request body (UTF-8 text)")
    send_parser.add_argument("--header", "-H", action="append", help="'Name: value' (repeatable)")
    send_parser.add_argument("--timeout", type=float, help="Overall wait in seconds")

    server_parser = subparsers.add_parser("store-server", help="Serve the record store over HTTP")
    server_parser.add_argument("--host", help="Bind address (default from config)")
    server_parser.add_argument("--port", type=int, help="Port (default from config)")

    args = parser.parse_args(argv)

    # Configure centralized logging before any command runs
    manager = get_config_manager()
    config = manager.global_config
    setup_logging(
        level=config.logging_level,
        log_file=config.logging_file,
        logs_dir=config.paths.logs_dir,
        device_id=config.device.device_id,
    )

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "worker":
        result = cli_worker(config)
    elif args.command == "services":
        result = cli_services(config, check=args.check)
    elif args.command == "tools":
        result = cli_tools(config, start_servers=args.start_servers)
    elif args.command == "sweep":
        result = cli_sweep(config)
    elif args.command == "bootstrap":
        result = cli_bootstrap(config)
    elif args.command == "discover":
        result = cli_discover(config, kind=args.kind)
    elif args.command == "send":
        result = cli_send(
            config,
            args.device_id,
            args.service_id,
            args.endpoint,
            method=args.method,
            body=args.body,
            headers=args.header,
            timeout=args.timeout,
        )
    elif args.command == "store-server":
        cli_store_server(config, host=args.host, port=args.port)
        return 0
    else:
        parser.print_help()
        return 1

    print(json.dumps(result, indent=2))
    if isinstance(result, dict) and "error" in result and result["error"] and "status_code" not in result:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
