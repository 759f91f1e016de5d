from __future__ import annotations

import json
import socket
import sys
import threading
import time
from pathlib import Path
from typing import List

import pytest
import uvicorn
from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult, ImageContent, TextContent

from relay_core.relay import EventBus
from relay_core.relay.events import TOOL_SERVER_EXITED
from relay_core.tools import (
    ToolServerDefinition,
    ToolServerError,
    ToolServerManager,
    ToolServerSession,
    ToolServerTimeoutError,
    split_tool_name,
)
from relay_core.tools.mcp_session import stdio_transport
from relay_core.tools.tool_servers import NO_CONTENT, call_timeout_for, format_tool_result

FAKE_SERVER = r'''
import os
import time

from mcp.server.fastmcp import FastMCP

server = FastMCP("fake")


@server.tool()
def echo(text: str) -> str:
    """Echo text"""
    return text


@server.tool()
def fail() -> str:
    """Always errors"""
    raise ValueError("bad input")


@server.tool()
def die() -> str:
    """Exit without answering"""
    os._exit(3)


@server.tool()
def sleep() -> str:
    """Answer after a second"""
    time.sleep(1)
    return "slept"


if __name__ == "__main__":
    server.run()
'''


@pytest.fixture
def server_script(tmp_path: Path) -> Path:
    path = tmp_path / "fake_server.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
def session(server_script: Path):
    client = ToolServerSession("fake", stdio_transport(sys.executable, [str(server_script)], {}))
    client.start(timeout=15)
    yield client
    client.stop()


@pytest.fixture
def manager(server_script: Path):
    events = EventBus()
    mgr = ToolServerManager(events=events, call_timeout=5.0, handshake_timeout=15.0)
    mgr.add_definition(ToolServerDefinition(name="fake", command=sys.executable, args=[str(server_script)]))
    yield mgr
    mgr.stop_all()


# ============================================================================
# HELPERS
# ============================================================================

def test_split_tool_name() -> None:
    assert split_tool_name("mcp__files__read_file") == ("files", "read_file")
    assert split_tool_name("mcp__files__nested__tool") == ("files", "nested__tool")
    assert split_tool_name("read_file") is None
    assert split_tool_name("mcp__files") is None


def test_slow_tools_get_longer_timeout() -> None:
    assert call_timeout_for("browser_open") == 10.0
    assert call_timeout_for("Navigate") == 10.0
    assert call_timeout_for("read_file") == 5.0


def test_format_tool_result() -> None:
    result = CallToolResult(content=[
        TextContent(type="text", text="a"),
        ImageContent(type="image", data="aGk=", mimeType="image/png"),
        TextContent(type="text", text="b"),
    ])
    assert format_tool_result(result) == "a\nb"
    assert format_tool_result(CallToolResult(content=[])) == NO_CONTENT
    assert format_tool_result(None) == NO_CONTENT
    with pytest.raises(ToolServerError):
        format_tool_result(CallToolResult(content=[TextContent(type="text", text="nope")], isError=True))


def test_definition_properties() -> None:
    definition = ToolServerDefinition.from_dict({
        "name": "Docs Server",
        "type": "streamableHttp",
        "url": "http://localhost:9000/mcp",
        "environment": {"EMPTY": "", "TOKEN": "secret"},
        "category": "File System",
    })

    assert definition.is_http
    assert definition.is_filesystem
    assert definition.bearer_token == "secret"
    assert definition.file_stem == "docs-server"
    assert ToolServerDefinition.from_dict(definition.to_dict()) == definition


# ============================================================================
# SESSION
# ============================================================================

def test_session_lists_tools_and_times_out(session: ToolServerSession) -> None:
    assert session.is_running()
    names = [tool.name for tool in session.list_tools(timeout=5)]
    assert names == ["echo", "fail", "die", "sleep"]

    with pytest.raises(ToolServerTimeoutError):
        session.call_tool("sleep", {}, timeout=0.1)

    # The late answer to the timed-out call is dropped; the session stays usable
    result = session.call_tool("echo", {"text": "still here"}, timeout=5)
    assert format_tool_result(result) == "still here"


def test_session_concurrent_calls(session: ToolServerSession) -> None:
    results: List[str] = []
    lock = threading.Lock()

    def call(i: int) -> None:
        result = session.call_tool("echo", {"text": f"m{i}"}, timeout=5)
        with lock:
            results.append(format_tool_result(result))

    threads = [threading.Thread(target=call, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(results) == sorted(f"m{i}" for i in range(8))


def test_missing_command_fails_to_start() -> None:
    client = ToolServerSession("ghost", stdio_transport("/nonexistent/tool-server", [], {}))
    with pytest.raises(ToolServerError):
        client.start(timeout=5)
    assert not client.is_running()


# ============================================================================
# MANAGER
# ============================================================================

def test_manager_discovers_and_calls_tools(manager: ToolServerManager) -> None:
    assert manager.start_all() == {"fake": True}

    names = [s["function"]["name"] for s in manager.get_schemas()]
    assert names == ["mcp__fake__echo", "mcp__fake__fail", "mcp__fake__die", "mcp__fake__sleep"]
    echo_schema = manager.get_schemas()[0]["function"]["parameters"]
    assert echo_schema["properties"]["text"]["type"] == "string"

    result = manager.execute("mcp__fake__echo", {"text": "hello"})
    assert result.success
    assert result.output == "hello"

    failed = manager.execute("mcp__fake__fail", {})
    assert not failed.success
    assert "bad input" in failed.error


def test_manager_handles_server_exit_and_restarts(manager: ToolServerManager) -> None:
    exited = threading.Event()
    payloads = []

    def on_exit(payload):
        payloads.append(payload)
        exited.set()

    manager.events.subscribe(TOOL_SERVER_EXITED, on_exit)
    manager.start_server("fake")

    result = manager.execute("mcp__fake__die", {})

    assert not result.success
    assert exited.wait(5)
    assert payloads[0]["server"] == "fake"
    assert not manager.has_tool("mcp__fake__echo")
    assert manager.running_servers() == []

    # Next call restarts the server once
    again = manager.execute("mcp__fake__echo", {"text": "back"})
    assert again.success
    assert again.output == "back"
    assert manager.has_tool("mcp__fake__echo")


def test_manager_stop_does_not_emit_exit(manager: ToolServerManager) -> None:
    payloads = []
    manager.events.subscribe(TOOL_SERVER_EXITED, payloads.append)
    manager.start_server("fake")

    manager.stop_all()

    assert manager.running_servers() == []
    assert payloads == []


def test_manager_unknown_server() -> None:
    result = ToolServerManager().execute("mcp__ghost__anything", {})

    assert not result.success
    assert "Unknown tool server" in result.error


def test_filesystem_server_falls_back_to_builtin_tools(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("from disk")
    manager = ToolServerManager(filesystem_paths=[str(tmp_path)])
    manager.add_definition(ToolServerDefinition(
        name="files",
        command="/nonexistent/filesystem-server",
        category="File System",
    ))

    assert manager.start_all() == {"files": False}
    result = manager.execute("mcp__files__read_file", {"path": str(tmp_path / "notes.txt")})

    assert result.success
    assert result.output == "from disk"


def test_non_filesystem_server_does_not_fall_back(tmp_path: Path) -> None:
    manager = ToolServerManager(filesystem_paths=[str(tmp_path)])
    manager.add_definition(ToolServerDefinition(name="other", command="/nonexistent/server"))

    result = manager.execute("mcp__other__read_file", {"path": str(tmp_path / "x")})

    assert not result.success
    assert "not running" in result.error


def test_load_definitions(tmp_path: Path) -> None:
    (tmp_path / "a.json").write_text(json.dumps({"name": "a", "command": "a-server"}))
    (tmp_path / "broken.json").write_text("{")

    loaded = ToolServerManager().load_definitions(str(tmp_path))

    assert [d.name for d in loaded] == ["a"]


# ============================================================================
# STREAMABLE HTTP
# ============================================================================

def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def http_server():
    """A FastMCP streamable-HTTP server on a background uvicorn thread."""
    port = _free_port()
    mcp_server = FastMCP("web", host="127.0.0.1", port=port)

    @mcp_server.tool()
    def search(query: str) -> str:
        """Search the web"""
        return f"results for {query}"

    app = mcp_server.streamable_http_app()
    seen_auth: List[bytes] = []

    async def recording_app(scope, receive, send):
        if scope["type"] == "http":
            seen_auth.append(dict(scope["headers"]).get(b"authorization", b""))
        await app(scope, receive, send)

    server = uvicorn.Server(uvicorn.Config(recording_app, host="127.0.0.1", port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started and time.monotonic() < deadline:
        time.sleep(0.05)

    yield f"http://127.0.0.1:{port}/mcp", seen_auth

    server.should_exit = True
    thread.join(timeout=10)


def test_http_server_through_manager(http_server) -> None:
    url, seen_auth = http_server
    manager = ToolServerManager()
    manager.add_definition(ToolServerDefinition(name="web", type="streamableHttp", url=url, api_key="tok"))

    try:
        assert manager.start_server("web")
        assert manager.has_tool("mcp__web__search")

        result = manager.execute("mcp__web__search", {"query": "relay"})
    finally:
        manager.stop_all()

    assert result.success
    assert result.output == "results for relay"
    assert b"Bearer tok" in seen_auth


def test_unreachable_http_server_fails_to_start() -> None:
    manager = ToolServerManager(handshake_timeout=2.0)
    manager.add_definition(ToolServerDefinition(
        name="web", type="streamableHttp", url=f"http://127.0.0.1:{_free_port()}/mcp",
    ))

    assert not manager.start_server("web")
    assert manager.running_servers() == []
