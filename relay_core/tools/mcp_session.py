"""
Tool server sessions on the MCP Python SDK.

``ToolServerSession`` wraps one ``mcp.ClientSession`` for the synchronous
relay code:

- each session owns a private asyncio loop on a daemon thread; the transport
  (``stdio_client`` or ``streamablehttp_client``) and the ``ClientSession``
  live entirely inside that loop
- blocking callers hand coroutines over with ``run_coroutine_threadsafe``, so
  several threads can have calls in flight on one session
- per-call deadlines go to the SDK as ``read_timeout_seconds``; an expired
  call raises ``ToolServerTimeoutError`` and the session stays usable
- a closed connection (the server process exited, or the HTTP stream broke)
  fails pending calls with ``ToolServerExitedError`` and fires ``on_exit``
  once
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, CallToolResult, Tool

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0
# The SDK reports an expired read_timeout_seconds with HTTP's 408
REQUEST_TIMEOUT_CODE = 408
# Extra wait on the caller side so the SDK's own deadline fires first
CALL_GRACE = 1.0

CONNECTION_LOST = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class ToolServerError(Exception):
    """A tool server call failed."""


class ToolServerTimeoutError(ToolServerError):
    """No response within the call's timeout."""


class ToolServerExitedError(ToolServerError):
    """The server is not running."""


Transport = Callable[[], Any]


def stdio_transport(command: str, args: List[str], env: Dict[str, str]) -> Transport:
    params = StdioServerParameters(command=command, args=list(args), env=env)
    return lambda: stdio_client(params)


def http_transport(url: str, bearer_token: Optional[str] = None) -> Transport:
    headers = {"Authorization": f"Bearer {bearer_token}"} if bearer_token else None

    @asynccontextmanager
    async def connect():
        async with streamablehttp_client(url, headers=headers) as (read, write, _session_id):
            yield read, write

    return connect


class ToolServerSession:
    """One connected tool server, driven from synchronous code."""

    def __init__(
        self,
        name: str,
        transport: Transport,
        on_exit: Optional[Callable[["ToolServerSession"], None]] = None,
    ):
        self.name = name
        self.on_exit = on_exit
        self._transport = transport
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._serving: Optional[Future] = None
        self._closing: Optional[asyncio.Event] = None
        self._session: Optional[ClientSession] = None
        self._ready = False
        self._lost = threading.Event()
        self._exit_lock = threading.Lock()
        self._exit_reported = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, timeout: float = HANDSHAKE_TIMEOUT) -> None:
        """Connect and run the ``initialize`` handshake.

        Raises ``ToolServerError`` if the server cannot be reached in time.
        """
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=f"toolserver-{self.name}", daemon=True)
        self._thread.start()

        ready: Future = Future()
        self._serving = asyncio.run_coroutine_threadsafe(self._serve(ready, timeout), self._loop)
        try:
            ready.result(timeout)
        except FuturesTimeoutError:
            self._abort()
            raise ToolServerTimeoutError(f"{self.name}: no handshake within {timeout}s")
        except ToolServerError:
            self._abort()
            raise
        except Exception as e:
            self._abort()
            raise ToolServerError(f"{self.name}: failed to start: {e}") from e
        logger.info(f"tool_server_connected: name={self.name}")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    async def _serve(self, ready: Future, handshake_timeout: float) -> None:
        self._closing = asyncio.Event()
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(self._transport())
                session = await stack.enter_async_context(
                    ClientSession(read, write, read_timeout_seconds=timedelta(seconds=handshake_timeout))
                )
                await session.initialize()
                self._session = session
                self._ready = True
                ready.set_result(True)
                await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning(f"tool_server_connection_error: name={self.name} error={e}")
        finally:
            self._session = None
            self._lost.set()
            if not ready.done():
                ready.set_exception(ToolServerExitedError(f"{self.name}: connection closed"))
            if self._ready:
                self._report_exit()
            asyncio.get_running_loop().stop()

    def _report_exit(self) -> None:
        with self._exit_lock:
            if self._exit_reported:
                return
            self._exit_reported = True
            callback = self.on_exit
        if callback is not None:
            try:
                callback(self)
            except Exception:
                logger.exception(f"tool_server_exit_callback_failed: name={self.name}")

    def _abort(self) -> None:
        if self._serving is not None:
            self._serving.cancel()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def is_running(self) -> bool:
        return self._session is not None and not self._lost.is_set()

    def stop(self, timeout: float = 5.0) -> None:
        """Close the session and the transport. ``on_exit`` does not fire."""
        with self._exit_lock:
            self.on_exit = None
        self._lost.set()
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._request_close)
        except RuntimeError:
            # Loop already stopped
            return
        if self._thread is not None:
            self._thread.join(timeout)

    def _request_close(self) -> None:
        if self._closing is not None:
            self._closing.set()

    def _connection_lost(self) -> None:
        self._lost.set()
        if self._loop is not None and not self._loop.is_closed():
            try:
                self._loop.call_soon_threadsafe(self._request_close)
            except RuntimeError:
                pass

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def list_tools(self, timeout: float) -> List[Tool]:
        result = self._call(lambda session: session.list_tools(), "tools/list", timeout)
        return list(result.tools)

    def call_tool(self, name: str, arguments: Dict[str, Any], timeout: float) -> CallToolResult:
        return self._call(
            lambda session: session.call_tool(
                name, arguments or {}, read_timeout_seconds=timedelta(seconds=timeout)
            ),
            name,
            timeout,
        )

    def _call(self, make_coro: Callable[[ClientSession], Any], label: str, timeout: float) -> Any:
        session = self._session
        if session is None or self._lost.is_set():
            raise ToolServerExitedError(f"{self.name}: not running")

        future = asyncio.run_coroutine_threadsafe(
            asyncio.wait_for(make_coro(session), timeout + CALL_GRACE), self._loop
        )
        try:
            return future.result(timeout + 2 * CALL_GRACE)
        except (FuturesTimeoutError, asyncio.TimeoutError):
            future.cancel()
            raise ToolServerTimeoutError(f"{self.name}: {label} timed out after {timeout}s")
        except McpError as e:
            code = e.error.code
            if code == CONNECTION_CLOSED:
                self._connection_lost()
                raise ToolServerExitedError(f"{self.name}: connection closed") from e
            if code == REQUEST_TIMEOUT_CODE:
                raise ToolServerTimeoutError(f"{self.name}: {label} timed out after {timeout}s") from e
            raise ToolServerError(f"{self.name}: {label} failed ({code}): {e.error.message}") from e
        except CONNECTION_LOST as e:
            self._connection_lost()
            raise ToolServerExitedError(f"{self.name}: connection closed") from e
