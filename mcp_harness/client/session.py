"""Session: an MCP client speaking over a FramedTransport."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable
from typing import Any, TypeVar

import anyio
from mcp import ClientSession, types
from mcp.shared.message import SessionMessage

from mcp_harness import __version__
from mcp_harness.client.transport import FramedTransport
from mcp_harness.errors import ServerConnectionError, TransportError
from mcp_harness.process_manager.supervisor import ManagedProcess

log = logging.getLogger(__name__)

T = TypeVar("T")


class Session:
    """Live RPC relationship with one server under test.

    The SDK's ``ClientSession`` is fed through in-memory streams: frames
    parsed by the transport are validated into ``JSONRPCMessage`` objects on
    the way in, and outgoing messages are dumped back to plain dicts for the
    transport.  The SDK session lives entirely inside one runner task so
    that any task may close it.
    """

    def __init__(
        self,
        name: str,
        transport: FramedTransport,
        *,
        client_name: str = "mcp-harness",
    ) -> None:
        self.name = name
        self.transport = transport
        self._client_info = types.Implementation(
            name=f"{client_name}-{name}", version=__version__
        )
        self._client: ClientSession | None = None
        self._incoming_send, self._incoming_recv = anyio.create_memory_object_stream(
            math.inf
        )
        self._outgoing_send, self._outgoing_recv = anyio.create_memory_object_stream(
            math.inf
        )
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._runner: asyncio.Task[None] | None = None

    @property
    def process(self) -> ManagedProcess:
        return self.transport.process

    @property
    def connected(self) -> bool:
        return (
            self._client is not None
            and not self._closing.is_set()
            and self.transport.connected
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start the transport and run the MCP initialize handshake."""
        if self._runner is not None:
            raise ServerConnectionError(self.name, "session already started")

        self.transport.onmessage = self._on_message
        self.transport.onerror = self._on_error
        self.transport.onclose = self._on_close

        log.debug("Creating new connection to server '%s'...", self.name)
        runner = asyncio.create_task(self._run(), name=f"{self.name}-session")
        self._runner = runner
        ready = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait({ready, runner}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self.close()
            raise
        finally:
            ready.cancel()

        if not self._ready.is_set():
            raise ServerConnectionError(self.name, _describe_failure(runner))
        log.debug("Successfully connected to server '%s'", self.name)

    async def close(self) -> None:
        """Shut the session down and close its transport. Idempotent."""
        self._closing.set()
        self._incoming_send.close()

        runner = self._runner
        if runner is None:
            await self.transport.close()
            return
        if runner is asyncio.current_task():
            return

        await asyncio.wait({runner})
        if not runner.cancelled() and runner.exception() is not None:
            log.debug(
                "Session for '%s' ended with error: %s",
                self.name,
                runner.exception(),
            )

    # ------------------------------------------------------------------
    # RPC operations
    # ------------------------------------------------------------------

    async def list_tools(self) -> types.ListToolsResult:
        client = self._require_client()
        return await self._request("tools/list", client.list_tools())

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        client = self._require_client()
        return await self._request(
            f"tools/call {name}", client.call_tool(name, arguments or {})
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> ClientSession:
        if self._client is None or self._closing.is_set():
            raise ServerConnectionError(self.name, "session is not connected")
        return self._client

    async def _request(self, operation: str, call: Awaitable[T]) -> T:
        """Await an SDK call, failing fast if the session closes meanwhile."""
        request = asyncio.ensure_future(call)
        closed = asyncio.ensure_future(self._closing.wait())
        try:
            done, _ = await asyncio.wait(
                {request, closed}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closed.cancel()
            if not request.done():
                request.cancel()
        if request in done:
            return request.result()
        raise ServerConnectionError(
            self.name, f"connection closed during {operation}"
        )

    async def _run(self) -> None:
        writer: asyncio.Task[None] | None = None
        try:
            await self.transport.start()
            writer = asyncio.create_task(
                self._pump_outgoing(), name=f"{self.name}-writer"
            )
            async with ClientSession(
                self._incoming_recv,
                self._outgoing_send,
                client_info=self._client_info,
            ) as client:
                await self._request("initialize", client.initialize())
                self._client = client
                self._ready.set()
                await self._closing.wait()
        finally:
            self._client = None
            self._closing.set()
            if writer is not None:
                writer.cancel()
            await self.transport.close()

    async def _pump_outgoing(self) -> None:
        async with self._outgoing_recv:
            async for session_message in self._outgoing_recv:
                payload = session_message.message.model_dump(
                    by_alias=True, mode="json", exclude_none=True
                )
                try:
                    await self.transport.send(payload)
                except TransportError:
                    # Already reported through onerror; nothing can reach the server
                    self._shutdown()
                    return

    def _on_message(self, message: Any) -> None:
        try:
            parsed = types.JSONRPCMessage.model_validate(message)
        except ValueError as exc:
            log.warning("Invalid JSON-RPC message from '%s': %s", self.name, exc)
            self._deliver(exc)
            return
        self._deliver(SessionMessage(parsed))

    def _on_error(self, exc: Exception) -> None:
        log.debug("Transport error for '%s': %s", self.name, exc)
        if not isinstance(exc, TransportError):
            self._deliver(exc)

    def _on_close(self) -> None:
        log.debug("Transport for '%s' closed", self.name)
        self._shutdown()

    def _shutdown(self) -> None:
        self._incoming_send.close()
        self._closing.set()

    def _deliver(self, item: SessionMessage | Exception) -> None:
        try:
            self._incoming_send.send_nowait(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            log.debug("Dropping message for closed session '%s'", self.name)


def _describe_failure(runner: asyncio.Task[None]) -> str:
    if runner.cancelled():
        return "connection attempt was cancelled"
    exc: BaseException | None = runner.exception()
    if exc is None:
        return "server closed the connection during initialization"
    # anyio task groups wrap failures in exception groups
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]  # type: ignore[attr-defined]
    return str(exc) or type(exc).__name__
