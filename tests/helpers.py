"""In-memory stand-ins for processes, supervisors and sessions."""

import asyncio
from types import SimpleNamespace

from mcp import types

from mcp_harness.errors import NotFoundError


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


class FakeStdin:
    def __init__(self) -> None:
        self.data = bytearray()
        self.closing = False
        self.fail: Exception | None = None

    def write(self, data: bytes) -> None:
        if self.fail is not None:
            raise self.fail
        self.data += data

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closing


class FakeProcess:
    """Mimics the ManagedProcess surface a FramedTransport relies on."""

    def __init__(self, name: str = "srv") -> None:
        self.name = name
        self.stdin = FakeStdin()
        self.alive = True
        self.kill_calls = 0
        self._output = []
        self._exit = []
        self._error = []

    @property
    def is_alive(self) -> bool:
        return self.alive

    def on_output(self, listener) -> None:
        self._output.append(listener)

    def remove_output_listener(self, listener) -> None:
        if listener in self._output:
            self._output.remove(listener)

    def on_exit(self, listener) -> None:
        self._exit.append(listener)

    def remove_exit_listener(self, listener) -> None:
        if listener in self._exit:
            self._exit.remove(listener)

    def on_error(self, listener) -> None:
        self._error.append(listener)

    def remove_error_listener(self, listener) -> None:
        if listener in self._error:
            self._error.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._output) + len(self._exit) + len(self._error)

    def kill(self) -> bool:
        self.kill_calls += 1
        self.alive = False
        return True

    def emit_output(self, chunk: bytes) -> None:
        for listener in list(self._output):
            listener(chunk)

    def emit_exit(self, code: int | None = 0) -> None:
        self.alive = False
        for listener in list(self._exit):
            listener(code)

    def emit_error(self, exc: Exception) -> None:
        for listener in list(self._error):
            listener(exc)


class FakeSupervisor:
    def __init__(self) -> None:
        self.processes: dict[str, FakeProcess] = {}

    def add(self, name: str) -> FakeProcess:
        self.processes[name] = FakeProcess(name)
        return self.processes[name]

    def get(self, name: str) -> FakeProcess:
        if name not in self.processes:
            raise NotFoundError(name)
        return self.processes[name]

    def find(self, name: str) -> FakeProcess | None:
        return self.processes.get(name)


class FakeSession:
    """Session double; behaviour is driven by the owning SessionFactory."""

    def __init__(self, name, transport, factory: "SessionFactory") -> None:
        self.name = name
        self.transport = transport
        self.factory = factory
        self.closed = False
        self.list_calls = 0
        self.calls: list[tuple[str, dict]] = []

    @property
    def process(self):
        return self.transport.process

    async def connect(self) -> None:
        if self.factory.connect_error is not None:
            raise self.factory.connect_error

    async def list_tools(self):
        self.list_calls += 1
        if self.factory.list_delay:
            await asyncio.sleep(self.factory.list_delay)
        if self.factory.list_error is not None:
            raise self.factory.list_error
        return SimpleNamespace(
            tools=[SimpleNamespace(name=t) for t in self.factory.tools]
        )

    async def call_tool(self, name: str, arguments: dict | None = None):
        self.calls.append((name, arguments or {}))
        response = self.factory.responses.get(name, text_result('{"status": "success"}'))
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


class SessionFactory:
    """Callable passed to SessionCache; records every session it builds."""

    def __init__(self, tools=("echo",)) -> None:
        self.tools = list(tools)
        self.responses: dict = {}
        self.sessions: list[FakeSession] = []
        self.connect_error: Exception | None = None
        self.list_error: Exception | None = None
        self.list_delay = 0.0

    def __call__(self, name, transport) -> FakeSession:
        session = FakeSession(name, transport, self)
        self.sessions.append(session)
        return session
