"""Error taxonomy shared by every harness component."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for errors the harness reports to its callers."""

    @property
    def error_type(self) -> str:
        return type(self).__name__


class NotFoundError(HarnessError):
    """No live process (or session) is registered under the given name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Server '{name}' not found")
        self.name = name


class DeploymentError(HarnessError):
    """A server process could not be started."""


class ServerConnectionError(HarnessError):
    """Connecting a session to a server failed."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(f"Failed to connect to server '{name}': {message}")
        self.name = name


class ToolCallError(HarnessError):
    """A named operation against a named server failed."""

    def __init__(self, name: str, operation: str, message: str) -> None:
        super().__init__(
            f"Error calling '{operation}' on server '{name}': {message}"
        )
        self.name = name
        self.operation = operation


class TransportError(HarnessError):
    """The framed stdio channel to a server is unusable."""
