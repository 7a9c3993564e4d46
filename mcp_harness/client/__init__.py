"""Client side of the harness: transport, sessions, tool calls and smoke tests."""

from mcp_harness.client.cache import SessionCache
from mcp_harness.client.session import Session
from mcp_harness.client.smoke import SmokeTestRunner
from mcp_harness.client.tools import ToolInvoker
from mcp_harness.client.transport import FramedTransport

__all__ = [
    "FramedTransport",
    "Session",
    "SessionCache",
    "SmokeTestRunner",
    "ToolInvoker",
]
