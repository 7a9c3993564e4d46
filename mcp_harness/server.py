"""MCP server exposing the harness operations as tools over stdio or HTTP."""

from __future__ import annotations

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from mcp_harness.config import DEFAULT_PORT
from mcp_harness.errors import HarnessError
from mcp_harness.harness import Harness

log = logging.getLogger(__name__)


def _error(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, HarnessError):
        return {"error": str(exc), "errorType": exc.error_type}
    if isinstance(exc, ValueError):
        return {"error": str(exc), "errorType": "ValidationError"}
    log.error("Unexpected error in harness tool", exc_info=exc)
    return {"error": str(exc), "errorType": "InternalServerError"}


def create_server(
    harness: Harness | None = None,
    port: int = DEFAULT_PORT,
) -> FastMCP:
    """Create and configure the harness MCP server."""

    hx = harness or Harness()

    mcp = FastMCP(
        name="mcp-harness",
        instructions=(
            "Test harness for MCP servers under development. Deploy a server "
            "from its source directory with mcp_test_deploy_server, call its "
            "tools with mcp_test_call_tool, smoke-test it with "
            "mcp_test_run_tests, read its output with mcp_test_get_logs, and "
            "shut it down with mcp_test_stop_server."
        ),
        host="127.0.0.1",
        port=port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Tool: mcp_test_deploy_server
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_deploy_server(
        name: str,
        source_path: str,
        env_vars: dict[str, str] | None = None,
        persistent: bool = True,
        command: str | None = None,
    ) -> dict:
        """Deploy an MCP server to a test environment.

        Redeploying under an existing name stops the old process first.

        Args:
            name: Name for the deployed server.
            source_path: Absolute path to the server source code.
            env_vars: Environment variables to pass to the server.
            persistent: Keep the server registered after it exits so its
                logs stay inspectable.
            command: Shell command to start the server. Detected from
                package.json or a Python entry point when omitted.
        """
        try:
            return await hx.deploy(
                name=name,
                source_path=source_path,
                env_vars=env_vars,
                persistent=persistent,
                command=command,
            )
        except Exception as exc:
            return _error(exc)

    # ------------------------------------------------------------------
    # Tool: mcp_test_call_tool
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_call_tool(
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> dict:
        """Call a tool on a deployed MCP server.

        Args:
            server_name: Name of the deployed server to call.
            tool_name: Name of the tool to call.
            arguments: Arguments to pass to the tool.
        """
        try:
            return await hx.call_tool(server_name, tool_name, arguments)
        except Exception as exc:
            return _error(exc)

    # ------------------------------------------------------------------
    # Tool: mcp_test_get_logs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_get_logs(server_name: str, lines: int = 100) -> dict:
        """Get logs from a deployed MCP server.

        Args:
            server_name: Name of the deployed server.
            lines: Number of log lines to return.
        """
        try:
            return hx.get_logs(server_name, lines)
        except Exception as exc:
            return _error(exc)

    # ------------------------------------------------------------------
    # Tool: mcp_test_list_servers
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_list_servers(status: str = "running") -> dict:
        """List deployed MCP servers.

        Args:
            status: "running" for live servers only, "all" to include
                persistent servers that have exited.
        """
        try:
            servers = hx.list_servers(status)
        except Exception as exc:
            return _error(exc)
        return {"count": len(servers), "servers": servers}

    # ------------------------------------------------------------------
    # Tool: mcp_test_run_tests
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_run_tests(
        server_name: str,
        tests: list[dict[str, Any]] | None = None,
    ) -> dict:
        """Run tests against a deployed MCP server.

        Without explicit tests, every advertised tool is called once with
        empty arguments to confirm it is reachable.

        Args:
            server_name: Name of the deployed server to test.
            tests: Optional test cases, each {name, tool, input, expected},
                where expected is {type: equals|contains|regex, value}.
        """
        try:
            return await hx.run_tests(server_name, tests)
        except Exception as exc:
            return _error(exc)

    # ------------------------------------------------------------------
    # Tool: mcp_test_stop_server
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_stop_server(server_name: str) -> dict:
        """Stop a deployed MCP server.

        Sends SIGTERM to the server's process group, escalates to SIGKILL
        if it has not exited within the kill timeout.

        Args:
            server_name: Name of the deployed server.
        """
        try:
            return await hx.stop(server_name)
        except Exception as exc:
            return _error(exc)

    # ------------------------------------------------------------------
    # Tool: mcp_test_clear_connections
    # ------------------------------------------------------------------
    @mcp.tool()
    async def mcp_test_clear_connections() -> dict:
        """Clear all cached client connections to ensure clean state."""
        try:
            return await hx.clear_connections()
        except Exception as exc:
            return _error(exc)

    return mcp
