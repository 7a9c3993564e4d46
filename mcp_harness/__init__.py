"""mcp-harness: deploy, call, smoke-test and stop MCP servers under development.

Exposes seven MCP tools (see mcp_harness.server):
  - mcp_test_deploy_server:     start a server from its source directory
  - mcp_test_call_tool:         call one tool on a deployed server
  - mcp_test_list_servers:      list deployed servers
  - mcp_test_get_logs:          tail a server's output log
  - mcp_test_run_tests:         smoke-test every advertised tool
  - mcp_test_stop_server:       stop a server (SIGTERM → SIGKILL escalation)
  - mcp_test_clear_connections: drop every cached client session

Run standalone:
    python -m mcp_harness
"""

__version__ = "0.1.0"

from mcp_harness.harness import Harness  # noqa: E402

__all__ = ["Harness", "__version__"]
