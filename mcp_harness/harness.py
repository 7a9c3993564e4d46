"""The harness: deploy, exercise and tear down servers under test."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from mcp_harness.client.cache import SessionCache
from mcp_harness.client.smoke import SmokeTestRunner
from mcp_harness.client.tools import ToolInvoker
from mcp_harness.config import HarnessConfig
from mcp_harness.errors import DeploymentError
from mcp_harness.launch import determine_start_command, validate_source_path
from mcp_harness.locks import KeyedLock
from mcp_harness.models import TestCase
from mcp_harness.process_manager.logs import LogStore
from mcp_harness.process_manager.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)


class Harness:
    """Owns one supervisor and one session cache and coordinates them.

    Every component is an instance attribute, so independent harnesses can
    run side by side (tests do this).
    """

    def __init__(self, config: HarnessConfig | None = None) -> None:
        self.config = config or HarnessConfig()
        self.logs = LogStore(self.config.resolve_log_dir())
        self.supervisor = ProcessSupervisor(
            self.logs,
            warmup_delay=self.config.warmup_delay,
            kill_timeout=self.config.kill_timeout,
            settle_delay=self.config.settle_delay,
        )
        self.sessions = SessionCache(
            self.supervisor,
            health_check_timeout=self.config.health_check_timeout,
        )
        self.tools = ToolInvoker(self.sessions)
        self.tests = SmokeTestRunner(self.supervisor, self.tools)
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def deploy(
        self,
        name: str,
        source_path: str,
        env_vars: dict[str, str] | None = None,
        persistent: bool = True,
        command: str | None = None,
    ) -> dict[str, Any]:
        """Start a server from ``source_path``, replacing any previous one."""
        try:
            path = validate_source_path(source_path)
            async with self._locks.hold(name):
                # A session to the old process must never be reused
                await self.sessions.evict(name)
                start_command = command or determine_start_command(path)
                log.info("Starting server '%s' from %s", name, path)
                managed = await self.supervisor.spawn(
                    name,
                    str(path),
                    start_command,
                    env_vars,
                    source_path=str(path),
                    persistent=persistent,
                )
        except DeploymentError as exc:
            log.error("Error deploying server '%s': %s", name, exc)
            raise
        except Exception as exc:
            log.error("Error deploying server '%s': %s", name, exc)
            raise DeploymentError(str(exc)) from exc

        return {"name": name, "id": managed.id, "status": managed.status.value}

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call one tool. NotFoundError if the server is not deployed."""
        self.supervisor.get(server_name)
        outcome = await self.tools.invoke(server_name, tool_name, arguments)
        return outcome.to_dict()

    def list_servers(self, status: str = "running") -> list[dict[str, Any]]:
        if status not in ("running", "all"):
            raise ValueError(f"status must be 'running' or 'all', got {status!r}")
        servers = self.supervisor.list_all()
        if status == "running":
            servers = [m for m in servers if m.is_alive]
        return [
            {
                "name": m.name,
                "id": m.id,
                "status": m.status.value,
                "source_path": m.source_path,
                "deployed_at": m.deployed_at.isoformat(),
            }
            for m in servers
        ]

    def get_logs(self, server_name: str, lines: int = 100) -> dict[str, Any]:
        """Tail a server's log. NotFoundError if the server is not deployed."""
        self.supervisor.get(server_name)
        try:
            logs = self.logs.tail(server_name, lines)
        except OSError as exc:
            log.error("Error getting logs for server '%s': %s", server_name, exc)
            return {"logs": "", "error": str(exc)}
        if logs is None:
            return {"logs": f"No logs found for server '{server_name}'"}
        return {"logs": logs}

    async def run_tests(
        self,
        server_name: str,
        tests: Sequence[Mapping[str, Any]] | None = None,
    ) -> dict[str, Any]:
        cases = [TestCase.from_dict(t) for t in tests] if tests else None
        run = await self.tests.run(server_name, cases)
        return run.to_dict()

    async def stop(self, server_name: str) -> dict[str, Any]:
        """Stop a server and drop its session. Stopping nothing is fine."""
        async with self._locks.hold(server_name):
            try:
                await self.sessions.evict(server_name)
            finally:
                await self.supervisor.terminate(server_name)
        return {"name": server_name, "status": "stopped"}

    async def clear_connections(self) -> dict[str, Any]:
        await self.sessions.clear()
        return {"success": True, "message": "All client connections cleared"}

    async def shutdown(self) -> None:
        """Close every session and stop every server."""
        await self.sessions.clear()
        await self.supervisor.stop_all()
