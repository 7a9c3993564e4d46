"""Process management for servers under test.

  - ProcessSupervisor: spawn, look up and terminate (SIGTERM → SIGKILL)
  - LogStore:          per-server log files the supervisor writes into
"""

from mcp_harness.process_manager.logs import LogStore
from mcp_harness.process_manager.supervisor import (
    ManagedProcess,
    ProcessStatus,
    ProcessSupervisor,
)

__all__ = ["LogStore", "ManagedProcess", "ProcessStatus", "ProcessSupervisor"]
