"""Process Supervisor: spawns, tracks, and tears down servers under test."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, BinaryIO

from mcp_harness.errors import DeploymentError, NotFoundError
from mcp_harness.process_manager.logs import LogStore

log = logging.getLogger(__name__)

ID_PREFIX = "mcp-test-"
READ_CHUNK = 4096
DRAIN_TIMEOUT = 1.0  # seconds to let output pipes drain after exit
EXIT_POLL_INTERVAL = 0.1

OutputListener = Callable[[bytes], None]
ExitListener = Callable[[int | None], None]
ErrorListener = Callable[[BaseException], None]


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ManagedProcess:
    """State for a single server under test."""

    name: str
    command: str
    cwd: str
    source_path: str
    persistent: bool = True
    status: ProcessStatus = ProcessStatus.STARTING
    pid: int | None = None
    exit_code: int | None = None
    killed: bool = False  # set once the harness has delivered any signal
    deployed_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    stop_time: float | None = None
    _process: asyncio.subprocess.Process | None = field(
        default=None, repr=False
    )
    _reader_tasks: list[asyncio.Task[None]] = field(
        default_factory=list, repr=False
    )
    _waiter: asyncio.Task[int | None] | None = field(default=None, repr=False)
    _log_sink: BinaryIO | None = field(default=None, repr=False)
    _output_listeners: list[OutputListener] = field(
        default_factory=list, repr=False
    )
    _exit_listeners: list[ExitListener] = field(
        default_factory=list, repr=False
    )
    _error_listeners: list[ErrorListener] = field(
        default_factory=list, repr=False
    )

    @property
    def id(self) -> str:
        return f"{ID_PREFIX}{self.name}"

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self._process.stdin if self._process else None

    @property
    def is_alive(self) -> bool:
        proc = self._process
        return proc is not None and not self.killed and proc.returncode is None

    # ------------------------------------------------------------------
    # Event subscriptions
    # ------------------------------------------------------------------

    def on_output(self, listener: OutputListener) -> None:
        self._output_listeners.append(listener)

    def remove_output_listener(self, listener: OutputListener) -> None:
        _discard(self._output_listeners, listener)

    def on_exit(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def remove_exit_listener(self, listener: ExitListener) -> None:
        _discard(self._exit_listeners, listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        _discard(self._error_listeners, listener)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def send_signal(self, sig: int) -> bool:
        """Signal the whole process group. False if nothing was running."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        try:
            # start_command runs under its own session, so pgid == pid
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return False
        except OSError:
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                return False
        self.killed = True
        return True

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    def sweep_group(self) -> None:
        """SIGKILL anything left in the process group once the leader is gone."""
        if self.pid is None:
            return
        try:
            os.killpg(self.pid, signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass

    async def wait(self) -> int | None:
        """Wait until the exit has been fully processed (listeners fired)."""
        if self._waiter is None:
            return self.exit_code
        return await asyncio.shield(self._waiter)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status.value,
            "source_path": self.source_path,
            "deployed_at": self.deployed_at.isoformat(),
            "command": self.command,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "persistent": self.persistent,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_log(self, chunk: bytes) -> None:
        sink = self._log_sink
        if sink is None or sink.closed:
            return
        try:
            sink.write(chunk)
            sink.flush()
        except OSError:
            log.debug("Could not write log for server '%s'", self.name, exc_info=True)

    def _close_log(self) -> None:
        if self._log_sink is not None and not self._log_sink.closed:
            self._log_sink.close()

    def _emit_output(self, chunk: bytes) -> None:
        for listener in list(self._output_listeners):
            try:
                listener(chunk)
            except Exception:
                log.exception("Output listener for server '%s' failed", self.name)

    def _emit_exit(self, code: int | None) -> None:
        for listener in list(self._exit_listeners):
            try:
                listener(code)
            except Exception:
                log.exception("Exit listener for server '%s' failed", self.name)

    def _emit_error(self, exc: BaseException) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                log.exception("Error listener for server '%s' failed", self.name)


def _discard(listeners: list[Any], listener: Any) -> None:
    try:
        listeners.remove(listener)
    except ValueError:
        pass


class ProcessSupervisor:
    """Registry of servers under test, keyed by logical name."""

    def __init__(
        self,
        logs: LogStore,
        *,
        warmup_delay: float = 1.0,
        kill_timeout: float = 1.0,
        settle_delay: float = 1.0,
    ) -> None:
        self._processes: dict[str, ManagedProcess] = {}
        self._logs = logs
        self._warmup_delay = warmup_delay
        self._kill_timeout = kill_timeout
        self._settle_delay = settle_delay

    def __contains__(self, name: object) -> bool:
        return name in self._processes

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, name: str) -> ManagedProcess:
        managed = self._processes.get(name)
        if managed is None:
            raise NotFoundError(name)
        return managed

    def find(self, name: str) -> ManagedProcess | None:
        return self._processes.get(name)

    def list_all(self) -> list[ManagedProcess]:
        return list(self._processes.values())

    async def spawn(
        self,
        name: str,
        cwd: str,
        command: str,
        env: dict[str, str] | None = None,
        *,
        source_path: str | None = None,
        persistent: bool = True,
    ) -> ManagedProcess:
        """Start ``command`` in ``cwd`` and register it under ``name``.

        An existing process under the same name is fully terminated first.
        Returns after the warm-up delay, not when the server is ready.
        """
        if name in self._processes:
            log.info(
                "Server '%s' is already running. Stopping it before redeployment.",
                name,
            )
            await self.terminate(name)

        if not os.path.isdir(cwd):
            raise DeploymentError(f"Working directory does not exist: {cwd}")

        spawn_env = os.environ.copy()
        if env:
            spawn_env.update(env)

        try:
            sink = self._logs.open_sink(name)
        except (OSError, ValueError) as exc:
            raise DeploymentError(
                f"Cannot open log file for server '{name}': {exc}"
            ) from exc

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=spawn_env,
                # New process group so the whole shell tree can be signalled
                preexec_fn=os.setsid,
            )
        except (OSError, ValueError) as exc:
            sink.close()
            raise DeploymentError(f"Failed to start server '{name}': {exc}") from exc

        managed = ManagedProcess(
            name=name,
            command=command,
            cwd=cwd,
            source_path=source_path or cwd,
            persistent=persistent,
            status=ProcessStatus.RUNNING,
            pid=process.pid,
        )
        managed._process = process
        managed._log_sink = sink
        self._processes[name] = managed

        managed._reader_tasks = [
            asyncio.create_task(
                self._pump(managed, process.stdout, fan_out=True),  # type: ignore[arg-type]
                name=f"{name}-stdout",
            ),
            asyncio.create_task(
                self._pump(managed, process.stderr, fan_out=False),  # type: ignore[arg-type]
                name=f"{name}-stderr",
            ),
        ]
        managed._waiter = asyncio.create_task(
            self._wait_for_exit(managed),
            name=f"{name}-waiter",
        )

        log.info("Started server '%s' (pid=%s): %s", name, process.pid, command)

        # Give the server time to initialize
        if self._warmup_delay > 0:
            await asyncio.sleep(self._warmup_delay)
        return managed

    async def terminate(self, name: str) -> None:
        """Stop a server: SIGTERM, wait, SIGKILL, then let resources settle.

        Idempotent and never raises; the goal state is "not running".
        """
        # Removed first so concurrent lookups fail fast instead of racing
        managed = self._processes.pop(name, None)
        if managed is None:
            log.debug("No server named '%s' to terminate", name)
            return

        try:
            managed.status = ProcessStatus.STOPPING
            managed.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(managed.wait(), timeout=self._kill_timeout)
                log.debug("Server '%s' process exited", name)
            except asyncio.TimeoutError:
                log.warning(
                    "Server '%s' did not terminate gracefully, forcing kill...",
                    name,
                )
                managed.send_signal(signal.SIGKILL)
                try:
                    await asyncio.wait_for(
                        managed.wait(), timeout=self._kill_timeout
                    )
                except asyncio.TimeoutError:
                    log.warning("Server '%s' still not reaped after SIGKILL", name)
            managed.sweep_group()

            log.debug(
                "Waiting for system resources of server '%s' to be released...",
                name,
            )
            await asyncio.sleep(self._settle_delay)
            log.info("Server '%s' has been fully terminated.", name)
        except Exception:
            log.warning("Error during termination of server '%s'", name, exc_info=True)
            await asyncio.sleep(self._settle_delay)
            log.info("Proceeding after termination attempt for '%s'.", name)
        finally:
            managed.status = ProcessStatus.STOPPED
            if managed.stop_time is None:
                managed.stop_time = time.time()

    async def stop_all(self) -> None:
        """Terminate every registered server."""
        names = list(self._processes.keys())
        if names:
            log.info("Stopping %d managed server(s)", len(names))
            await asyncio.gather(*(self.terminate(name) for name in names))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _pump(
        managed: ManagedProcess,
        stream: asyncio.StreamReader,
        fan_out: bool,
    ) -> None:
        """Copy an output stream into the log sink; stdout also goes to listeners."""
        try:
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                managed._write_log(chunk)
                if fan_out:
                    managed._emit_output(chunk)
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log.warning(
                "Error reading output of server '%s'", managed.name, exc_info=True
            )
            managed._emit_error(exc)

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process) -> int | None:
        """Wait for the leader process itself to exit.

        ``Process.wait()`` also waits for every pipe to close, which never
        happens while a descendant that outlived the shell still holds one.
        """
        waiter = asyncio.ensure_future(proc.wait())
        try:
            while proc.returncode is None:
                done, _ = await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
                if done:
                    break
        finally:
            if not waiter.done():
                waiter.cancel()
        return proc.returncode

    async def _wait_for_exit(self, managed: ManagedProcess) -> int | None:
        """Wait for process exit, then update state and notify listeners."""
        proc = managed._process
        if proc is None:
            return None
        code = await self._reap(proc)

        if managed._reader_tasks:
            _, pending = await asyncio.wait(
                managed._reader_tasks, timeout=DRAIN_TIMEOUT
            )
            if pending:
                # Orphaned descendants still hold the output pipes
                log.warning(
                    "Output of server '%s' still open after exit, killing its process group",
                    managed.name,
                )
                managed.sweep_group()
                for task in pending:
                    task.cancel()
        managed._close_log()

        log.info("Server '%s' exited with code %s", managed.name, code)
        managed.exit_code = code
        managed.stop_time = time.time()
        if managed.status != ProcessStatus.STOPPING:
            managed.status = (
                ProcessStatus.STOPPED if code == 0 else ProcessStatus.FAILED
            )
        managed._emit_exit(code)

        if not managed.persistent and self._processes.get(managed.name) is managed:
            del self._processes[managed.name]
        return code
