"""Framed Transport: newline-delimited JSON-RPC over a child's stdio pipes."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable
from typing import Any

from mcp_harness.errors import TransportError
from mcp_harness.process_manager.supervisor import ManagedProcess

log = logging.getLogger(__name__)


class FramedTransport:
    """One JSON-RPC channel bound to one managed process.

    Frames are single lines terminated by ``\\n``.  Incoming bytes are
    accumulated until a full line is available; a trailing fragment is
    kept for the next chunk.

    Notifications are single-slot attributes (the last assignment wins):
    ``onmessage(message)``, ``onerror(exc)`` and ``onclose()``.  ``onclose``
    fires exactly once per transport, whichever of ``close()``, process
    exit or process error happens first.

    ``owns_process`` controls whether ``close()`` kills the process.  The
    session cache builds non-owning transports because the supervisor owns
    the process lifecycle.
    """

    def __init__(self, process: ManagedProcess, *, owns_process: bool = True) -> None:
        self.process = process
        self.owns_process = owns_process
        self.onmessage: Callable[[Any], None] | None = None
        self.onerror: Callable[[Exception], None] | None = None
        self.onclose: Callable[[], None] | None = None
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._connected = False
        self._closed = False
        self._subscribed = False

    @property
    def name(self) -> str:
        return self.process.name

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._closed:
            raise TransportError(f"Transport for {self.name} is already closed")
        if not self.process.is_alive:
            log.error("Failed to start transport for %s: process not active", self.name)
            raise TransportError(f"Server process for {self.name} is not active")

        self.process.on_output(self.feed_data)
        self.process.on_exit(self._handle_exit)
        self.process.on_error(self._handle_process_error)
        self._subscribed = True
        self._connected = True

    async def send(self, message: Any) -> None:
        """Write one frame; failures are also reported through ``onerror``."""
        stdin = self.process.stdin
        if not self._connected or stdin is None or stdin.is_closing():
            err = TransportError(
                f"Cannot send message to {self.name}: transport not connected"
            )
            self._report_error(err)
            raise err

        frame = json.dumps(message, separators=(",", ":")) + "\n"
        try:
            stdin.write(frame.encode("utf-8"))
            await stdin.drain()
        except (OSError, RuntimeError) as exc:
            self._connected = False
            err = TransportError(f"Failed to write to {self.name}: {exc}")
            self._report_error(err)
            raise err from exc

    async def close(self) -> None:
        try:
            self._unsubscribe()
            if self.owns_process and self.process.is_alive:
                self.process.kill()
        except Exception:
            log.warning("Error during transport close for %s", self.name, exc_info=True)
        finally:
            self._connected = False
            self._fire_close()

    def feed_data(self, chunk: bytes) -> None:
        """Accept a raw output chunk and dispatch every completed frame."""
        self._buffer += self._decoder.decode(chunk)

        while True:
            end = self._buffer.find("\n")
            if end == -1:
                break
            line = self._buffer[:end]
            self._buffer = self._buffer[end + 1:]
            if not line.strip():
                continue

            try:
                message = json.loads(line)
            except json.JSONDecodeError as exc:
                log.error("Error parsing message from %s: %s", self.name, exc)
                self._report_error(exc)
                continue

            if self.onmessage is not None:
                try:
                    self.onmessage(message)
                except Exception as exc:
                    log.exception("Message handler for %s failed", self.name)
                    self._report_error(exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_exit(self, code: int | None) -> None:
        self._connected = False
        log.warning("Server process for %s exited with code %s", self.name, code)
        self._unsubscribe()
        self._fire_close()

    def _handle_process_error(self, exc: BaseException) -> None:
        self._connected = False
        log.error("Server process error for %s: %s", self.name, exc)
        self._unsubscribe()
        if isinstance(exc, Exception):
            self._report_error(exc)
        self._fire_close()

    def _report_error(self, exc: Exception) -> None:
        if self.onerror is not None:
            try:
                self.onerror(exc)
            except Exception:
                log.exception("Error handler for %s failed", self.name)

    def _unsubscribe(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        self.process.remove_output_listener(self.feed_data)
        self.process.remove_exit_listener(self._handle_exit)
        self.process.remove_error_listener(self._handle_process_error)

    def _fire_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.onclose is not None:
            self.onclose()
