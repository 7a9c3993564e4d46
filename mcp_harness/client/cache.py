"""Session Cache: one live Session per logical server name."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from mcp_harness.client.session import Session
from mcp_harness.client.transport import FramedTransport
from mcp_harness.errors import ServerConnectionError
from mcp_harness.locks import KeyedLock
from mcp_harness.process_manager.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

SessionFactory = Callable[[str, FramedTransport], Session]


class SessionCache:
    """Hands out cached sessions, verifying their health before reuse.

    A cached session is only reused while its process is the one currently
    registered under the name, is still alive, and answers a tool listing
    within ``health_check_timeout`` seconds.  Anything else evicts the
    session and builds exactly one replacement.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        health_check_timeout: float = 1.0,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._health_check_timeout = health_check_timeout
        self._session_factory = session_factory or Session
        self._sessions: dict[str, Session] = {}
        self._locks = KeyedLock()

    def __contains__(self, name: object) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, name: str) -> Session | None:
        return self._sessions.get(name)

    async def acquire(self, name: str) -> Session:
        """Return a healthy session for ``name``, connecting if needed.

        Raises NotFoundError if no process is registered under ``name`` and
        ServerConnectionError if a new session cannot be connected.
        """
        async with self._locks.hold(name):
            cached = self._sessions.get(name)
            if cached is not None:
                log.debug("Found existing session for server '%s'", name)
                if await self._is_usable(name, cached):
                    log.debug(
                        "Connection to server '%s' is healthy, reusing session",
                        name,
                    )
                    return cached
                await self.evict(name)

            return await self._create(name)

    async def evict(self, name: str) -> None:
        """Drop the cached session for ``name`` and close it. Idempotent."""
        session = self._sessions.pop(name, None)
        if session is None:
            log.debug("No cached session found for server '%s'", name)
            return

        log.info("Removing session for server '%s' from cache", name)
        try:
            await session.close()
        except Exception:
            log.warning("Error closing session for server '%s'", name, exc_info=True)

    async def clear(self) -> None:
        """Evict every cached session."""
        count = len(self._sessions)
        if count == 0:
            log.info("No cached sessions to clear")
            return

        log.info("Clearing session cache (%d sessions)", count)
        for name in list(self._sessions):
            await self.evict(name)

        if self._sessions:
            log.warning(
                "Failed to clear all sessions. %d sessions remain.",
                len(self._sessions),
            )
            self._sessions.clear()

        log.info("Session cache successfully cleared (was %d sessions)", count)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _is_usable(self, name: str, session: Session) -> bool:
        managed = self._supervisor.find(name)
        if managed is None:
            log.warning(
                "Cached session exists for server '%s', but the server is not registered",
                name,
            )
            return False
        if managed is not session.process:
            log.warning(
                "Cached session for server '%s' belongs to a previous deployment",
                name,
            )
            return False
        if not managed.is_alive:
            log.warning("Server process for '%s' is not active", name)
            return False
        return await self._verify(name, session)

    async def _verify(self, name: str, session: Session) -> bool:
        """Health check: a tool listing raced against a timeout."""
        log.debug("Verifying connection health for server '%s'...", name)
        try:
            await asyncio.wait_for(
                session.list_tools(), timeout=self._health_check_timeout
            )
        except asyncio.TimeoutError:
            log.warning("Session for '%s' failed health check: timed out", name)
            return False
        except Exception as exc:
            log.warning("Session for '%s' failed health check: %s", name, exc)
            return False
        return True

    async def _create(self, name: str) -> Session:
        managed = self._supervisor.get(name)

        transport = FramedTransport(managed, owns_process=False)
        session = self._session_factory(name, transport)
        try:
            await session.connect()
        except Exception as exc:
            log.error("Error creating session for server '%s': %s", name, exc)
            await session.close()
            if isinstance(exc, ServerConnectionError):
                raise
            raise ServerConnectionError(name, str(exc)) from exc

        self._sessions[name] = session
        return session
