"""Tests for the session cache and its health checks."""

import asyncio

import pytest

from helpers import FakeSupervisor, SessionFactory
from mcp_harness.client.cache import SessionCache
from mcp_harness.errors import NotFoundError, ServerConnectionError


@pytest.fixture
def supervisor():
    sv = FakeSupervisor()
    sv.add("srv")
    return sv


@pytest.fixture
def factory():
    return SessionFactory()


@pytest.fixture
def cache(supervisor, factory):
    return SessionCache(supervisor, health_check_timeout=0.2, session_factory=factory)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_healthy_session_is_reused(self, cache, factory):
        first = await cache.acquire("srv")
        second = await cache.acquire("srv")
        assert first is second
        assert len(factory.sessions) == 1
        # The second acquire ran exactly one health check
        assert first.list_calls == 1

    @pytest.mark.asyncio
    async def test_transport_does_not_own_the_process(self, cache, supervisor):
        session = await cache.acquire("srv")
        assert session.transport.process is supervisor.get("srv")
        assert session.transport.owns_process is False

    @pytest.mark.asyncio
    async def test_unknown_server_raises_not_found(self, cache, factory):
        with pytest.raises(NotFoundError):
            await cache.acquire("ghost")
        assert factory.sessions == []
        assert "ghost" not in cache

    @pytest.mark.asyncio
    async def test_connect_failure_raises_connection_error(self, cache, factory):
        factory.connect_error = RuntimeError("handshake refused")
        with pytest.raises(ServerConnectionError) as excinfo:
            await cache.acquire("srv")
        assert "handshake refused" in str(excinfo.value)
        assert factory.sessions[0].closed
        assert "srv" not in cache

    @pytest.mark.asyncio
    async def test_connection_error_passes_through(self, cache, factory):
        original = ServerConnectionError("srv", "gone")
        factory.connect_error = original
        with pytest.raises(ServerConnectionError) as excinfo:
            await cache.acquire("srv")
        assert excinfo.value is original

    @pytest.mark.asyncio
    async def test_concurrent_acquires_share_one_session(self, cache, factory):
        sessions = await asyncio.gather(*(cache.acquire("srv") for _ in range(5)))
        assert all(s is sessions[0] for s in sessions)
        assert len(factory.sessions) == 1


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_failed_check_rebuilds_once(self, cache, factory, supervisor):
        first = await cache.acquire("srv")
        factory.list_error = RuntimeError("broken pipe")
        second = await cache.acquire("srv")

        assert second is not first
        assert first.closed
        assert len(factory.sessions) == 2
        # Eviction never touches the process itself
        assert supervisor.get("srv").kill_calls == 0
        assert supervisor.get("srv").is_alive

    @pytest.mark.asyncio
    async def test_timed_out_check_rebuilds_once(self, cache, factory):
        first = await cache.acquire("srv")
        factory.list_delay = 1.0
        second = await cache.acquire("srv")
        assert second is not first
        assert first.closed
        assert len(factory.sessions) == 2

    @pytest.mark.asyncio
    async def test_dead_process_rebuilds(self, cache, factory, supervisor):
        first = await cache.acquire("srv")
        supervisor.get("srv").alive = False
        second = await cache.acquire("srv")
        assert second is not first
        assert first.closed
        # No health check is attempted against a dead process
        assert first.list_calls == 0

    @pytest.mark.asyncio
    async def test_replaced_process_rebuilds(self, cache, factory, supervisor):
        first = await cache.acquire("srv")
        replacement = supervisor.add("srv")
        second = await cache.acquire("srv")
        assert first.closed
        assert second.process is replacement

    @pytest.mark.asyncio
    async def test_unregistered_server_evicts_then_raises(self, cache, supervisor):
        first = await cache.acquire("srv")
        del supervisor.processes["srv"]
        with pytest.raises(NotFoundError):
            await cache.acquire("srv")
        assert first.closed
        assert "srv" not in cache


class TestEviction:
    @pytest.mark.asyncio
    async def test_evict_forces_new_session(self, cache):
        first = await cache.acquire("srv")
        await cache.evict("srv")
        assert first.closed
        assert "srv" not in cache
        second = await cache.acquire("srv")
        assert second is not first

    @pytest.mark.asyncio
    async def test_evict_is_idempotent(self, cache):
        await cache.evict("srv")
        await cache.acquire("srv")
        await cache.evict("srv")
        await cache.evict("srv")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_close_failure_still_evicts(self, cache):
        session = await cache.acquire("srv")

        async def broken_close():
            raise RuntimeError("close failed")

        session.close = broken_close
        await cache.evict("srv")
        assert "srv" not in cache

    @pytest.mark.asyncio
    async def test_clear_closes_everything(self, cache, supervisor):
        supervisor.add("other")
        a = await cache.acquire("srv")
        b = await cache.acquire("other")
        assert len(cache) == 2

        await cache.clear()

        assert len(cache) == 0
        assert a.closed and b.closed
        assert supervisor.get("srv").is_alive
        assert supervisor.get("other").is_alive

    @pytest.mark.asyncio
    async def test_locks_do_not_accumulate(self, cache, supervisor):
        for i in range(20):
            supervisor.add(f"srv-{i}")
            await cache.acquire(f"srv-{i}")
            await cache.evict(f"srv-{i}")
        with pytest.raises(NotFoundError):
            await cache.acquire("ghost")
        assert len(cache._locks) == 0

    @pytest.mark.asyncio
    async def test_clear_on_empty_cache(self, cache):
        await cache.clear()
        assert len(cache) == 0
