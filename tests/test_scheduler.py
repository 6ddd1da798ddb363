#!/usr/bin/env python3
"""Tests for the scheduler sync cycle and health reporting.

Tests cover:
    - Passes run in order: pull, push, deletes
    - Config flags select which passes run
    - A failing pass is recorded without stopping the others
    - Health state and the TCP health check response
    - Loop shutdown
"""
import asyncio
import json
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from conftest import build_engine, make_mapping
from scheduler import HealthState, SchedulerConfig, health_check_handler, run_sync, scheduler_loop
from src.apisync.api.exceptions import NetworkError
from src.apisync.sync.domain.entities import DrainResult, Entity, PushOp


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def config(monkeypatch):
    """Scheduler config with every pass enabled."""
    for name in ("SYNC_INTERVAL_MINUTES", "SYNC_PULL", "SYNC_PUSH", "SYNC_DELETES", "SYNC_ON_STARTUP"):
        monkeypatch.delenv(name, raising=False)
    cfg = SchedulerConfig()
    cfg.sync_deletes = True
    return cfg


@pytest.fixture
def services():
    """Mocked queue engine recording the order of passes."""
    order = []
    mock = MagicMock()
    mock.order = order

    async def get_updated_records():
        order.append("populate")
        return 2

    async def process_queue():
        order.append("drain")
        return DrainResult("apisync_pull", count=2)

    async def process_queues():
        order.append("push")
        return {"processed": 1, "mappings": {"product": 1}, "suspended": False, "error": None}

    async def process_deleted_records():
        order.append("deletes")
        return {"deleted": 0, "mappings": {}}

    mock.populator.get_updated_records = AsyncMock(side_effect=get_updated_records)
    mock.drainer.process_queue = AsyncMock(side_effect=process_queue)
    mock.push_queue.process_queues = AsyncMock(side_effect=process_queues)
    mock.deleted_records.process_deleted_records = AsyncMock(side_effect=process_deleted_records)
    mock.queue_status = AsyncMock(return_value={"mode": "database", "queues": {"apisync_push": 3, "apisync_pull": 0}})
    return mock


# ============================================
# Configuration Tests
# ============================================

class TestSchedulerConfig:
    """Test environment defaults."""

    def test_defaults(self, monkeypatch):
        for name in ("SYNC_INTERVAL_MINUTES", "SYNC_PULL", "SYNC_PUSH", "SYNC_DELETES", "HEALTH_CHECK_PORT"):
            monkeypatch.delenv(name, raising=False)

        cfg = SchedulerConfig()

        assert cfg.interval_minutes == 15
        assert cfg.sync_pull and cfg.sync_push
        assert not cfg.sync_deletes
        assert cfg.health_check_port == 8080

    def test_flags_from_env(self, monkeypatch):
        monkeypatch.setenv("SYNC_PUSH", "False")
        monkeypatch.setenv("SYNC_DELETES", "true")

        cfg = SchedulerConfig()

        assert not cfg.sync_push
        assert cfg.sync_deletes


# ============================================
# Sync Cycle Tests
# ============================================

class TestRunSync:
    """Test run_sync pass ordering and isolation."""

    @pytest.mark.asyncio
    async def test_passes_run_in_order(self, config, services):
        results = await run_sync(config, services)

        assert services.order == ["populate", "drain", "push", "deletes"]
        assert results["success"] is True
        assert results["pull"]["enqueued"] == 2
        assert results["pull"]["count"] == 2
        assert results["push"]["mappings"] == {"product": 1}
        assert results["duration_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_disabled_passes_skipped(self, config, services):
        config.sync_pull = False
        config.sync_deletes = False

        results = await run_sync(config, services)

        assert services.order == ["push"]
        assert results["pull"] is None
        assert results["deletes"] is None

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_others(self, config, services):
        services.populator.get_updated_records.side_effect = NetworkError("remote unreachable")

        results = await run_sync(config, services)

        assert services.order == ["push", "deletes"]
        assert results["success"] is False
        assert results["pull"]["error_type"] == "NetworkError"
        assert results["push"]["mappings"] == {"product": 1}

    @pytest.mark.asyncio
    async def test_real_engine_cycle(self, config, clock, transport):
        engine = build_engine([make_mapping()], clock=clock, transport=transport)
        transport.add("Products", {"Id": "R1", "Name": "Remote", "Modified": "2024-01-01T00:00:00Z"})
        local = await engine.entities.save(Entity("node", bundle="product", fields={"title": "Local"}))
        await engine.push_queue.enqueue_entity_change(local, PushOp.CREATE)

        results = await run_sync(config, engine)

        assert results["success"] is True
        assert results["pull"]["enqueued"] == 1
        assert {e.fields["title"] for e in engine.entities.all()} == {"Local", "Remote"}
        assert ("create", "Products", {"Name": "Local"}) in transport.calls


# ============================================
# Health Tests
# ============================================

class TestHealthState:
    """Test health bookkeeping."""

    def test_healthy_before_first_sync(self):
        assert HealthState().healthy

    def test_failed_sync_is_unhealthy(self):
        state = HealthState()

        state.record({"success": True})
        state.record({"success": False})

        assert not state.healthy
        assert state.total_syncs == 2
        assert state.failed_syncs == 1


class TestHealthCheckHandler:
    """Test the TCP health check response."""

    @staticmethod
    def _stream_pair():
        reader = MagicMock()
        reader.read = AsyncMock(return_value=b"GET / HTTP/1.1\r\n\r\n")
        writer = MagicMock()
        writer.drain = AsyncMock()
        writer.wait_closed = AsyncMock()
        return reader, writer

    def _response(self, writer):
        raw = writer.write.call_args.args[0].decode()
        head, body = raw.split("\r\n\r\n", 1)
        return head.split("\r\n")[0], json.loads(body)

    @pytest.mark.asyncio
    async def test_healthy_response_includes_queues(self, services):
        reader, writer = self._stream_pair()

        await health_check_handler(reader, writer, HealthState(), services)

        status_line, body = self._response(writer)
        assert status_line == "HTTP/1.1 200 OK"
        assert body["status"] == "healthy"
        assert body["queues"] == {"apisync_push": 3, "apisync_pull": 0}
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_unhealthy_response(self, services):
        reader, writer = self._stream_pair()
        state = HealthState()
        state.record({"success": False})
        services.queue_status.side_effect = NetworkError("database down")

        await health_check_handler(reader, writer, state, services)

        status_line, body = self._response(writer)
        assert status_line == "HTTP/1.1 503 Service Unavailable"
        assert body["queues"] is None


# ============================================
# Loop Tests
# ============================================

class TestSchedulerLoop:
    """Test startup sync and shutdown."""

    @pytest.mark.asyncio
    async def test_startup_sync_then_shutdown(self, config, services):
        shutdown = asyncio.Event()
        shutdown.set()
        state = HealthState()

        await scheduler_loop(config, services, state, shutdown)

        assert state.total_syncs == 1
        assert services.order == ["populate", "drain", "push", "deletes"]

    @pytest.mark.asyncio
    async def test_no_startup_sync(self, config, services):
        config.sync_on_startup = False
        shutdown = asyncio.Event()
        shutdown.set()
        state = HealthState()

        await scheduler_loop(config, services, state, shutdown)

        assert state.total_syncs == 0
        assert services.order == []
