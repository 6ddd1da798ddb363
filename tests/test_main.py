#!/usr/bin/env python3
"""Tests for the CLI subcommands in main.py.

The subcommands run against an in-memory engine; load-mappings is only
exercised with --check so no database is needed.
"""
import json
import sys
from argparse import Namespace

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from main import (
    load_mappings,
    run_delete_records,
    run_enqueue_push,
    run_pull,
    run_push,
    run_queue_status,
)
from src.apisync.api.exceptions import ConfigurationError
from src.apisync.sync.domain.entities import Entity

MODIFIED = "2024-01-01T00:00:00Z"


def pull_args(**overrides) -> Namespace:
    values = dict(mapping=None, remote_id=None, force=False, no_time_limit=False)
    values.update(overrides)
    return Namespace(**values)


class TestPullCommand:
    """Test the pull subcommand."""

    @pytest.mark.asyncio
    async def test_pull_all(self, engine, transport):
        transport.add("Products", {"Id": "R1", "Name": "One", "Modified": MODIFIED})
        transport.add("Products", {"Id": "R2", "Name": "Two", "Modified": MODIFIED})

        result = await run_pull(engine, pull_args())

        assert result["enqueued"] == 2
        assert result["count"] == 2
        assert len(engine.entities.all()) == 2

    @pytest.mark.asyncio
    async def test_pull_single_record(self, engine, transport):
        transport.add("Products", {"Id": "R1", "Name": "One", "Modified": MODIFIED})

        result = await run_pull(engine, pull_args(mapping="product", remote_id="R1", no_time_limit=True))

        assert result["enqueued"] == 1
        assert [e.fields["title"] for e in engine.entities.all()] == ["One"]

    @pytest.mark.asyncio
    async def test_unknown_mapping_exits(self, engine):
        with pytest.raises(SystemExit):
            await run_pull(engine, pull_args(mapping="missing"))

    @pytest.mark.asyncio
    async def test_remote_id_requires_mapping(self, engine):
        with pytest.raises(SystemExit):
            await run_pull(engine, pull_args(remote_id="R1"))


class TestPushCommands:
    """Test enqueue-push and push."""

    @pytest.mark.asyncio
    async def test_enqueue_then_push(self, engine, transport):
        entity = await engine.entities.save(Entity("node", bundle="product", fields={"title": "Lamp"}))

        queued = await run_enqueue_push(engine, Namespace(entity_type="node", entity_id=entity.id, op="create"))
        summary = await run_push(engine, Namespace(mapping="product"))

        assert len(queued["queued"]) == 1
        assert summary["mappings"] == {"product": 1}
        assert transport.calls == [("create", "Products", {"Name": "Lamp"})]

    @pytest.mark.asyncio
    async def test_enqueue_missing_entity_exits(self, engine):
        with pytest.raises(SystemExit):
            await run_enqueue_push(engine, Namespace(entity_type="node", entity_id=404, op="update"))


class TestOtherCommands:
    """Test delete-records, queue-status and load-mappings."""

    @pytest.mark.asyncio
    async def test_delete_records(self, engine):
        result = await run_delete_records(engine, Namespace())
        assert result == {"deleted": 0, "mappings": {"product": 0}}

    @pytest.mark.asyncio
    async def test_queue_status(self, engine):
        status = await run_queue_status(engine, Namespace())

        assert status["mode"] == "fetch-only"
        assert status["queues"] == {"apisync_push": 0, "apisync_pull": 0}

    @pytest.mark.asyncio
    async def test_load_mappings_check(self, tmp_path):
        path = tmp_path / "mappings.json"
        path.write_text(json.dumps({"mappings": [
            {"id": "product", "entity_type": "node", "remote_object_type": "Products"},
        ]}))

        result = await load_mappings(Namespace(file=str(path), check=True))

        assert result == {"validated": 1, "mappings": ["product"]}

    @pytest.mark.asyncio
    async def test_load_mappings_invalid_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            await load_mappings(Namespace(file=str(tmp_path / "missing.json"), check=True))
