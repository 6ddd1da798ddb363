#!/usr/bin/env python3
"""Tests for the database helpers and the PostgreSQL adapters.

Tests cover:
    - Driver error conversion
    - Connection acquisition failures
    - Queue claiming, collapse and failure bookkeeping (integration)
    - Mapped object uniqueness (integration)
    - Entity storage round trip (integration)

BEST PRACTICES FOR TEST ISOLATION:
    1. Integration tests use a queue name and mapping id unique to the run
    2. Rows they create are deleted in fixture teardown
    3. DATABASE_URL loaded from .env for local dev; integration tests skip without it

NOTE: Integration tests apply db/schema.sql (CREATE ... IF NOT EXISTS).
"""
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import asyncpg
import pytest
import pytest_asyncio
from dotenv import load_dotenv

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from conftest import FakeClock
from src.apisync.api.database import (
    _convert_db_exception,
    check_database_health,
    close_pool,
    create_pool,
    database_connection,
)
from src.apisync.api.exceptions import (
    ConnectionPoolError,
    DatabaseError,
    IntegrityError,
    ServerError,
    TransactionError,
)
from src.apisync.sync.adapters.postgres_entity_storage import PostgresEntityStorage
from src.apisync.sync.adapters.postgres_mapped_object_repo import PostgresMappedObjectRepository
from src.apisync.sync.adapters.postgres_queue_store import PostgresQueueStore
from src.apisync.sync.domain.entities import Entity, MappedObject, QueueItem, RetryPolicy, SyncAction

load_dotenv()

SCHEMA = Path(__file__).resolve().parent.parent / "db" / "schema.sql"

requires_database = pytest.mark.skipif(
    not os.getenv("DATABASE_URL"),
    reason="DATABASE_URL not set",
)


# ============================================
# Error Conversion Tests
# ============================================

class TestConvertDbException:
    """Test mapping of asyncpg errors onto the DatabaseError tree."""

    def test_unique_violation(self):
        converted = _convert_db_exception(asyncpg.UniqueViolationError("duplicate key"))

        assert isinstance(converted, IntegrityError)
        assert isinstance(converted.cause, asyncpg.UniqueViolationError)

    def test_foreign_key_violation(self):
        converted = _convert_db_exception(asyncpg.ForeignKeyViolationError("fk"))
        assert isinstance(converted, IntegrityError)

    def test_deadlock(self):
        converted = _convert_db_exception(asyncpg.DeadlockDetectedError("deadlock"))
        assert isinstance(converted, TransactionError)

    def test_other_driver_errors(self):
        converted = _convert_db_exception(asyncpg.PostgresError("boom"))
        assert type(converted) is DatabaseError

    def test_non_database_errors_pass_through(self):
        error = ServerError("remote down", status_code=502)
        assert _convert_db_exception(error) is error

        value_error = ValueError("caller bug")
        assert _convert_db_exception(value_error) is value_error


class TestConnectionHelpers:
    """Test pool acquisition and health without a database."""

    @pytest.mark.asyncio
    async def test_missing_pool(self):
        with pytest.raises(ConnectionPoolError):
            async with database_connection(None):
                pass

    @pytest.mark.asyncio
    async def test_acquire_failure(self):
        pool = MagicMock()
        pool.acquire = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(ConnectionPoolError):
            async with database_connection(pool):
                pass

    @pytest.mark.asyncio
    async def test_connection_released_after_error(self):
        conn = MagicMock()
        pool = MagicMock()
        pool.acquire = AsyncMock(return_value=conn)
        pool.release = AsyncMock()

        with pytest.raises(IntegrityError):
            async with database_connection(pool):
                raise asyncpg.UniqueViolationError("duplicate key")

        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_health_without_pool(self):
        assert (await check_database_health(None))["healthy"] is False

    @pytest.mark.asyncio
    async def test_create_pool_failure(self, monkeypatch):
        monkeypatch.setattr(asyncpg, "create_pool", AsyncMock(side_effect=OSError("refused")))

        with pytest.raises(ConnectionPoolError):
            await create_pool("postgresql://nobody@localhost:1/none")


# ============================================
# Integration Fixtures
# ============================================

@pytest_asyncio.fixture
async def db_pool():
    pool = await create_pool(os.environ["DATABASE_URL"], min_size=1, max_size=3)
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA.read_text())
    yield pool
    await close_pool(pool)


@pytest.fixture
def run_id():
    return f"test_{uuid4().hex[:12]}"


@pytest_asyncio.fixture
async def queue_store(db_pool, run_id):
    clock = FakeClock()
    store = PostgresQueueStore(db_pool, run_id, RetryPolicy(max_fails=2, backoff_seconds=60), clock=clock)
    store.clock = clock
    yield store
    async with db_pool.acquire() as conn:
        await conn.execute("DELETE FROM apisync_queue WHERE queue_name = $1", run_id)


def _item(queue_name, entity_id=None, op="update", payload=None):
    return QueueItem(queue_name=queue_name, name="product", op=op, entity_id=entity_id, payload=payload or {})


# ============================================
# Integration Tests
# ============================================

@requires_database
@pytest.mark.integration
class TestPostgresQueueStore:
    """Queue semantics against a real PostgreSQL."""

    @pytest.mark.asyncio
    async def test_claims_oldest_first_and_leases(self, queue_store, run_id):
        first = await queue_store.create_item(_item(run_id))
        queue_store.clock.advance(1)
        await queue_store.create_item(_item(run_id))

        claimed = await queue_store.claim_item(lease_seconds=300)

        assert claimed.item_id == first
        assert claimed.expire == queue_store.clock() + 300
        second = await queue_store.claim_item(lease_seconds=300)
        assert second.item_id != first
        assert await queue_store.claim_item(lease_seconds=300) is None

    @pytest.mark.asyncio
    async def test_exclude(self, queue_store, run_id):
        first = await queue_store.create_item(_item(run_id))

        assert await queue_store.claim_item(lease_seconds=300, exclude=frozenset({first})) is None

    @pytest.mark.asyncio
    async def test_upsert_collapses_unclaimed_item(self, queue_store, run_id):
        first = await queue_store.upsert_item(_item(run_id, entity_id=7, op="create"))
        second = await queue_store.upsert_item(_item(run_id, entity_id=7, op="update", payload={"k": 1}))

        assert first == second
        claimed = await queue_store.claim_item(lease_seconds=300)
        assert claimed.op == "update"
        assert claimed.payload == {"k": 1}
        assert claimed.entity_id == "7"

    @pytest.mark.asyncio
    async def test_upsert_after_claim_creates_new_item(self, queue_store, run_id):
        await queue_store.upsert_item(_item(run_id, entity_id=7))
        await queue_store.claim_item(lease_seconds=300)

        await queue_store.upsert_item(_item(run_id, entity_id=7, op="delete"))

        assert await queue_store.number_of_items() == 2

    @pytest.mark.asyncio
    async def test_claim_items_by_name(self, queue_store, run_id):
        await queue_store.create_item(_item(run_id))
        other = _item(run_id)
        other.name = "article"
        await queue_store.create_item(other)

        claimed = await queue_store.claim_items(limit=10, lease_seconds=300, name="product")

        assert [i.name for i in claimed] == ["product"]

    @pytest.mark.asyncio
    async def test_fail_item_backs_off_then_deletes(self, queue_store, run_id):
        await queue_store.create_item(_item(run_id))
        item = await queue_store.claim_item(lease_seconds=300)

        assert await queue_store.fail_item(RuntimeError("x"), item) is False
        assert item.failures == 1
        assert await queue_store.claim_item(lease_seconds=300) is None

        queue_store.clock.advance(61)
        item = await queue_store.claim_item(lease_seconds=300)
        assert await queue_store.fail_item(RuntimeError("x"), item) is True
        assert await queue_store.number_of_items() == 0

    @pytest.mark.asyncio
    async def test_release_and_delete_by_entity(self, queue_store, run_id):
        await queue_store.create_item(_item(run_id, entity_id=3))
        await queue_store.create_item(_item(run_id, entity_id=3))
        items = await queue_store.claim_items(limit=10, lease_seconds=300)

        await queue_store.release_items([i.item_id for i in items])
        assert len(await queue_store.claim_items(limit=10, lease_seconds=300)) == 2

        assert await queue_store.delete_items_by_entity("product", 3) == 2


@requires_database
@pytest.mark.integration
class TestPostgresMappedObjects:
    """Mapped object persistence."""

    @pytest_asyncio.fixture
    async def repo(self, db_pool, run_id):
        yield PostgresMappedObjectRepository(db_pool)
        async with db_pool.acquire() as conn:
            await conn.execute("DELETE FROM apisync_mapped_object WHERE mapping = $1", run_id)

    @pytest.mark.asyncio
    async def test_save_and_load(self, repo, run_id):
        mapped_object = MappedObject(mapping=run_id, entity_type="node", entity_id=5, remote_id="R5")
        mapped_object.record_sync(SyncAction.PUSH_CREATE, True, "created", at=1_700_000_000.0)
        await repo.save(mapped_object)

        loaded = await repo.load_by_remote_id(run_id, "R5")

        assert loaded.id == mapped_object.id
        assert loaded.entity_id == "5"
        assert loaded.last_sync_action == SyncAction.PUSH_CREATE
        assert (await repo.load_by_entity(run_id, 5)).id == mapped_object.id

    @pytest.mark.asyncio
    async def test_remote_id_is_unique_per_mapping(self, repo, run_id):
        await repo.save(MappedObject(mapping=run_id, entity_type="node", entity_id=1, remote_id="R1"))

        with pytest.raises(IntegrityError):
            await repo.save(MappedObject(mapping=run_id, entity_type="node", entity_id=2, remote_id="R1"))

    @pytest.mark.asyncio
    async def test_delete(self, repo, run_id):
        mapped_object = await repo.save(MappedObject(mapping=run_id, entity_type="node", entity_id=1))

        await repo.delete(mapped_object)

        assert await repo.load_by_mapping(run_id) == []


@requires_database
@pytest.mark.integration
class TestPostgresEntityStorage:
    """Local entity persistence."""

    @pytest.mark.asyncio
    async def test_round_trip(self, db_pool, run_id):
        storage = PostgresEntityStorage(db_pool)
        entity = await storage.save(Entity(run_id, bundle="product", fields={"title": "Lamp", "price": 5}))

        try:
            loaded = await storage.load(run_id, entity.id)
            assert loaded.fields == {"title": "Lamp", "price": 5}

            loaded.fields["title"] = "Desk lamp"
            await storage.save(loaded)
            assert (await storage.load(run_id, entity.id)).fields["title"] == "Desk lamp"
        finally:
            await storage.delete(entity)

        assert await storage.load(run_id, entity.id) is None
