"""Tests for the on-demand queue endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import build_engine, make_mapping, make_settings
from src.apisync.sync.api.dependencies import close_services, init_services
from src.apisync.sync.app import create_app
from src.apisync.sync.domain.entities import Entity, PushOp

CRON_KEY = "s3cret"


@pytest.fixture
def mappings():
    return [
        make_mapping(pull_standalone=True),
        make_mapping(id="article", bundle="article", remote_object_type="Articles"),
    ]


async def _client(engine):
    await init_services(engine)
    return AsyncClient(transport=ASGITransport(app=create_app(use_lifespan=False)), base_url="http://test")


@pytest.fixture
async def engine(clock, transport, mappings):
    engine = build_engine(mappings, clock=clock, transport=transport, settings=make_settings(cron_key=CRON_KEY))
    yield engine
    await close_services()


@pytest.fixture
async def client(engine):
    async with await _client(engine) as http:
        yield http


class TestCronKey:
    """Tests for path key verification."""

    @pytest.mark.asyncio
    async def test_wrong_key(self, client):
        response = await client.get("/apisync/pull/product/nope")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unset_key_rejects_everything(self, clock, transport, mappings):
        engine = build_engine(mappings, clock=clock, transport=transport, settings=make_settings())
        try:
            async with await _client(engine) as http:
                response = await http.get("/apisync/pull/product/anything")
        finally:
            await close_services()

        assert response.status_code == 403


class TestPullEndpoints:
    """Tests for the pull endpoints."""

    @pytest.mark.asyncio
    async def test_pull_mapping(self, client, engine, transport):
        transport.add("Products", {"Id": "R1", "Name": "Remote", "Modified": "2024-01-01T00:00:00Z"})

        response = await client.get(f"/apisync/pull/product/{CRON_KEY}")

        assert response.status_code == 204
        assert [e.fields["title"] for e in engine.entities.all()] == ["Remote"]
        assert await engine.pull_store.number_of_items() == 0

    @pytest.mark.asyncio
    async def test_pull_single_record(self, client, engine, transport):
        transport.add("Products", {"Id": "R7", "Name": "One", "Modified": "2024-01-01T00:00:00Z"})
        transport.add("Products", {"Id": "R8", "Name": "Other", "Modified": "2024-01-01T00:00:00Z"})

        response = await client.get(f"/apisync/pull/product/{CRON_KEY}/R7")

        assert response.status_code == 204
        assert [e.fields["title"] for e in engine.entities.all()] == ["One"]

    @pytest.mark.asyncio
    async def test_unknown_mapping(self, client):
        response = await client.get(f"/apisync/pull/missing/{CRON_KEY}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_mapping_not_standalone(self, client):
        response = await client.get(f"/apisync/pull/article/{CRON_KEY}")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_global_pull_requires_standalone_setting(self, client):
        response = await client.get(f"/apisync/pull/{CRON_KEY}")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_global_pull_when_standalone(self, clock, transport, mappings):
        engine = build_engine(
            mappings, clock=clock, transport=transport,
            settings=make_settings(cron_key=CRON_KEY, standalone=True),
        )
        try:
            async with await _client(engine) as http:
                response = await http.get(f"/apisync/pull/{CRON_KEY}")
        finally:
            await close_services()

        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_remote_failure_still_answers(self, client, transport):
        transport.errors["query"] = RuntimeError("remote down")

        response = await client.get(f"/apisync/pull/product/{CRON_KEY}")

        assert response.status_code == 204


class TestPushEndpoints:
    """Tests for the push endpoints."""

    @pytest.mark.asyncio
    async def test_push_requires_push_standalone(self, client):
        response = await client.get(f"/apisync/push/product/{CRON_KEY}")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_push_mapping_when_standalone(self, clock, transport):
        engine = build_engine(
            [make_mapping(push_standalone=True)], clock=clock, transport=transport,
            settings=make_settings(cron_key=CRON_KEY),
        )
        entity = await engine.entities.save(Entity("node", bundle="product", fields={"title": "Lamp"}))
        await engine.push_queue.enqueue_entity_change(entity, PushOp.CREATE)
        try:
            async with await _client(engine) as http:
                response = await http.get(f"/apisync/push/product/{CRON_KEY}")
        finally:
            await close_services()

        assert response.status_code == 204
        assert transport.records["Products"]
        assert await engine.push_store.number_of_items() == 0


class TestDestination:
    """Tests for the destination redirect."""

    @pytest.mark.asyncio
    async def test_local_destination_redirects(self, client):
        response = await client.get(f"/apisync/pull/product/{CRON_KEY}", params={"destination": "/admin/content"})

        assert response.status_code == 303
        assert response.headers["location"] == "/admin/content"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("destination", ["https://evil.example.com/", "//evil.example.com/x"])
    async def test_external_destination_ignored(self, client, destination):
        response = await client.get(f"/apisync/pull/product/{CRON_KEY}", params={"destination": destination})
        assert response.status_code == 204


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/apisync/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["mode"] == "fetch-only"
        assert body["queues"] == {"apisync_push": 0, "apisync_pull": 0}
