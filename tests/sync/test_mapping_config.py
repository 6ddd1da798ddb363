"""Tests for mapping file validation and the file-backed repository."""

import json

import pytest

from src.apisync.api.exceptions import ConfigurationError
from src.apisync.sync.adapters.mapping_config import (
    FileMappingRepository,
    MappingConfig,
    load_mappings_file,
)
from src.apisync.sync.domain.entities import FieldDirection, SyncAction

PRODUCT = {
    "id": "product",
    "entity_type": "node",
    "bundle": "product",
    "remote_object_type": "Products",
    "pull_trigger_date": "Modified",
    "sync_triggers": ["push_create", "push_update", "pull_create"],
    "field_mappings": [
        {"local_field": "title", "remote_field": "Name"},
        {"local_field": "price", "remote_field": "Price", "direction": "push"},
    ],
    "pull_where_clause": [["Active", "=", True]],
    "weight": 5,
}

ACCOUNT = {
    "id": "account",
    "entity_type": "user",
    "remote_object_type": "Accounts",
    "sync_triggers": ["pull_create", "pull_update"],
    "pull_standalone": True,
}


def _write(tmp_path, document) -> str:
    path = tmp_path / "mappings.json"
    path.write_text(json.dumps(document))
    return str(path)


class TestMappingConfig:
    """Tests for schema validation."""

    def test_to_domain(self):
        mapping = MappingConfig.model_validate(PRODUCT).to_domain()

        assert mapping.id == "product"
        assert mapping.label == "product"
        assert mapping.sync_triggers == {
            SyncAction.PUSH_CREATE,
            SyncAction.PUSH_UPDATE,
            SyncAction.PULL_CREATE,
        }
        assert mapping.field_mappings[1].direction == FieldDirection.PUSH
        assert mapping.pull_where_clause == [("Active", "=", True)]
        assert mapping.key_field == "Id"
        assert mapping.push_async is True

    @pytest.mark.parametrize("bad_id", ["Product", "my-product", "with space", ""])
    def test_id_must_be_machine_name(self, bad_id):
        with pytest.raises(ValueError):
            MappingConfig.model_validate({**PRODUCT, "id": bad_id})

    def test_unknown_trigger_rejected(self):
        with pytest.raises(ValueError):
            MappingConfig.model_validate({**PRODUCT, "sync_triggers": ["pull_everything"]})

    def test_negative_limits_rejected(self):
        with pytest.raises(ValueError):
            MappingConfig.model_validate({**PRODUCT, "push_limit": -1})


class TestLoadMappingsFile:
    """Tests for load_mappings_file."""

    def test_valid_file(self, tmp_path):
        configs = load_mappings_file(_write(tmp_path, {"mappings": [PRODUCT, ACCOUNT]}))
        assert [c.id for c in configs] == ["product", "account"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_mappings_file(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "mappings.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="not valid JSON"):
            load_mappings_file(path)

    def test_duplicate_ids(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mappings_file(_write(tmp_path, {"mappings": [PRODUCT, PRODUCT]}))

        assert exc_info.value.details["errors"]

    def test_missing_required_field(self, tmp_path):
        broken = {k: v for k, v in PRODUCT.items() if k != "remote_object_type"}

        with pytest.raises(ConfigurationError):
            load_mappings_file(_write(tmp_path, {"mappings": [broken]}))


class TestFileMappingRepository:
    """Tests for the file-backed mapping repository."""

    @pytest.mark.asyncio
    async def test_ordering_and_filters(self, tmp_path):
        repo = FileMappingRepository(_write(tmp_path, {"mappings": [PRODUCT, ACCOUNT]}))

        assert [m.id for m in await repo.load_all()] == ["account", "product"]
        assert [m.id for m in await repo.load_push_mappings()] == ["product"]
        assert [m.id for m in await repo.load_pull_mappings()] == ["account", "product"]
        assert [m.id for m in await repo.load_standalone_pull_mappings()] == ["account"]
        assert await repo.load_standalone_push_mappings() == []
        assert await repo.load("missing") is None

    @pytest.mark.asyncio
    async def test_checkpoints_kept_in_memory(self, tmp_path):
        repo = FileMappingRepository(_write(tmp_path, {"mappings": [PRODUCT]}))

        await repo.save_checkpoint("product", last_pull_time=100.0)
        await repo.save_checkpoint("product", last_push_time=200.0)
        await repo.save_checkpoint("missing", last_pull_time=1.0)

        mapping = await repo.load("product")
        assert (mapping.last_pull_time, mapping.last_push_time) == (100.0, 200.0)
