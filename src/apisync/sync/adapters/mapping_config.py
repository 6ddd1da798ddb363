"""Mapping definitions: JSON schema validation and repositories.

Mappings are authored as a JSON document, validated with pydantic and
converted to domain Mapping objects:

    {
      "mappings": [
        {
          "id": "product",
          "entity_type": "node",
          "bundle": "product",
          "remote_object_type": "Products",
          "key_field": "Id",
          "pull_trigger_date": "Modified",
          "sync_triggers": ["push_create", "push_update", "pull_create", "pull_update"],
          "field_mappings": [
            {"local_field": "title", "remote_field": "Name"},
            {"local_field": "price", "remote_field": "Price", "direction": "push"}
          ]
        }
      ]
    }

FileMappingRepository serves a JSON file with checkpoints kept in memory
(fetch-only mode). PostgresMappingRepository stores the definitions and the
checkpoints in apisync_mapping.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ...api.database import database_connection, database_transaction
from ...api.exceptions import ConfigurationError
from ..domain.entities import FieldDirection, FieldMapping, Mapping, SyncAction
from ..domain.ports import IMappingRepository

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


# ============================================
# Schema
# ============================================

class FieldMappingConfig(BaseModel):
    local_field: str = Field(..., min_length=1)
    remote_field: str = Field(..., min_length=1)
    direction: FieldDirection = FieldDirection.SYNC


class MappingConfig(BaseModel):
    """One mapping as written in the mappings file."""
    id: str = Field(..., min_length=1, max_length=128)
    label: Optional[str] = None
    entity_type: str = Field(..., min_length=1)
    bundle: Optional[str] = None
    remote_object_type: str = Field(..., min_length=1)
    key_field: str = "Id"
    pull_trigger_date: Optional[str] = None
    sync_triggers: list[SyncAction] = Field(default_factory=list)
    field_mappings: list[FieldMappingConfig] = Field(default_factory=list)
    pull_standalone: bool = False
    push_standalone: bool = False
    push_async: bool = True
    push_limit: int = Field(default=0, ge=0)
    push_retries: int = Field(default=0, ge=0)
    push_frequency: int = Field(default=0, ge=0)
    pull_frequency: int = Field(default=0, ge=0)
    pull_where_clause: list[tuple[str, str, Any]] = Field(default_factory=list)
    weight: int = 0

    @field_validator("id")
    @classmethod
    def id_is_machine_name(cls, value: str) -> str:
        if not value.replace("_", "").isalnum() or value.lower() != value:
            raise ValueError("mapping id must be lowercase letters, digits and underscores")
        return value

    def to_domain(self) -> Mapping:
        return Mapping(
            id=self.id,
            label=self.label or self.id,
            entity_type=self.entity_type,
            bundle=self.bundle,
            remote_object_type=self.remote_object_type,
            key_field=self.key_field,
            pull_trigger_date=self.pull_trigger_date,
            sync_triggers=set(self.sync_triggers),
            field_mappings=[
                FieldMapping(f.local_field, f.remote_field, f.direction)
                for f in self.field_mappings
            ],
            pull_standalone=self.pull_standalone,
            push_standalone=self.push_standalone,
            push_async=self.push_async,
            push_limit=self.push_limit,
            push_retries=self.push_retries,
            push_frequency=self.push_frequency,
            pull_frequency=self.pull_frequency,
            pull_where_clause=[tuple(c) for c in self.pull_where_clause],
            weight=self.weight,
        )


class MappingsDocument(BaseModel):
    mappings: list[MappingConfig] = Field(default_factory=list)

    @field_validator("mappings")
    @classmethod
    def ids_are_unique(cls, value: list[MappingConfig]) -> list[MappingConfig]:
        seen = set()
        for mapping in value:
            if mapping.id in seen:
                raise ValueError(f"duplicate mapping id '{mapping.id}'")
            seen.add(mapping.id)
        return value


def load_mappings_file(path: str | Path) -> list[MappingConfig]:
    """Read and validate a mappings JSON file.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigurationError(f"Mappings file not found: {path}", cause=e)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Mappings file is not valid JSON: {path}: {e}", cause=e)

    try:
        document = MappingsDocument.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid mappings file {path}: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
            cause=e,
        )
    return document.mappings


def _sorted(mappings: list[Mapping]) -> list[Mapping]:
    return sorted(mappings, key=lambda m: (m.weight, m.id))


# ============================================
# Repositories
# ============================================

class FileMappingRepository(IMappingRepository):
    """Mappings from a JSON file; checkpoints live only as long as the process."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._mappings = {c.id: c.to_domain() for c in load_mappings_file(self.path)}
        logger.info(f"Loaded {len(self._mappings)} mapping(s) from {self.path}")

    async def load(self, mapping_id: str) -> Optional[Mapping]:
        return self._mappings.get(mapping_id)

    async def load_all(self) -> list[Mapping]:
        return _sorted(list(self._mappings.values()))

    async def save_checkpoint(
        self,
        mapping_id: str,
        last_pull_time: Optional[float] = None,
        last_push_time: Optional[float] = None,
    ) -> None:
        mapping = self._mappings.get(mapping_id)
        if mapping is None:
            return
        if last_pull_time is not None:
            mapping.last_pull_time = last_pull_time
        if last_push_time is not None:
            mapping.last_push_time = last_push_time


class PostgresMappingRepository(IMappingRepository):
    """Mappings stored as JSONB definitions in apisync_mapping."""

    def __init__(self, pool: "asyncpg.Pool"):
        self.pool = pool

    async def load(self, mapping_id: str) -> Optional[Mapping]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT definition, last_pull_time, last_push_time FROM apisync_mapping WHERE id = $1",
                mapping_id,
            )
        return self._row_to_mapping(row) if row else None

    async def load_all(self) -> list[Mapping]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                "SELECT definition, last_pull_time, last_push_time FROM apisync_mapping "
                "ORDER BY weight, id"
            )
        return [self._row_to_mapping(row) for row in rows]

    async def save_checkpoint(
        self,
        mapping_id: str,
        last_pull_time: Optional[float] = None,
        last_push_time: Optional[float] = None,
    ) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                """
                UPDATE apisync_mapping
                SET last_pull_time = COALESCE($2, last_pull_time),
                    last_push_time = COALESCE($3, last_push_time)
                WHERE id = $1
                """,
                mapping_id,
                last_pull_time,
                last_push_time,
            )

    async def import_mappings(self, configs: list[MappingConfig]) -> int:
        """Insert or replace mapping definitions, keeping existing checkpoints.

        Returns:
            Number of mappings written
        """
        if not configs:
            return 0

        records = [
            (c.id, c.model_dump_json(), c.weight)
            for c in configs
        ]
        async with database_transaction(self.pool) as conn:
            await conn.executemany(
                """
                INSERT INTO apisync_mapping (id, definition, weight)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (id) DO UPDATE SET
                    definition = EXCLUDED.definition,
                    weight = EXCLUDED.weight
                """,
                records,
            )
        logger.info(f"Imported {len(records)} mapping(s)")
        return len(records)

    @staticmethod
    def _row_to_mapping(row: Any) -> Mapping:
        definition = row["definition"]
        if isinstance(definition, str):
            definition = json.loads(definition)
        mapping = MappingConfig.model_validate(definition).to_domain()
        mapping.last_pull_time = row["last_pull_time"] or 0.0
        mapping.last_push_time = row["last_push_time"] or 0.0
        return mapping
