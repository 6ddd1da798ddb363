"""PostgreSQL repository adapter for mapped objects.

The apisync_mapped_object table carries UNIQUE (mapping, entity_id) and
UNIQUE (mapping, remote_id); a concurrent first-time save for the same
correlation surfaces as IntegrityError from save().
"""

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from ...api.database import database_connection
from ..domain.entities import MappedObject, SyncAction
from ..domain.ports import IMappedObjectRepository

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, mapping, entity_type, entity_id, remote_id, last_sync_action, "
    "last_sync_status, last_sync_message, revision_log_message, "
    "entity_updated, changed, force_pull"
)


class PostgresMappedObjectRepository(IMappedObjectRepository):
    """PostgreSQL implementation of IMappedObjectRepository."""

    def __init__(self, pool: "asyncpg.Pool", clock: Callable[[], float] = time.time):
        self.pool = pool
        self._clock = clock

    async def load(self, mapped_object_id: int) -> Optional[MappedObject]:
        return await self._fetch_one("id = $1", mapped_object_id)

    async def load_by_entity(self, mapping: str, entity_id: Any) -> Optional[MappedObject]:
        if entity_id is None:
            return None
        return await self._fetch_one("mapping = $1 AND entity_id = $2", mapping, str(entity_id))

    async def load_by_remote_id(self, mapping: str, remote_id: str) -> Optional[MappedObject]:
        if remote_id is None:
            return None
        return await self._fetch_one("mapping = $1 AND remote_id = $2", mapping, str(remote_id))

    async def load_by_mapping(self, mapping: str) -> list[MappedObject]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM apisync_mapped_object WHERE mapping = $1 ORDER BY id",
                mapping,
            )
        return [_row_to_mapped_object(row) for row in rows]

    async def _fetch_one(self, where: str, *args) -> Optional[MappedObject]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM apisync_mapped_object WHERE {where}",
                *args,
            )
        return _row_to_mapped_object(row) if row else None

    async def save(self, mapped_object: MappedObject) -> MappedObject:
        mapped_object.changed = self._clock()
        values = (
            mapped_object.mapping,
            mapped_object.entity_type,
            None if mapped_object.entity_id is None else str(mapped_object.entity_id),
            mapped_object.remote_id,
            mapped_object.last_sync_action.value if mapped_object.last_sync_action else None,
            mapped_object.last_sync_status,
            mapped_object.last_sync_message,
            mapped_object.revision_log_message,
            mapped_object.entity_updated,
            mapped_object.changed,
            mapped_object.force_pull,
        )

        async with database_connection(self.pool) as conn:
            if mapped_object.is_new:
                mapped_object.id = await conn.fetchval(
                    """
                    INSERT INTO apisync_mapped_object (
                        mapping, entity_type, entity_id, remote_id, last_sync_action,
                        last_sync_status, last_sync_message, revision_log_message,
                        entity_updated, changed, force_pull
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    RETURNING id
                    """,
                    *values,
                )
                logger.debug(
                    f"Created mapped object {mapped_object.id} "
                    f"({mapped_object.mapping}: {mapped_object.entity_id} <-> {mapped_object.remote_id})"
                )
            else:
                await conn.execute(
                    """
                    UPDATE apisync_mapped_object SET
                        mapping = $1, entity_type = $2, entity_id = $3, remote_id = $4,
                        last_sync_action = $5, last_sync_status = $6, last_sync_message = $7,
                        revision_log_message = $8, entity_updated = $9, changed = $10,
                        force_pull = $11
                    WHERE id = $12
                    """,
                    *values,
                    mapped_object.id,
                )
        return mapped_object

    async def delete(self, mapped_object: MappedObject) -> None:
        if mapped_object.is_new:
            return
        async with database_connection(self.pool) as conn:
            await conn.execute("DELETE FROM apisync_mapped_object WHERE id = $1", mapped_object.id)


def _row_to_mapped_object(row: Any) -> MappedObject:
    action = row["last_sync_action"]
    return MappedObject(
        id=row["id"],
        mapping=row["mapping"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        remote_id=row["remote_id"],
        last_sync_action=SyncAction(action) if action else None,
        last_sync_status=row["last_sync_status"],
        last_sync_message=row["last_sync_message"],
        revision_log_message=row["revision_log_message"],
        entity_updated=row["entity_updated"],
        changed=row["changed"],
        force_pull=row["force_pull"],
    )
