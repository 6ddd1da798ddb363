"""PostgreSQL entity storage adapter.

Local entities live in a single apisync_entity table keyed by
(entity_type, id), with their field values in a JSONB column.
"""

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from ...api.database import database_connection
from ..domain.entities import Entity
from ..domain.ports import IEntityStorage

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class PostgresEntityStorage(IEntityStorage):
    """PostgreSQL implementation of IEntityStorage."""

    def __init__(self, pool: "asyncpg.Pool", clock: Callable[[], float] = time.time):
        self.pool = pool
        self._clock = clock

    async def load(self, entity_type: str, entity_id: Any) -> Optional[Entity]:
        if entity_id is None:
            return None
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT entity_type, id, bundle, fields, changed
                FROM apisync_entity
                WHERE entity_type = $1 AND id = $2
                """,
                entity_type,
                str(entity_id),
            )
        return _row_to_entity(row) if row else None

    async def save(self, entity: Entity) -> Entity:
        entity.changed = self._clock()
        async with database_connection(self.pool) as conn:
            if entity.is_new:
                entity.id = await conn.fetchval(
                    """
                    INSERT INTO apisync_entity (entity_type, bundle, fields, changed)
                    VALUES ($1, $2, $3::jsonb, $4)
                    RETURNING id
                    """,
                    entity.entity_type,
                    entity.bundle,
                    json.dumps(entity.fields, default=str),
                    entity.changed,
                )
                logger.debug(f"Created {entity.entity_type} {entity.id}")
            else:
                await conn.execute(
                    """
                    INSERT INTO apisync_entity (entity_type, id, bundle, fields, changed)
                    VALUES ($1, $2, $3, $4::jsonb, $5)
                    ON CONFLICT (entity_type, id) DO UPDATE SET
                        bundle = EXCLUDED.bundle,
                        fields = EXCLUDED.fields,
                        changed = EXCLUDED.changed
                    """,
                    entity.entity_type,
                    str(entity.id),
                    entity.bundle,
                    json.dumps(entity.fields, default=str),
                    entity.changed,
                )
        return entity

    async def delete(self, entity: Entity) -> None:
        if entity.is_new:
            return
        async with database_connection(self.pool) as conn:
            await conn.execute(
                "DELETE FROM apisync_entity WHERE entity_type = $1 AND id = $2",
                entity.entity_type,
                str(entity.id),
            )


def _row_to_entity(row: Any) -> Entity:
    fields = row["fields"]
    if isinstance(fields, str):
        fields = json.loads(fields)
    return Entity(
        entity_type=row["entity_type"],
        id=row["id"],
        bundle=row["bundle"],
        fields=fields or {},
        changed=row["changed"],
    )
