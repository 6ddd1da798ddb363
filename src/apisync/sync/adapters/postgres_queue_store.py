"""PostgreSQL queue store adapter.

All queues share the apisync_queue table (see db/schema.sql), partitioned by
the queue_name column. Claims use a single UPDATE over a
``SELECT ... FOR UPDATE SKIP LOCKED`` subquery, which makes them atomic
across processes and nodes without blocking on rows another worker holds.
"""

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from ...api.database import database_connection, database_transaction
from ..domain.entities import QueueItem, RetryPolicy
from ..domain.ports import IQueueStore

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_COLUMNS = (
    "item_id, queue_name, name, entity_id, mapped_object_id, op, "
    "failures, expire, created, updated, payload"
)


class PostgresQueueStore(IQueueStore):
    """PostgreSQL implementation of IQueueStore for one named queue."""

    def __init__(
        self,
        pool: "asyncpg.Pool",
        queue_name: str,
        retry_policy: RetryPolicy,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            pool: asyncpg connection pool
            queue_name: Value of the queue_name column this store owns
            retry_policy: Failure ceiling and backoff for fail_item
            clock: Source of unix time, injectable for tests
        """
        self.pool = pool
        self.queue_name = queue_name
        self.retry_policy = retry_policy
        self._clock = clock

    async def create_item(self, item: QueueItem) -> int:
        now = self._clock()
        async with database_connection(self.pool) as conn:
            return await conn.fetchval(
                """
                INSERT INTO apisync_queue (
                    queue_name, name, entity_id, mapped_object_id, op,
                    failures, expire, created, updated, payload
                ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, $7, $8::jsonb)
                RETURNING item_id
                """,
                self.queue_name,
                item.name,
                _entity_key(item.entity_id),
                item.mapped_object_id,
                item.op,
                item.failures,
                now,
                json.dumps(item.payload),
            )

    async def upsert_item(self, item: QueueItem) -> int:
        if item.entity_id is None:
            return await self.create_item(item)

        now = self._clock()
        async with database_transaction(self.pool) as conn:
            item_id = await conn.fetchval(
                """
                UPDATE apisync_queue
                SET op = $4,
                    mapped_object_id = COALESCE($5, mapped_object_id),
                    payload = CASE WHEN $6::jsonb = '{}'::jsonb THEN payload ELSE $6::jsonb END,
                    updated = $7
                WHERE item_id = (
                    SELECT item_id FROM apisync_queue
                    WHERE queue_name = $1 AND name = $2 AND entity_id = $3 AND expire = 0
                    ORDER BY created, item_id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING item_id
                """,
                self.queue_name,
                item.name,
                _entity_key(item.entity_id),
                item.op,
                item.mapped_object_id,
                json.dumps(item.payload),
                now,
            )
            if item_id is not None:
                return item_id

            return await conn.fetchval(
                """
                INSERT INTO apisync_queue (
                    queue_name, name, entity_id, mapped_object_id, op,
                    failures, expire, created, updated, payload
                ) VALUES ($1, $2, $3, $4, $5, 0, 0, $6, $6, $7::jsonb)
                RETURNING item_id
                """,
                self.queue_name,
                item.name,
                _entity_key(item.entity_id),
                item.mapped_object_id,
                item.op,
                now,
                json.dumps(item.payload),
            )

    async def claim_item(
        self,
        lease_seconds: float,
        exclude: frozenset[int] = frozenset(),
    ) -> Optional[QueueItem]:
        now = self._clock()
        async with database_transaction(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE apisync_queue
                SET expire = $2
                WHERE item_id = (
                    SELECT item_id FROM apisync_queue
                    WHERE queue_name = $1
                      AND (expire = 0 OR expire <= $3)
                      AND NOT (item_id = ANY($4::bigint[]))
                    ORDER BY created, item_id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_COLUMNS}
                """,
                self.queue_name,
                now + lease_seconds,
                now,
                list(exclude),
            )
        return _row_to_item(row) if row else None

    async def claim_items(
        self,
        limit: int,
        lease_seconds: float,
        name: Optional[str] = None,
    ) -> list[QueueItem]:
        if limit <= 0:
            return []

        now = self._clock()
        async with database_transaction(self.pool) as conn:
            rows = await conn.fetch(
                f"""
                UPDATE apisync_queue
                SET expire = $2
                WHERE item_id IN (
                    SELECT item_id FROM apisync_queue
                    WHERE queue_name = $1
                      AND (expire = 0 OR expire <= $3)
                      AND ($5::text IS NULL OR name = $5)
                    ORDER BY created, item_id
                    LIMIT $4
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_COLUMNS}
                """,
                self.queue_name,
                now + lease_seconds,
                now,
                limit,
                name,
            )
        items = [_row_to_item(row) for row in rows]
        items.sort(key=lambda i: (i.created, i.item_id))
        return items

    async def delete_item(self, item_id: int) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute("DELETE FROM apisync_queue WHERE item_id = $1", item_id)

    async def release_item(self, item_id: int) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                "UPDATE apisync_queue SET expire = 0 WHERE item_id = $1",
                item_id,
            )

    async def release_items(self, item_ids: list[int]) -> None:
        if not item_ids:
            return
        async with database_connection(self.pool) as conn:
            await conn.execute(
                "UPDATE apisync_queue SET expire = 0 WHERE item_id = ANY($1::bigint[])",
                item_ids,
            )

    async def fail_item(self, error: Exception, item: QueueItem) -> bool:
        now = self._clock()
        async with database_transaction(self.pool) as conn:
            failures = await conn.fetchval(
                """
                UPDATE apisync_queue
                SET failures = failures + 1, updated = $2
                WHERE item_id = $1
                RETURNING failures
                """,
                item.item_id,
                now,
            )
            if failures is None:
                logger.warning(f"fail_item called for unknown item {item.item_id} in {self.queue_name}")
                return False

            item.failures = failures

            if self.retry_policy.is_exhausted(failures, error):
                await conn.execute("DELETE FROM apisync_queue WHERE item_id = $1", item.item_id)
                logger.error(
                    f"Permanently failed queue item {item.item_id} failed "
                    f"{failures} times. Exception: {error}"
                )
                return True

            await conn.execute(
                "UPDATE apisync_queue SET expire = $2 WHERE item_id = $1",
                item.item_id,
                self.retry_policy.next_attempt_at(now),
            )
            return False

    async def number_of_items(self) -> int:
        async with database_connection(self.pool) as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM apisync_queue WHERE queue_name = $1",
                self.queue_name,
            )

    async def delete_items_by_entity(self, name: str, entity_id: Any) -> int:
        async with database_connection(self.pool) as conn:
            result = await conn.execute(
                "DELETE FROM apisync_queue WHERE queue_name = $1 AND name = $2 AND entity_id = $3",
                self.queue_name,
                name,
                _entity_key(entity_id),
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])


def _entity_key(entity_id: Any) -> Optional[str]:
    return None if entity_id is None else str(entity_id)


def _row_to_item(row: Any) -> QueueItem:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return QueueItem(
        item_id=row["item_id"],
        queue_name=row["queue_name"],
        name=row["name"],
        entity_id=row["entity_id"],
        mapped_object_id=row["mapped_object_id"],
        op=row["op"],
        failures=row["failures"],
        expire=row["expire"],
        created=row["created"],
        updated=row["updated"],
        payload=payload or {},
    )
