"""In-memory queue store.

Implements IQueueStore for a single process: fetch-only mode (no
DATABASE_URL) and tests. Claims are serialized with an asyncio.Lock, so
concurrent tasks in one event loop never receive the same item.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Optional

from ..domain.entities import QueueItem, RetryPolicy
from ..domain.ports import IQueueStore

logger = logging.getLogger(__name__)


class InMemoryQueueStore(IQueueStore):
    """Queue store kept in a dict keyed by item id.

    Items handed to callers are copies; mutating them does not change the
    stored item.
    """

    def __init__(
        self,
        queue_name: str,
        retry_policy: RetryPolicy,
        clock: Callable[[], float] = time.time,
    ):
        self.queue_name = queue_name
        self.retry_policy = retry_policy
        self._clock = clock
        self._items: dict[int, QueueItem] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create_item(self, item: QueueItem) -> int:
        async with self._lock:
            return self._insert(item)

    async def upsert_item(self, item: QueueItem) -> int:
        async with self._lock:
            now = self._clock()
            for existing in self._items.values():
                if (
                    existing.name == item.name
                    and item.entity_id is not None
                    and existing.entity_id == item.entity_id
                    and existing.expire == 0
                ):
                    existing.op = item.op
                    existing.mapped_object_id = item.mapped_object_id or existing.mapped_object_id
                    existing.payload = dict(item.payload) or existing.payload
                    existing.updated = now
                    return existing.item_id
            return self._insert(item)

    def _insert(self, item: QueueItem) -> int:
        now = self._clock()
        item_id = next(self._ids)
        self._items[item_id] = replace(
            item,
            item_id=item_id,
            queue_name=self.queue_name,
            expire=0.0,
            created=now,
            updated=now,
            payload=dict(item.payload),
        )
        return item_id

    def _candidates(self, now: float, name: Optional[str] = None) -> list[QueueItem]:
        candidates = [
            item for item in self._items.values()
            if item.is_claimable(now) and (name is None or item.name == name)
        ]
        candidates.sort(key=lambda i: (i.created, i.item_id))
        return candidates

    async def claim_item(
        self,
        lease_seconds: float,
        exclude: frozenset[int] = frozenset(),
    ) -> Optional[QueueItem]:
        async with self._lock:
            now = self._clock()
            for item in self._candidates(now):
                if item.item_id in exclude:
                    continue
                item.expire = now + lease_seconds
                return replace(item, payload=dict(item.payload))
            return None

    async def claim_items(
        self,
        limit: int,
        lease_seconds: float,
        name: Optional[str] = None,
    ) -> list[QueueItem]:
        async with self._lock:
            now = self._clock()
            claimed = []
            for item in self._candidates(now, name)[:limit]:
                item.expire = now + lease_seconds
                claimed.append(replace(item, payload=dict(item.payload)))
            return claimed

    async def delete_item(self, item_id: int) -> None:
        async with self._lock:
            self._items.pop(item_id, None)

    async def release_item(self, item_id: int) -> None:
        async with self._lock:
            item = self._items.get(item_id)
            if item:
                item.expire = 0.0

    async def release_items(self, item_ids: list[int]) -> None:
        async with self._lock:
            for item_id in item_ids:
                item = self._items.get(item_id)
                if item:
                    item.expire = 0.0

    async def fail_item(self, error: Exception, item: QueueItem) -> bool:
        async with self._lock:
            stored = self._items.get(item.item_id)
            if stored is None:
                logger.warning(f"fail_item called for unknown item {item.item_id} in {self.queue_name}")
                return False

            now = self._clock()
            stored.failures += 1
            stored.updated = now
            item.failures = stored.failures

            if self.retry_policy.is_exhausted(stored.failures, error):
                del self._items[stored.item_id]
                logger.error(
                    f"Permanently failed queue item {stored.item_id} failed "
                    f"{stored.failures} times. Exception: {error}"
                )
                return True

            stored.expire = self.retry_policy.next_attempt_at(now)
            return False

    async def number_of_items(self) -> int:
        return len(self._items)

    async def delete_items_by_entity(self, name: str, entity_id: Any) -> int:
        async with self._lock:
            doomed = [
                item_id for item_id, item in self._items.items()
                if item.name == name and item.entity_id == entity_id
            ]
            for item_id in doomed:
                del self._items[item_id]
            return len(doomed)

    def snapshot(self) -> list[QueueItem]:
        """Copies of every stored item, oldest first."""
        items = sorted(self._items.values(), key=lambda i: (i.created, i.item_id))
        return [replace(i, payload=dict(i.payload)) for i in items]
