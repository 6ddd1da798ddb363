"""Pull queue: populating it from remote queries and draining it in a time box.

Workflow:
1. PullQueuePopulator builds each mapping's select query, lets the registered
   query hooks widen it, finalizes it and runs it against the remote service
2. One pull item is enqueued per returned record
3. PullQueueDrainer claims items one at a time until the queue is empty or
   the deadline passes, dispatching each to the PullQueueWorker and acting
   on the returned outcome
"""

import logging
import time
from typing import Callable, Optional

from ...api.exceptions import QueueSuspendedError
from ..config import SyncSettings
from ..domain.entities import (
    DrainResult,
    Mapping,
    OutcomeKind,
    PullOp,
    QueueItem,
)
from ..domain.events import DrainEvent, EventKind
from ..domain.ports import (
    IFieldMapper,
    IMappingRepository,
    INotificationSink,
    IQueueStore,
    IRemoteTransport,
)
from ..domain.query import FinalizedQuery, SelectQuery
from .pull_worker import PullQueueWorker

logger = logging.getLogger(__name__)

QueryHook = Callable[[Mapping, SelectQuery], SelectQuery]


class PullQueuePopulator:
    """Enqueues remote records for pulling.

    Query hooks receive the mapping and the mutable SelectQuery, and must
    return the builder (usually the same object) for the next hook.

    Example:
        def include_region(mapping, query):
            if mapping.id == "account":
                query.add_field("Region")
            return query

        populator = PullQueuePopulator(..., query_hooks=[include_region])
        queued = await populator.populate_queue()
    """

    def __init__(
        self,
        mappings: IMappingRepository,
        transport: IRemoteTransport,
        store: IQueueStore,
        field_mapper: IFieldMapper,
        notifier: INotificationSink,
        settings: SyncSettings,
        query_hooks: Optional[list[QueryHook]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.mappings = mappings
        self.transport = transport
        self.store = store
        self.field_mapper = field_mapper
        self.notifier = notifier
        self.settings = settings
        self.query_hooks: list[QueryHook] = list(query_hooks or [])
        self._clock = clock

    def add_query_hook(self, hook: QueryHook) -> None:
        self.query_hooks.append(hook)

    def build_query(self, mapping: Mapping, start: float = 0, stop: float = 0) -> FinalizedQuery:
        query = mapping.build_pull_query(start, stop)
        for hook in self.query_hooks:
            query = hook(mapping, query)
            if not isinstance(query, SelectQuery):
                raise TypeError(
                    f"Query hook {getattr(hook, '__name__', hook)!r} must return the SelectQuery"
                )
        return query.finalize()

    # ----------------------------------------
    # Populating
    # ----------------------------------------

    async def populate_queue(
        self,
        mapping: Optional[Mapping] = None,
        remote_id: Optional[str] = None,
    ) -> int:
        """Enqueue pull work on demand.

        Args:
            mapping: Mapping to pull, default every standalone pull mapping
            remote_id: Pull exactly this record (requires ``mapping``), forced

        Returns:
            Number of items enqueued
        """
        if remote_id is not None:
            if mapping is None:
                raise ValueError("Pulling a single record requires a mapping")
            return await self._populate_record(mapping, remote_id)

        targets = [mapping] if mapping else await self.mappings.load_standalone_pull_mappings()
        total = 0
        for target in targets:
            total += await self._populate_mapping_safely(target)
        return total

    async def get_updated_records(
        self,
        force_pull: bool = False,
        start: float = 0,
        stop: float = 0,
    ) -> int:
        """Enqueue records changed since each pull mapping's checkpoint.

        Skips everything while the queue holds pull_max_queue_size items,
        and skips mappings whose pull_frequency has not elapsed unless
        ``force_pull`` is set.

        Returns:
            Number of items enqueued
        """
        queued = await self.store.number_of_items()
        if queued >= self.settings.pull_max_queue_size:
            self.notifier.warning(
                "Pull queue is full, not fetching updated records",
                queue=self.store.queue_name,
                items=queued,
                max_size=self.settings.pull_max_queue_size,
            )
            return 0

        now = self._clock()
        total = 0
        for mapping in await self.mappings.load_pull_mappings():
            if not force_pull and not mapping.pull_is_due(now):
                logger.debug(f"Pull for {mapping.id} not due yet")
                continue
            total += await self._populate_mapping_safely(mapping, force_pull, start, stop)
        return total

    async def _populate_mapping_safely(
        self,
        mapping: Mapping,
        force_pull: bool = False,
        start: float = 0,
        stop: float = 0,
    ) -> int:
        try:
            return await self._populate_mapping(mapping, force_pull, start, stop)
        except Exception as e:
            self.notifier.error("Pull query failed", error=e, mapping=mapping.id)
            return 0

    async def _populate_mapping(
        self,
        mapping: Mapping,
        force_pull: bool = False,
        start: float = 0,
        stop: float = 0,
    ) -> int:
        started = self._clock()
        query = self.build_query(mapping, start, stop)
        logger.debug(f"Pull query for {mapping.id}: {query}")

        records = await self.transport.query(query)

        newest: Optional[float] = None
        for record in records:
            await self._enqueue(mapping, record, force_pull)
            updated = self.field_mapper.remote_updated(record, mapping)
            if updated is not None and (newest is None or updated > newest):
                newest = updated

        if records:
            checkpoint = newest if newest is not None else started
            await self.mappings.save_checkpoint(mapping.id, last_pull_time=checkpoint)
            mapping.last_pull_time = checkpoint

        logger.info(f"Enqueued {len(records)} record(s) for {mapping.id}")
        return len(records)

    async def _populate_record(self, mapping: Mapping, remote_id: str) -> int:
        record = await self.transport.read(mapping.remote_object_type, remote_id)
        if record is None:
            self.notifier.warning(
                "Remote record not found",
                mapping=mapping.id,
                remote_id=remote_id,
            )
            return 0
        await self._enqueue(mapping, record, force_pull=True, remote_id=remote_id)
        return 1

    async def _enqueue(
        self,
        mapping: Mapping,
        record: dict,
        force_pull: bool,
        remote_id: Optional[str] = None,
    ) -> int:
        return await self.store.create_item(QueueItem(
            queue_name=self.store.queue_name,
            name=mapping.id,
            op=PullOp.UPSERT.value,
            payload={
                "record": record,
                "remote_id": remote_id or self.field_mapper.remote_id(record, mapping),
                "force_pull": force_pull,
            },
        ))

    async def enqueue_delete(self, mapping: Mapping, remote_id: str) -> int:
        """Enqueue removal of the local copy of a record deleted remotely."""
        return await self.store.create_item(QueueItem(
            queue_name=self.store.queue_name,
            name=mapping.id,
            op=PullOp.DELETE.value,
            payload={"remote_id": str(remote_id)},
        ))


class PullQueueDrainer:
    """Time-boxed drain loop over the pull queue."""

    def __init__(
        self,
        store: IQueueStore,
        worker: PullQueueWorker,
        notifier: INotificationSink,
        settings: SyncSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.worker = worker
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

    def default_deadline(self, now: float) -> Optional[float]:
        if self.settings.pull_time_limit <= 0:
            return None
        return now + self.settings.pull_time_limit

    async def process_queue(self, deadline: Optional[float] = None) -> DrainResult:
        """Claim and process items until the queue is empty or the deadline passes.

        The deadline is checked before each claim and never interrupts an
        item in progress.

        Args:
            deadline: Unix time to stop claiming, default now + pull_time_limit

        Returns:
            DrainResult with counts and elapsed wall time

        Raises:
            QueueSuspendedError: If the worker suspended the queue
            Exception: Whatever the worker raised unexpectedly, after the
                item's failure was recorded
        """
        started = self._clock()
        if deadline is None:
            deadline = self.default_deadline(started)

        result = DrainResult(queue_name=self.store.queue_name)
        excluded: set[int] = set()
        current: Optional[QueueItem] = None

        self.notifier.notify(
            EventKind.QUEUE_DRAIN_STARTED,
            DrainEvent(message="Queue drain started", queue_name=self.store.queue_name),
        )

        try:
            while deadline is None or self._clock() < deadline:
                current = await self.store.claim_item(
                    self.settings.pull_lease_seconds,
                    exclude=frozenset(excluded),
                )
                if current is None:
                    break

                try:
                    outcome = await self.worker.process_item(current)
                except Exception as e:
                    item, current = current, None
                    await self.store.fail_item(e, item)
                    raise

                kind = outcome.kind
                if kind == OutcomeKind.DONE:
                    await self.store.delete_item(current.item_id)
                    result.count += 1

                elif kind == OutcomeKind.REQUEUE:
                    await self.store.release_item(current.item_id)
                    excluded.add(current.item_id)
                    result.requeued += 1

                elif kind == OutcomeKind.SUSPEND:
                    item, current = current, None
                    await self.store.release_item(item.item_id)
                    raise QueueSuspendedError(self.store.queue_name, outcome.error)

                else:
                    permanently = await self.store.fail_item(outcome.error, current)
                    result.count += 1
                    result.failed += 1
                    if permanently:
                        result.permanently_failed += 1

                self.notifier.notice(
                    f"Processed pull item: {kind.value}",
                    **current.describe(),
                )
                current = None

        finally:
            if current is not None:
                await self.store.release_item(current.item_id)
            result.elapsed_seconds = self._clock() - started
            self.notifier.notify(
                EventKind.QUEUE_DRAIN_FINISHED,
                DrainEvent(
                    message="Queue drain finished",
                    queue_name=self.store.queue_name,
                    count=result.count,
                    elapsed_seconds=result.elapsed_seconds,
                ),
            )

        logger.info(
            f"Drained {result.count} item(s) from {self.store.queue_name} "
            f"in {result.elapsed_seconds:.2f}s ({result.requeued} requeued, {result.failed} failed)"
        )
        return result
