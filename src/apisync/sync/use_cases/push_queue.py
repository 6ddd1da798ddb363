"""Push queue: enqueueing local changes and pushing them to the remote service.

Workflow:
1. Entity changes are enqueued per matching mapping (PushQueue.enqueue_entity_change)
2. process_queues() claims batches per mapping and hands them to the processor
3. PushQueueProcessor checks for a usable token, then processes each item
   independently: success deletes the item, failure applies the retry policy
4. A batch that cannot authenticate is suspended and its items released
"""

import logging
import time
from typing import Any, Callable, Optional

from ...api.exceptions import (
    AuthenticationError,
    AuthUnavailableError,
    CircuitOpenError,
    EntityNotFoundError,
    ItemPermanentlyFailedError,
    MappingNotFoundError,
    QueueSuspendedError,
)
from ..config import SyncSettings
from ..domain.entities import (
    Entity,
    Mapping,
    ProcessOutcome,
    PushBatchResult,
    PushOp,
    QueueItem,
    SyncAction,
)
from ..domain.events import EventKind, PushOpEvent
from ..domain.ports import (
    IEntityStorage,
    IMappedObjectRepository,
    IMappingRepository,
    INotificationSink,
    IQueueStore,
    ITokenProvider,
)
from .mapped_object_sync import MappedObjectSync
from .resolve_mapped_object import MappedObjectResolver

logger = logging.getLogger(__name__)


class PushQueueProcessor:
    """Processes claimed push queue items.

    Per item: PENDING -> PROCESSING -> DONE (item deleted), RETRY (failure
    recorded, item leased until the backoff elapses) or FAILED (ceiling
    reached, item removed).

    Example:
        processor = PushQueueProcessor(
            store=push_store,
            mappings=mapping_repo,
            mapped_objects=mapped_object_repo,
            entities=entity_storage,
            sync=MappedObjectSync(...),
            token_provider=token_manager,
            notifier=dispatcher,
        )
        result = await processor.process(items)
    """

    def __init__(
        self,
        store: IQueueStore,
        mappings: IMappingRepository,
        mapped_objects: IMappedObjectRepository,
        entities: IEntityStorage,
        sync: MappedObjectSync,
        token_provider: ITokenProvider,
        notifier: INotificationSink,
        resolver: Optional[MappedObjectResolver] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.mappings = mappings
        self.mapped_objects = mapped_objects
        self.entities = entities
        self.sync = sync
        self.token_provider = token_provider
        self.notifier = notifier
        self.resolver = resolver or MappedObjectResolver(mapped_objects)
        self._clock = clock

    async def _check_token(self) -> Optional[Exception]:
        try:
            token = await self.token_provider.get_token()
        except AuthenticationError as e:
            return AuthUnavailableError(f"No valid authentication token available: {e}", cause=e)
        if not token:
            return AuthUnavailableError()
        return None

    async def process(self, items: list[QueueItem]) -> PushBatchResult:
        """Process a batch of claimed items.

        Returns:
            PushBatchResult. When no token is available its outcome is
            SUSPEND and no item has been touched. Items the batch did not
            reach (suspended mid-batch) appear in none of the result lists.
        """
        result = PushBatchResult()

        auth_error = await self._check_token()
        if auth_error is not None:
            logger.warning(f"Push batch of {len(items)} suspended: {auth_error}")
            result.outcome = ProcessOutcome.suspend(auth_error)
            return result

        for item in items:
            try:
                action = await self.process_item(item)
            except (AuthenticationError, CircuitOpenError) as e:
                # Remote became unusable mid-batch; leave the rest for later
                logger.warning(f"Push batch suspended at item {item.item_id}: {e}")
                result.outcome = ProcessOutcome.suspend(e)
                return result
            except Exception as e:
                await self._fail(item, e, result)
                continue

            await self.store.delete_item(item.item_id)
            result.succeeded.append(item)
            logger.debug(
                f"Pushed item {item.item_id} ({item.name} {item.op} {item.entity_id}): "
                f"{action.value if action else 'nothing to do'}"
            )

        return result

    async def _fail(self, item: QueueItem, error: Exception, result: PushBatchResult) -> None:
        self.notifier.error("Push failed", error=error, **item.describe())
        permanently = await self.store.fail_item(error, item)
        if not permanently and await self._mapping_retries_exhausted(item):
            await self.store.delete_item(item.item_id)
            logger.error(
                f"Permanently failed queue item {item.item_id}: {item.name} allows "
                f"{item.failures} push attempt(s). Exception: {error}"
            )
            permanently = True
        if permanently:
            failure = ItemPermanentlyFailedError(item.item_id, item.failures, error)
            self.notifier.error(str(failure), error=error, **item.describe())
            result.permanently_failed.append((item, failure))
        else:
            result.retrying.append((item, error))

    async def _mapping_retries_exhausted(self, item: QueueItem) -> bool:
        """True when the item's mapping caps push attempts and the cap is reached."""
        mapping = await self.mappings.load(item.name)
        if mapping is None or mapping.push_retries <= 0:
            return False
        return item.failures >= mapping.push_retries

    async def process_item(self, item: QueueItem) -> Optional[SyncAction]:
        """Push one item to the remote service.

        Returns:
            The action performed, or None when there was nothing to do
            (delete of a never-synced object, or a vetoed push)

        Raises:
            MappingNotFoundError: If the item names an unknown mapping
            EntityNotFoundError: If the entity to push no longer exists
        """
        mapping = await self.mappings.load(item.name)
        if mapping is None:
            raise MappingNotFoundError(item.name)

        op = PushOp(item.op)
        mapped_object = await self.resolver.resolve(item, mapping)

        if mapped_object.is_new and op == PushOp.DELETE:
            logger.debug(f"Item {item.item_id}: delete of unsynced {item.name} entity {item.entity_id}, skipping")
            return None

        action = SyncAction.for_push(op)
        try:
            event = self.notifier.notify(
                EventKind.PUSH_MAPPING_OBJECT,
                PushOpEvent(mapped_object=mapped_object, op=op.value, item=item),
            )
            if not event.allowed:
                self.notifier.notice("Push vetoed", **item.describe())
                return None

            if op == PushOp.DELETE:
                return await self.sync.push_delete(mapped_object, mapping)

            entity = await self.entities.load(mapping.entity_type, item.entity_id)
            if entity is None:
                raise EntityNotFoundError(mapping.entity_type, {"id": item.entity_id})
            mapped_object.entity = entity

            return await self.sync.push(mapped_object, mapping, entity)

        except Exception as e:
            self.notifier.notify(
                EventKind.PUSH_FAIL,
                PushOpEvent(
                    message=str(e),
                    error=e,
                    mapped_object=mapped_object,
                    op=op.value,
                    item=item,
                ),
            )
            if not mapped_object.is_new:
                mapped_object.record_sync(action, False, message=str(e), at=self._clock())
                try:
                    await self.mapped_objects.save(mapped_object)
                except Exception as save_error:
                    logger.error(
                        f"Could not record failure on mapped object {mapped_object.id}: {save_error}"
                    )
            raise


class PushQueue:
    """Push queue service: enqueueing and mapping-by-mapping processing."""

    def __init__(
        self,
        store: IQueueStore,
        processor: PushQueueProcessor,
        mappings: IMappingRepository,
        notifier: INotificationSink,
        settings: SyncSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.processor = processor
        self.mappings = mappings
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

    # ----------------------------------------
    # Enqueueing
    # ----------------------------------------

    async def enqueue(
        self,
        mapping_name: str,
        entity_id: Any,
        op: PushOp | str,
        mapped_object_id: Optional[int] = None,
    ) -> int:
        """Queue a push, merging with a pending item for the same entity.

        Returns:
            The queue item id
        """
        item = QueueItem(
            queue_name=self.store.queue_name,
            name=mapping_name,
            op=PushOp(op).value,
            entity_id=entity_id,
            mapped_object_id=mapped_object_id,
        )
        item_id = await self.store.upsert_item(item)
        logger.debug(f"Enqueued push {item.op} for {mapping_name} entity {entity_id} as item {item_id}")
        return item_id

    async def enqueue_entity_change(self, entity: Entity, op: PushOp | str) -> list[int]:
        """Queue a push for every mapping that pushes this kind of change.

        Mappings with push_async disabled are pushed immediately instead;
        a failed immediate push falls back to the queue.

        Returns:
            Ids of the queued items
        """
        op = PushOp(op)
        trigger = SyncAction.for_push(op)
        item_ids = []

        for mapping in await self.mappings.load_push_mappings():
            if not mapping.applies_to(entity) or not mapping.check_triggers(trigger):
                continue

            if not mapping.push_async and await self._push_now(mapping, entity, op):
                continue

            item_ids.append(await self.enqueue(mapping.id, entity.id, op))

        return item_ids

    async def _push_now(self, mapping: Mapping, entity: Entity, op: PushOp) -> bool:
        item = QueueItem(
            queue_name=self.store.queue_name,
            name=mapping.id,
            op=op.value,
            entity_id=entity.id,
        )
        try:
            await self.processor.process_item(item)
            return True
        except Exception as e:
            self.notifier.warning(
                "Immediate push failed, queued for retry",
                error=e,
                mapping=mapping.id,
                entity_id=entity.id,
                op=op.value,
            )
            return False

    # ----------------------------------------
    # Processing
    # ----------------------------------------

    async def process_queues(self, mappings: Optional[list[Mapping]] = None) -> dict[str, Any]:
        """Process the push queue for every due push mapping, or the given ones.

        Stops at the global push limit, and at the first suspended batch.

        Returns:
            Dict with per-mapping counts, total processed and suspend status
        """
        if mappings is None:
            mappings = await self.mappings.load_push_mappings()

        now = self._clock()
        global_limit = self.settings.global_push_limit
        total = 0
        per_mapping: dict[str, int] = {}
        suspended: Optional[str] = None

        for mapping in mappings:
            if not mapping.push_is_due(now):
                logger.debug(f"Push for {mapping.id} not due yet")
                continue

            remaining = None
            if global_limit > 0:
                remaining = global_limit - total
                if remaining <= 0:
                    self.notifier.notice("Global push limit reached", limit=global_limit)
                    break

            try:
                count = await self.process_queue(mapping, limit=remaining)
            except QueueSuspendedError as e:
                self.notifier.warning("Push queue suspended", error=e.error, mapping=mapping.id)
                suspended = str(e.error or e)
                break

            per_mapping[mapping.id] = count
            total += count

        return {
            "processed": total,
            "mappings": per_mapping,
            "suspended": suspended is not None,
            "error": suspended,
        }

    async def process_queue(self, mapping: Mapping, limit: Optional[int] = None) -> int:
        """Drain the push queue items of one mapping in batches.

        Args:
            mapping: Mapping whose items to push
            limit: Maximum items to process, None for no limit

        Returns:
            Number of items processed (succeeded or failed)

        Raises:
            QueueSuspendedError: If a batch was suspended; its items are released
        """
        batch_size = mapping.push_limit or self.settings.push_batch_size
        processed = 0

        while True:
            size = batch_size if limit is None else min(batch_size, limit - processed)
            if size <= 0:
                break

            items = await self.store.claim_items(size, self.settings.push_lease_seconds, name=mapping.id)
            if not items:
                break

            result = await self.processor.process(items)
            processed += result.processed

            handled = {i.item_id for i in result.succeeded}
            handled.update(i.item_id for i, _ in result.retrying)
            handled.update(i.item_id for i, _ in result.permanently_failed)
            leftovers = [i.item_id for i in items if i.item_id not in handled]
            if leftovers:
                await self.store.release_items(leftovers)

            if result.suspended:
                raise QueueSuspendedError(self.store.queue_name, result.outcome.error)

            if len(items) < size:
                break

        await self.mappings.save_checkpoint(mapping.id, last_push_time=self._clock())
        if processed:
            logger.info(f"Processed {processed} push item(s) for {mapping.label or mapping.id}")
        return processed
