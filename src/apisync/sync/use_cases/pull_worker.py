"""Pull queue worker: applies one queued remote record to local storage.

The worker never raises for expected failures. It returns a tagged
ProcessOutcome the drain loop branches on:

    DONE     record applied, skipped or vetoed; the item is deleted
    REQUEUE  lost a uniqueness race; retry in a later pass, no failure counted
    SUSPEND  remote credentials or circuit unusable; stop draining
    FAILED   anything else; the retry policy applies
"""

import logging
from typing import Optional

from ...api.exceptions import AuthenticationError, CircuitOpenError, IntegrityError
from ..domain.entities import (
    Entity,
    Mapping,
    MappedObject,
    ProcessOutcome,
    PullOp,
    QueueItem,
    SyncAction,
)
from ..domain.events import EventKind, PullEvent
from ..domain.ports import (
    IEntityStorage,
    IFieldMapper,
    IMappedObjectRepository,
    IMappingRepository,
    INotificationSink,
)
from .mapped_object_sync import MappedObjectSync
from .resolve_mapped_object import MappedObjectResolver

logger = logging.getLogger(__name__)


class PullQueueWorker:
    """Processes pull queue items into local entities."""

    def __init__(
        self,
        mappings: IMappingRepository,
        mapped_objects: IMappedObjectRepository,
        entities: IEntityStorage,
        field_mapper: IFieldMapper,
        sync: MappedObjectSync,
        notifier: INotificationSink,
        resolver: Optional[MappedObjectResolver] = None,
    ):
        self.mappings = mappings
        self.mapped_objects = mapped_objects
        self.entities = entities
        self.field_mapper = field_mapper
        self.sync = sync
        self.notifier = notifier
        self.resolver = resolver or MappedObjectResolver(mapped_objects)

    async def process_item(self, item: QueueItem) -> ProcessOutcome:
        mapping = await self.mappings.load(item.name)
        if mapping is None:
            self.notifier.warning("Pull item for unknown mapping dropped", **item.describe())
            return ProcessOutcome.done()

        try:
            if item.op == PullOp.DELETE.value:
                action = await self._delete(item, mapping)
            else:
                action = await self._upsert(item, mapping)

        except (AuthenticationError, CircuitOpenError) as e:
            return ProcessOutcome.suspend(e)

        except IntegrityError as e:
            logger.info(f"Pull item {item.item_id} lost a uniqueness race, requeueing: {e}")
            return ProcessOutcome.requeue(str(e))

        except Exception as e:
            self.notifier.error("Pull failed", error=e, **item.describe())
            return ProcessOutcome.failed(e)

        return ProcessOutcome.done(action)

    def _remote_id(self, item: QueueItem, mapping: Mapping) -> Optional[str]:
        return item.payload.get("remote_id") or self.field_mapper.remote_id(item.record, mapping)

    def should_update(
        self,
        item: QueueItem,
        mapping: Mapping,
        mapped_object: MappedObject,
        entity: Entity,
    ) -> bool:
        """Whether an existing entity should take the remote record's values.

        True when a pull is forced, when the record carries no trigger date,
        or when the record changed after the local entity did.
        """
        if item.force_pull or mapped_object.force_pull:
            return True

        remote_updated = self.field_mapper.remote_updated(item.record, mapping)
        if remote_updated is None:
            return True

        local_updated = entity.changed or mapped_object.entity_updated or 0
        return remote_updated > local_updated

    async def _upsert(self, item: QueueItem, mapping: Mapping) -> Optional[SyncAction]:
        record = item.record
        remote_id = self._remote_id(item, mapping)
        mapped_object = await self.resolver.resolve_by_remote_id(mapping, remote_id)

        entity = None
        if mapped_object.entity_id is not None:
            entity = await self.entities.load(mapping.entity_type, mapped_object.entity_id)

        if entity is None:
            if not mapping.check_triggers(SyncAction.PULL_CREATE):
                logger.debug(f"{mapping.id}: pull_create disabled, skipping {remote_id}")
                return None
            entity = Entity(entity_type=mapping.entity_type, bundle=mapping.bundle)
            action = SyncAction.PULL_CREATE
        else:
            if not mapping.check_triggers(SyncAction.PULL_UPDATE):
                logger.debug(f"{mapping.id}: pull_update disabled, skipping {remote_id}")
                return None
            if not self.should_update(item, mapping, mapped_object, entity):
                self.notifier.notice(
                    "Local entity is newer than the remote record, skipping",
                    mapping=mapping.id,
                    remote_id=remote_id,
                    entity_id=entity.id,
                )
                return None
            action = SyncAction.PULL_UPDATE

        event = self.notifier.notify(
            EventKind.PULL_PREPULL,
            PullEvent(
                mapping=mapping,
                mapped_object=mapped_object,
                entity=entity,
                record=record,
                op=action.value,
            ),
        )
        if not event.allowed:
            self.notifier.notice("Pull vetoed", mapping=mapping.id, remote_id=remote_id)
            return None

        return await self.sync.pull(mapped_object, mapping, entity, record, action)

    async def _delete(self, item: QueueItem, mapping: Mapping) -> Optional[SyncAction]:
        if not mapping.check_triggers(SyncAction.PULL_DELETE):
            return None

        remote_id = self._remote_id(item, mapping)
        mapped_object = await self.mapped_objects.load_by_remote_id(mapping.id, remote_id)
        if mapped_object is None:
            logger.debug(f"{mapping.id}: nothing mapped to deleted record {remote_id}")
            return None

        return await self.sync.pull_delete(mapped_object, mapping)
