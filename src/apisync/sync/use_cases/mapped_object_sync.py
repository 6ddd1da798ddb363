"""Push and pull operations for a single mapped object.

MappedObjectSync performs the remote or local writes for one correlation
and keeps the mapped object's bookkeeping fields current. Queue handling
(claiming, retries, outcomes) lives in the push processor and pull worker.
"""

import logging
import time
from typing import Callable, Optional

from ...api.exceptions import IntegrityError
from ..domain.entities import Entity, Mapping, MappedObject, SyncAction
from ..domain.events import EventKind, PullEvent, PushOpEvent, PushParamsEvent
from ..domain.ports import (
    IEntityStorage,
    IFieldMapper,
    IMappedObjectRepository,
    INotificationSink,
    IRemoteTransport,
)

logger = logging.getLogger(__name__)


class MappedObjectSync:
    """Synchronizes one mapped object in either direction.

    Example:
        sync = MappedObjectSync(transport, mapped_objects, entities, field_mapper, notifier)
        action = await sync.push(mapped_object, mapping, entity)
    """

    def __init__(
        self,
        transport: IRemoteTransport,
        mapped_objects: IMappedObjectRepository,
        entities: IEntityStorage,
        field_mapper: IFieldMapper,
        notifier: INotificationSink,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.mapped_objects = mapped_objects
        self.entities = entities
        self.field_mapper = field_mapper
        self.notifier = notifier
        self._clock = clock

    # ----------------------------------------
    # Push
    # ----------------------------------------

    async def push(
        self,
        mapped_object: MappedObject,
        mapping: Mapping,
        entity: Entity,
    ) -> SyncAction:
        """Create or update the remote record for an entity.

        Creates when the mapped object has no remote id yet, otherwise
        updates. Persists the mapped object with the remote id and a
        successful sync status.

        Returns:
            PUSH_CREATE or PUSH_UPDATE
        """
        params = self.field_mapper.to_remote(entity, mapping)
        event = self.notifier.notify(
            EventKind.PUSH_PARAMS,
            PushParamsEvent(mapped_object=mapped_object, entity=entity, params=params),
        )
        params = event.params

        if mapped_object.remote_id:
            await self.transport.update(mapping.remote_object_type, mapped_object.remote_id, params)
            action = SyncAction.PUSH_UPDATE
        else:
            mapped_object.remote_id = await self.transport.create(mapping.remote_object_type, params)
            action = SyncAction.PUSH_CREATE

        mapped_object.entity_id = entity.id
        mapped_object.entity_type = entity.entity_type
        mapped_object.entity_updated = entity.changed
        mapped_object.record_sync(action, True, at=self._clock())
        await self.mapped_objects.save(mapped_object)

        logger.debug(
            f"{action.value}: {mapping.id} entity {entity.id} -> "
            f"{mapping.remote_object_type} {mapped_object.remote_id}"
        )
        self.notifier.notify(
            EventKind.PUSH_SUCCESS,
            PushOpEvent(mapped_object=mapped_object, op=action.value),
        )
        return action

    async def push_delete(self, mapped_object: MappedObject, mapping: Mapping) -> SyncAction:
        """Delete the remote record, then the mapped object itself."""
        if mapped_object.remote_id:
            await self.transport.delete(mapping.remote_object_type, mapped_object.remote_id)
        await self.mapped_objects.delete(mapped_object)

        self.notifier.notify(
            EventKind.PUSH_SUCCESS,
            PushOpEvent(mapped_object=mapped_object, op=SyncAction.PUSH_DELETE.value),
        )
        return SyncAction.PUSH_DELETE

    # ----------------------------------------
    # Pull
    # ----------------------------------------

    async def pull(
        self,
        mapped_object: MappedObject,
        mapping: Mapping,
        entity: Entity,
        record: dict,
        action: SyncAction,
    ) -> Optional[SyncAction]:
        """Write a remote record into a local entity and persist the correlation.

        Returns:
            The action taken, or None when a PULL_PRESAVE subscriber vetoed it
        """
        entity.fields.update(self.field_mapper.to_local(record, mapping))

        event = self.notifier.notify(
            EventKind.PULL_PRESAVE,
            PullEvent(
                mapping=mapping,
                mapped_object=mapped_object,
                entity=entity,
                record=record,
                op=action.value,
            ),
        )
        if not event.allowed:
            self.notifier.notice(
                "Pull vetoed before save",
                mapping=mapping.id,
                remote_id=mapped_object.remote_id,
            )
            return None

        created = entity.is_new
        await self.entities.save(entity)

        mapped_object.entity_id = entity.id
        mapped_object.entity_type = entity.entity_type
        mapped_object.remote_id = mapped_object.remote_id or self.field_mapper.remote_id(record, mapping)
        mapped_object.entity_updated = entity.changed
        mapped_object.force_pull = False
        mapped_object.entity = entity
        mapped_object.record_sync(action, True, at=self._clock())
        try:
            await self.mapped_objects.save(mapped_object)
        except IntegrityError:
            # Another worker mapped this record first
            if created:
                await self.entities.delete(entity)
            raise

        logger.debug(
            f"{action.value}: {mapping.id} {mapping.remote_object_type} "
            f"{mapped_object.remote_id} -> entity {entity.id}"
        )
        return action

    async def pull_delete(self, mapped_object: MappedObject, mapping: Mapping) -> Optional[SyncAction]:
        """Delete the local entity and mapped object for a record deleted remotely.

        Returns:
            PULL_DELETE, or None when a DELETE_ALLOWED subscriber vetoed it
        """
        entity = None
        if mapped_object.entity_id is not None:
            entity = await self.entities.load(mapping.entity_type, mapped_object.entity_id)

        event = self.notifier.notify(
            EventKind.DELETE_ALLOWED,
            PullEvent(
                mapping=mapping,
                mapped_object=mapped_object,
                entity=entity,
                op=SyncAction.PULL_DELETE.value,
            ),
        )
        if not event.allowed:
            self.notifier.notice(
                "Delete vetoed",
                mapping=mapping.id,
                entity_id=mapped_object.entity_id,
                remote_id=mapped_object.remote_id,
            )
            return None

        if entity is not None:
            await self.entities.delete(entity)
        await self.mapped_objects.delete(mapped_object)

        logger.debug(
            f"pull_delete: {mapping.id} {mapped_object.remote_id} -> "
            f"entity {mapped_object.entity_id} removed"
        )
        return SyncAction.PULL_DELETE
