"""Mapped-object resolution for queue items.

Finds the MappedObject a queue item refers to, or builds a fresh unsaved
one when none exists yet. Resolution never returns None.
"""

import logging
from typing import Optional

from ..domain.entities import Mapping, MappedObject, QueueItem
from ..domain.ports import IMappedObjectRepository

logger = logging.getLogger(__name__)


class MappedObjectResolver:
    """Resolves queue items to mapped objects.

    Order:
        1. By ``item.mapped_object_id`` when present and loadable
        2. By the unique (mapping, entity_id) pair
        3. A new unsaved MappedObject for (mapping, entity_id)
    """

    def __init__(self, mapped_objects: IMappedObjectRepository):
        self.mapped_objects = mapped_objects

    async def resolve(self, item: QueueItem, mapping: Mapping) -> MappedObject:
        if item.mapped_object_id is not None:
            mapped_object = await self.mapped_objects.load(item.mapped_object_id)
            if mapped_object is not None and mapped_object.mapping == mapping.id:
                return mapped_object
            logger.debug(
                f"Mapped object {item.mapped_object_id} for item {item.item_id} "
                f"not found, falling back to entity lookup"
            )

        if item.entity_id is not None:
            mapped_object = await self.mapped_objects.load_by_entity(mapping.id, item.entity_id)
            if mapped_object is not None:
                return mapped_object

        return MappedObject(
            mapping=mapping.id,
            entity_type=mapping.entity_type,
            entity_id=item.entity_id,
        )

    async def resolve_by_remote_id(
        self,
        mapping: Mapping,
        remote_id: Optional[str],
    ) -> MappedObject:
        """Same fallback as resolve(), keyed on the remote side."""
        if remote_id is not None:
            mapped_object = await self.mapped_objects.load_by_remote_id(mapping.id, remote_id)
            if mapped_object is not None:
                return mapped_object

        return MappedObject(
            mapping=mapping.id,
            entity_type=mapping.entity_type,
            remote_id=remote_id,
        )
