"""In-memory mapped-object repository and entity storage.

Used in fetch-only mode (no DATABASE_URL) and in tests. The mapped-object
repository enforces the same (mapping, entity_id) and (mapping, remote_id)
uniqueness as the database and raises IntegrityError on a clash.
"""

import itertools
import time
from dataclasses import replace
from typing import Any, Callable, Optional

from ...api.exceptions import IntegrityError
from ..domain.entities import Entity, MappedObject
from ..domain.ports import IEntityStorage, IMappedObjectRepository


def _copy(mapped_object: MappedObject) -> MappedObject:
    return replace(mapped_object, entity=None)


class InMemoryMappedObjectRepository(IMappedObjectRepository):
    """Mapped objects kept in a dict keyed by id."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._objects: dict[int, MappedObject] = {}
        self._ids = itertools.count(1)

    async def load(self, mapped_object_id: int) -> Optional[MappedObject]:
        stored = self._objects.get(mapped_object_id)
        return _copy(stored) if stored else None

    async def load_by_entity(self, mapping: str, entity_id: Any) -> Optional[MappedObject]:
        if entity_id is None:
            return None
        for stored in self._objects.values():
            if stored.mapping == mapping and str(stored.entity_id) == str(entity_id):
                return _copy(stored)
        return None

    async def load_by_remote_id(self, mapping: str, remote_id: str) -> Optional[MappedObject]:
        if remote_id is None:
            return None
        for stored in self._objects.values():
            if stored.mapping == mapping and stored.remote_id == str(remote_id):
                return _copy(stored)
        return None

    async def load_by_mapping(self, mapping: str) -> list[MappedObject]:
        return [_copy(m) for _, m in sorted(self._objects.items()) if m.mapping == mapping]

    async def save(self, mapped_object: MappedObject) -> MappedObject:
        self._check_unique(mapped_object)
        mapped_object.changed = self._clock()
        if mapped_object.is_new:
            mapped_object.id = next(self._ids)
        self._objects[mapped_object.id] = _copy(mapped_object)
        return mapped_object

    def _check_unique(self, mapped_object: MappedObject) -> None:
        for stored in self._objects.values():
            if stored.id == mapped_object.id or stored.mapping != mapped_object.mapping:
                continue
            if (
                mapped_object.entity_id is not None
                and str(stored.entity_id) == str(mapped_object.entity_id)
            ):
                raise IntegrityError(
                    f"Mapped object for {mapped_object.mapping} entity "
                    f"{mapped_object.entity_id} already exists",
                    constraint="apisync_mapped_object_entity_key",
                )
            if mapped_object.remote_id is not None and stored.remote_id == mapped_object.remote_id:
                raise IntegrityError(
                    f"Mapped object for {mapped_object.mapping} remote "
                    f"{mapped_object.remote_id} already exists",
                    constraint="apisync_mapped_object_remote_key",
                )

    async def delete(self, mapped_object: MappedObject) -> None:
        if mapped_object.id is not None:
            self._objects.pop(mapped_object.id, None)

    def __len__(self) -> int:
        return len(self._objects)


class InMemoryEntityStorage(IEntityStorage):
    """Entities kept in a dict keyed by (entity_type, id)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entities: dict[tuple[str, str], Entity] = {}
        self._ids = itertools.count(1)

    async def load(self, entity_type: str, entity_id: Any) -> Optional[Entity]:
        if entity_id is None:
            return None
        stored = self._entities.get((entity_type, str(entity_id)))
        return replace(stored, fields=dict(stored.fields)) if stored else None

    async def save(self, entity: Entity) -> Entity:
        if entity.is_new:
            entity.id = next(self._ids)
        entity.changed = self._clock()
        self._entities[(entity.entity_type, str(entity.id))] = replace(
            entity, fields=dict(entity.fields)
        )
        return entity

    async def delete(self, entity: Entity) -> None:
        if not entity.is_new:
            self._entities.pop((entity.entity_type, str(entity.id)), None)

    def all(self, entity_type: Optional[str] = None) -> list[Entity]:
        return [
            e for e in self._entities.values()
            if entity_type is None or e.entity_type == entity_type
        ]
