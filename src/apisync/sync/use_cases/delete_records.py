"""Reconciliation of records deleted on the remote side.

For each mapping with the pull_delete trigger, compares the remote keys
against the local mapped objects and removes the local entities whose
remote record is gone.
"""

import logging
from typing import Any

from ..domain.entities import Mapping, SyncAction
from ..domain.ports import (
    IFieldMapper,
    IMappedObjectRepository,
    IMappingRepository,
    INotificationSink,
    IRemoteTransport,
)
from ..domain.query import SelectQuery
from .mapped_object_sync import MappedObjectSync

logger = logging.getLogger(__name__)


class DeletedRecordsHandler:
    """Deletes local copies of remote records that no longer exist."""

    def __init__(
        self,
        mappings: IMappingRepository,
        transport: IRemoteTransport,
        mapped_objects: IMappedObjectRepository,
        field_mapper: IFieldMapper,
        sync: MappedObjectSync,
        notifier: INotificationSink,
    ):
        self.mappings = mappings
        self.transport = transport
        self.mapped_objects = mapped_objects
        self.field_mapper = field_mapper
        self.sync = sync
        self.notifier = notifier

    async def process_deleted_records(self) -> dict[str, Any]:
        """Run one reconciliation pass over every pull_delete mapping.

        Returns:
            Dict of deleted counts per mapping
        """
        deleted: dict[str, int] = {}
        for mapping in await self.mappings.load_pull_mappings():
            if not mapping.check_triggers(SyncAction.PULL_DELETE):
                continue
            deleted[mapping.id] = await self._process_mapping(mapping)

        total = sum(deleted.values())
        if total:
            logger.info(f"Removed {total} locally mapped record(s) deleted remotely")
        return {"deleted": total, "mappings": deleted}

    async def _remote_ids(self, mapping: Mapping) -> set[str]:
        query = SelectQuery(mapping.remote_object_type).set_fields([mapping.key_field]).finalize()
        records = await self.transport.query(query)
        ids = set()
        for record in records:
            remote_id = self.field_mapper.remote_id(record, mapping)
            if remote_id is not None:
                ids.add(remote_id)
        return ids

    async def _process_mapping(self, mapping: Mapping) -> int:
        try:
            remote_ids = await self._remote_ids(mapping)
            mapped_objects = await self.mapped_objects.load_by_mapping(mapping.id)
        except Exception as e:
            self.notifier.error("Deleted-records check failed", error=e, mapping=mapping.id)
            return 0

        orphans = [
            m for m in mapped_objects
            if m.remote_id is not None and m.remote_id not in remote_ids
        ]
        if not orphans:
            return 0

        if not remote_ids:
            self.notifier.warning(
                "Remote returned no records, refusing to delete every mapped entity",
                mapping=mapping.id,
                mapped_objects=len(orphans),
            )
            return 0

        count = 0
        for mapped_object in orphans:
            try:
                if await self.sync.pull_delete(mapped_object, mapping):
                    count += 1
            except Exception as e:
                self.notifier.error(
                    "Failed to delete local copy of removed record",
                    error=e,
                    mapping=mapping.id,
                    remote_id=mapped_object.remote_id,
                    entity_id=mapped_object.entity_id,
                )
        return count
