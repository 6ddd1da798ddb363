"""Use cases layer - Queue processing orchestration.

This layer contains the classes that drive the push and pull queues:
- Resolve queue items to mapped objects (MappedObjectResolver)
- Push local changes to the remote service (PushQueueProcessor, PushQueue)
- Populate and drain the pull queue (PullQueuePopulator, PullQueueDrainer, PullQueueWorker)
- Reconcile records deleted remotely (DeletedRecordsHandler)

Use cases depend only on ports, not concrete implementations.
"""

from .delete_records import DeletedRecordsHandler
from .mapped_object_sync import MappedObjectSync
from .pull_queue import PullQueueDrainer, PullQueuePopulator, QueryHook
from .pull_worker import PullQueueWorker
from .push_queue import PushQueue, PushQueueProcessor
from .resolve_mapped_object import MappedObjectResolver

__all__ = [
    "DeletedRecordsHandler",
    "MappedObjectResolver",
    "MappedObjectSync",
    "PullQueueDrainer",
    "PullQueuePopulator",
    "PullQueueWorker",
    "PushQueue",
    "PushQueueProcessor",
    "QueryHook",
]
