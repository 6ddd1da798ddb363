"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Entities: queue items, mappings, mapped objects, tagged outcomes
- Ports: Abstract interfaces defining contracts for adapters
- Query: the select-query builder handed to pull query hooks
- Events: notification kinds, payloads and the in-process dispatcher

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    DrainResult,
    Entity,
    FieldDirection,
    FieldMapping,
    Mapping,
    MappedObject,
    OutcomeKind,
    ProcessOutcome,
    PullOp,
    PushBatchResult,
    PushOp,
    QueueItem,
    RetryPolicy,
    SyncAction,
)
from .events import (
    DrainEvent,
    EventDispatcher,
    EventKind,
    PullEvent,
    PushOpEvent,
    PushParamsEvent,
    SyncEvent,
)
from .ports import (
    IEntityStorage,
    IFieldMapper,
    IMappedObjectRepository,
    IMappingRepository,
    INotificationSink,
    IQueueStore,
    IRemoteTransport,
    ITokenProvider,
)
from .query import FinalizedQuery, SelectQuery

__all__ = [
    # Entities
    "DrainResult",
    "Entity",
    "FieldDirection",
    "FieldMapping",
    "Mapping",
    "MappedObject",
    "OutcomeKind",
    "ProcessOutcome",
    "PullOp",
    "PushBatchResult",
    "PushOp",
    "QueueItem",
    "RetryPolicy",
    "SyncAction",
    # Events
    "DrainEvent",
    "EventDispatcher",
    "EventKind",
    "PullEvent",
    "PushOpEvent",
    "PushParamsEvent",
    "SyncEvent",
    # Ports
    "IEntityStorage",
    "IFieldMapper",
    "IMappedObjectRepository",
    "IMappingRepository",
    "INotificationSink",
    "IQueueStore",
    "IRemoteTransport",
    "ITokenProvider",
    # Query
    "FinalizedQuery",
    "SelectQuery",
]
