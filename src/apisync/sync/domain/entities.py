"""Domain entities for the API-Sync queue engine.

These are pure data structures with no infrastructure dependencies.
Queue items, mapped objects and mappings mirror the rows in db/schema.sql.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .query import SelectQuery


# ============================================
# Operations and Actions
# ============================================

class PushOp(str, Enum):
    """Operation carried by a push queue item."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PullOp(str, Enum):
    """Operation carried by a pull queue item."""
    UPSERT = "upsert"
    DELETE = "delete"


class SyncAction(str, Enum):
    """Last sync action recorded on a mapped object.

    The values double as the mapping trigger names.
    """
    PUSH_CREATE = "push_create"
    PUSH_UPDATE = "push_update"
    PUSH_DELETE = "push_delete"
    PULL_CREATE = "pull_create"
    PULL_UPDATE = "pull_update"
    PULL_DELETE = "pull_delete"

    @classmethod
    def for_push(cls, op: "PushOp | str") -> "SyncAction":
        return cls(f"push_{PushOp(op).value}")


class FieldDirection(str, Enum):
    """Which way a field correspondence is synchronized."""
    SYNC = "sync"
    PUSH = "push"
    PULL = "pull"


# ============================================
# Mapping
# ============================================

@dataclass
class FieldMapping:
    """One correspondence between a local field and a remote field."""
    local_field: str
    remote_field: str
    direction: FieldDirection = FieldDirection.SYNC

    @property
    def pushes(self) -> bool:
        return self.direction in (FieldDirection.SYNC, FieldDirection.PUSH)

    @property
    def pulls(self) -> bool:
        return self.direction in (FieldDirection.SYNC, FieldDirection.PULL)


@dataclass
class Mapping:
    """Synchronization configuration between a local entity type and a remote object type.

    Read-only to the queue engine except for the last_pull_time /
    last_push_time checkpoints, which are persisted through the mapping
    repository.
    """
    id: str
    entity_type: str
    remote_object_type: str
    key_field: str = "Id"
    label: Optional[str] = None
    bundle: Optional[str] = None
    field_mappings: list[FieldMapping] = field(default_factory=list)
    pull_trigger_date: Optional[str] = None
    sync_triggers: set[SyncAction] = field(default_factory=set)
    pull_standalone: bool = False
    push_standalone: bool = False
    push_async: bool = True
    push_limit: int = 0
    push_retries: int = 0
    push_frequency: int = 0
    pull_frequency: int = 0
    pull_where_clause: list[tuple[str, str, Any]] = field(default_factory=list)
    weight: int = 0

    # Checkpoint state (unix timestamps)
    last_pull_time: float = 0.0
    last_push_time: float = 0.0

    def check_triggers(self, *triggers: SyncAction) -> bool:
        """True when any of the given triggers is enabled."""
        return any(trigger in self.sync_triggers for trigger in triggers)

    @property
    def does_push(self) -> bool:
        return self.check_triggers(
            SyncAction.PUSH_CREATE, SyncAction.PUSH_UPDATE, SyncAction.PUSH_DELETE
        )

    @property
    def does_pull(self) -> bool:
        return self.check_triggers(
            SyncAction.PULL_CREATE, SyncAction.PULL_UPDATE, SyncAction.PULL_DELETE
        )

    def applies_to(self, entity: "Entity") -> bool:
        """Whether entity changes of this type/bundle feed this mapping."""
        if entity.entity_type != self.entity_type:
            return False
        return self.bundle is None or entity.bundle == self.bundle

    def pulled_remote_fields(self) -> list[str]:
        """Remote fields selected by the pull query, key and trigger date included."""
        fields = [self.key_field]
        for mapping in self.field_mappings:
            if mapping.pulls and mapping.remote_field not in fields:
                fields.append(mapping.remote_field)
        if self.pull_trigger_date and self.pull_trigger_date not in fields:
            fields.append(self.pull_trigger_date)
        return fields

    def build_pull_query(self, start: float = 0, stop: float = 0) -> SelectQuery:
        """Build the (still mutable) pull query for records changed in (start, stop].

        Args:
            start: Lower bound, defaults to the last pull checkpoint
            stop: Upper bound, 0 for none
        """
        query = SelectQuery(self.remote_object_type)
        query.set_fields(self.pulled_remote_fields())

        start = start or self.last_pull_time
        if self.pull_trigger_date:
            if start > 0:
                query.add_condition(self.pull_trigger_date, ">", _odata_datetime(start))
            if stop > 0:
                query.add_condition(self.pull_trigger_date, "<=", _odata_datetime(stop))
            query.add_order(self.pull_trigger_date, "asc")

        for remote_field, operator, value in self.pull_where_clause:
            query.add_condition(remote_field, operator, value)

        return query

    def push_is_due(self, now: float) -> bool:
        return self.push_frequency <= 0 or now >= self.last_push_time + self.push_frequency

    def pull_is_due(self, now: float) -> bool:
        return self.pull_frequency <= 0 or now >= self.last_pull_time + self.pull_frequency


def _odata_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


# ============================================
# Local Entity
# ============================================

@dataclass
class Entity:
    """A local entity as seen through entity storage."""
    entity_type: str
    id: Optional[Any] = None
    bundle: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)
    changed: Optional[float] = None

    @property
    def is_new(self) -> bool:
        return self.id is None


# ============================================
# Mapped Object
# ============================================

@dataclass
class MappedObject:
    """Durable correlation between one local entity and one remote record under one mapping.

    At most one exists per (mapping, entity_id) and per (mapping, remote_id);
    the database constraints enforce this.
    """
    mapping: str
    entity_type: str
    id: Optional[int] = None
    entity_id: Optional[Any] = None
    remote_id: Optional[str] = None
    last_sync_action: Optional[SyncAction] = None
    last_sync_status: Optional[bool] = None
    last_sync_message: Optional[str] = None
    revision_log_message: Optional[str] = None
    entity_updated: Optional[float] = None
    changed: Optional[float] = None
    force_pull: bool = False

    # Attached in memory by the processors, never persisted
    entity: Optional[Entity] = field(default=None, repr=False, compare=False)

    @property
    def is_new(self) -> bool:
        return self.id is None

    def record_sync(
        self,
        action: SyncAction,
        success: bool,
        message: Optional[str] = None,
        at: Optional[float] = None,
    ) -> None:
        """Refresh the last-sync bookkeeping fields."""
        self.last_sync_action = action
        self.last_sync_status = success
        self.last_sync_message = message
        if message:
            self.revision_log_message = message
        if at is not None:
            self.changed = at


# ============================================
# Queue
# ============================================

@dataclass
class RetryPolicy:
    """Failure ceiling and backoff applied by IQueueStore.fail_item.

    Both values are required configuration.
    """
    max_fails: int
    backoff_seconds: float

    def __post_init__(self):
        if self.max_fails < 1:
            raise ValueError("max_fails must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    def is_exhausted(self, failures: int, error: Optional[Exception] = None) -> bool:
        """True when an item with this many failures must be dropped."""
        from ...api.exceptions import MappingNotFoundError

        if isinstance(error, MappingNotFoundError):
            return True
        return failures >= self.max_fails

    def next_attempt_at(self, now: float) -> float:
        return now + self.backoff_seconds


@dataclass
class QueueItem:
    """One pending sync operation in a queue.

    ``expire`` is the lease deadline; 0 means the item is not leased.
    ``payload`` holds the remote record snapshot for pull items.
    """
    queue_name: str
    name: str
    op: str
    item_id: Optional[int] = None
    entity_id: Optional[Any] = None
    mapped_object_id: Optional[int] = None
    failures: int = 0
    expire: float = 0.0
    created: float = 0.0
    updated: float = 0.0
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def record(self) -> dict[str, Any]:
        return self.payload.get("record") or {}

    @property
    def force_pull(self) -> bool:
        return bool(self.payload.get("force_pull", False))

    def is_claimable(self, now: float) -> bool:
        return self.expire == 0 or self.expire <= now

    def describe(self) -> dict[str, Any]:
        """Context for logs and notifications."""
        return {
            "item_id": self.item_id,
            "queue": self.queue_name,
            "mapping": self.name,
            "op": self.op,
            "entity_id": self.entity_id,
            "failures": self.failures,
        }


# ============================================
# Outcomes
# ============================================

class OutcomeKind(str, Enum):
    """What the drain loop should do with a processed item."""
    DONE = "done"
    REQUEUE = "requeue"
    SUSPEND = "suspend"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessOutcome:
    """Tagged result of processing one queue item."""
    kind: OutcomeKind
    error: Optional[Exception] = None
    action: Optional[SyncAction] = None
    reason: Optional[str] = None

    @classmethod
    def done(cls, action: Optional[SyncAction] = None) -> "ProcessOutcome":
        return cls(OutcomeKind.DONE, action=action)

    @classmethod
    def requeue(cls, reason: str) -> "ProcessOutcome":
        return cls(OutcomeKind.REQUEUE, reason=reason)

    @classmethod
    def suspend(cls, error: Exception) -> "ProcessOutcome":
        return cls(OutcomeKind.SUSPEND, error=error)

    @classmethod
    def failed(cls, error: Exception) -> "ProcessOutcome":
        return cls(OutcomeKind.FAILED, error=error)


@dataclass
class DrainResult:
    """Summary of one drain pass over a queue."""
    queue_name: str
    count: int = 0
    requeued: int = 0
    failed: int = 0
    permanently_failed: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue_name,
            "count": self.count,
            "requeued": self.requeued,
            "failed": self.failed,
            "permanently_failed": self.permanently_failed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class PushBatchResult:
    """Result of handing one batch of push items to the processor.

    ``outcome`` is DONE unless the batch was suspended before any item was
    touched, in which case it is SUSPEND carrying the auth error.
    """
    outcome: ProcessOutcome = field(default_factory=ProcessOutcome.done)
    succeeded: list[QueueItem] = field(default_factory=list)
    retrying: list[tuple[QueueItem, Exception]] = field(default_factory=list)
    permanently_failed: list[tuple[QueueItem, Exception]] = field(default_factory=list)

    @property
    def suspended(self) -> bool:
        return self.outcome.kind == OutcomeKind.SUSPEND

    @property
    def processed(self) -> int:
        return len(self.succeeded) + len(self.retrying) + len(self.permanently_failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "suspended": self.suspended,
            "error": str(self.outcome.error) if self.outcome.error else None,
            "succeeded": len(self.succeeded),
            "retrying": len(self.retrying),
            "permanently_failed": len(self.permanently_failed),
        }
