"""Notification kinds, event payloads and the in-process dispatcher.

The queue engine publishes events to an INotificationSink and never waits
on, or fails because of, a subscriber. Subscribers are plain callables
``(kind, event) -> None`` registered on an EventDispatcher. Veto-style
events (pre-push, pre-pull, delete-allowed) carry an ``allowed`` flag that
subscribers clear with ``disallow()``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .entities import Entity, Mapping, MappedObject, QueueItem
from .ports import INotificationSink

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Names of the notifications published by the engine."""
    PUSH_MAPPING_OBJECT = "apisync.push_mapping_object"
    PUSH_PARAMS = "apisync.push_params"
    PUSH_SUCCESS = "apisync.push_success"
    PUSH_FAIL = "apisync.push_fail"
    PULL_PREPULL = "apisync.pull_prepull"
    PULL_PRESAVE = "apisync.pull_presave"
    DELETE_ALLOWED = "apisync.delete_allowed"
    QUEUE_DRAIN_STARTED = "apisync.queue_drain_started"
    QUEUE_DRAIN_FINISHED = "apisync.queue_drain_finished"
    ERROR = "apisync.error"
    WARNING = "apisync.warning"
    NOTICE = "apisync.notice"


# ============================================
# Event Payloads
# ============================================

@dataclass
class SyncEvent:
    """Informational event (notice, warning, error)."""
    message: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    error: Optional[Exception] = None

    def format(self) -> str:
        """Message with context appended, for log lines."""
        if not self.context:
            return self.message
        detail = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({detail})"


@dataclass
class VetoableEvent(SyncEvent):
    allowed: bool = True

    def disallow(self) -> None:
        self.allowed = False


@dataclass
class PushOpEvent(VetoableEvent):
    """Fired before a remote push or delete for one mapped object."""
    mapped_object: Optional[MappedObject] = None
    op: Optional[str] = None
    item: Optional[QueueItem] = None


@dataclass
class PushParamsEvent(SyncEvent):
    """Fired with the outgoing remote field values; subscribers may alter ``params``."""
    mapped_object: Optional[MappedObject] = None
    entity: Optional[Entity] = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class PullEvent(VetoableEvent):
    """Fired before (PULL_PREPULL) and after mapping (PULL_PRESAVE) a pulled record."""
    mapping: Optional[Mapping] = None
    mapped_object: Optional[MappedObject] = None
    entity: Optional[Entity] = None
    record: dict[str, Any] = field(default_factory=dict)
    op: Optional[str] = None


@dataclass
class DrainEvent(SyncEvent):
    """Brackets a drain pass over one queue."""
    queue_name: str = ""
    count: int = 0
    elapsed_seconds: float = 0.0


Subscriber = Callable[[EventKind, SyncEvent], None]


# ============================================
# Dispatcher
# ============================================

class EventDispatcher(INotificationSink):
    """Synchronous observer list.

    Subscribers run inline in registration order. A subscriber that raises
    is logged and skipped; the publisher never sees the exception.
    """

    def __init__(self):
        self._subscribers: dict[EventKind, list[Subscriber]] = defaultdict(list)
        self._catch_all: list[Subscriber] = []

    def subscribe(self, kind: EventKind, subscriber: Subscriber) -> None:
        self._subscribers[kind].append(subscriber)

    def subscribe_all(self, subscriber: Subscriber) -> None:
        self._catch_all.append(subscriber)

    def notify(self, kind: EventKind, event: SyncEvent) -> SyncEvent:
        for subscriber in [*self._subscribers.get(kind, []), *self._catch_all]:
            try:
                subscriber(kind, event)
            except Exception as e:
                logger.error(
                    f"Subscriber {getattr(subscriber, '__name__', subscriber)!r} "
                    f"failed handling {kind.value}: {e}",
                    exc_info=True,
                )
        return event

    def error(self, message: str, error: Optional[Exception] = None, **context) -> SyncEvent:
        return self.notify(EventKind.ERROR, SyncEvent(message, context, error))

    def warning(self, message: str, error: Optional[Exception] = None, **context) -> SyncEvent:
        return self.notify(EventKind.WARNING, SyncEvent(message, context, error))

    def notice(self, message: str, **context) -> SyncEvent:
        return self.notify(EventKind.NOTICE, SyncEvent(message, context))
