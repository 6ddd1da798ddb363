"""Port interfaces for the API-Sync queue engine.

Ports define the contracts the engine needs from infrastructure. Adapters
implement them (PostgreSQL, OData over HTTP, in-memory), and use cases
receive them through their constructors.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .entities import Entity, Mapping, MappedObject, QueueItem
    from .query import FinalizedQuery


# ============================================
# Queue Store
# ============================================

class IQueueStore(ABC):
    """Durable, ordered storage of queue items with lease-based claiming.

    Claiming is atomic: two concurrent claimants never receive the same
    item. An item whose lease has expired is claimable again.
    """

    queue_name: str

    @abstractmethod
    async def create_item(self, item: "QueueItem") -> int:
        """Insert a new item.

        Returns:
            The assigned item id
        """
        ...

    @abstractmethod
    async def upsert_item(self, item: "QueueItem") -> int:
        """Insert an item, or merge it into an unclaimed item for the same (name, entity_id).

        Returns:
            The id of the inserted or merged item
        """
        ...

    @abstractmethod
    async def claim_item(
        self,
        lease_seconds: float,
        exclude: frozenset[int] = frozenset(),
    ) -> Optional["QueueItem"]:
        """Lease the oldest claimable item.

        Args:
            lease_seconds: How long the item stays invisible to other claimants
            exclude: Item ids that must not be returned

        Returns:
            The leased item, or None when nothing is claimable
        """
        ...

    @abstractmethod
    async def claim_items(
        self,
        limit: int,
        lease_seconds: float,
        name: Optional[str] = None,
    ) -> list["QueueItem"]:
        """Lease up to ``limit`` claimable items, optionally for one mapping only."""
        ...

    @abstractmethod
    async def delete_item(self, item_id: int) -> None:
        ...

    @abstractmethod
    async def release_item(self, item_id: int) -> None:
        """Clear the lease so the item is immediately claimable."""
        ...

    @abstractmethod
    async def release_items(self, item_ids: list[int]) -> None:
        ...

    @abstractmethod
    async def fail_item(self, error: Exception, item: "QueueItem") -> bool:
        """Record a failed attempt.

        Increments the failure count. When the retry policy is exhausted the
        item is removed, otherwise it is leased until the backoff elapses.

        Returns:
            True if the item was permanently removed
        """
        ...

    @abstractmethod
    async def number_of_items(self) -> int:
        ...

    @abstractmethod
    async def delete_items_by_entity(self, name: str, entity_id: Any) -> int:
        """Drop every pending item for one entity under one mapping.

        Returns:
            Number of items removed
        """
        ...


# ============================================
# Mapping and Mapped Object Repositories
# ============================================

class IMappingRepository(ABC):
    """Read access to mapping configuration plus checkpoint persistence."""

    @abstractmethod
    async def load(self, mapping_id: str) -> Optional["Mapping"]:
        ...

    @abstractmethod
    async def load_all(self) -> list["Mapping"]:
        """All mappings ordered by weight, then id."""
        ...

    async def load_push_mappings(self) -> list["Mapping"]:
        return [m for m in await self.load_all() if m.does_push]

    async def load_pull_mappings(self) -> list["Mapping"]:
        return [m for m in await self.load_all() if m.does_pull]

    async def load_standalone_pull_mappings(self) -> list["Mapping"]:
        return [m for m in await self.load_pull_mappings() if m.pull_standalone]

    async def load_standalone_push_mappings(self) -> list["Mapping"]:
        return [m for m in await self.load_push_mappings() if m.push_standalone]

    @abstractmethod
    async def save_checkpoint(
        self,
        mapping_id: str,
        last_pull_time: Optional[float] = None,
        last_push_time: Optional[float] = None,
    ) -> None:
        """Persist the pull and/or push checkpoint for a mapping."""
        ...


class IMappedObjectRepository(ABC):
    """Persistence for mapped objects.

    The (mapping, entity_id) and (mapping, remote_id) pairs are unique;
    save() raises IntegrityError when a concurrent writer got there first.
    """

    @abstractmethod
    async def load(self, mapped_object_id: int) -> Optional["MappedObject"]:
        ...

    @abstractmethod
    async def load_by_entity(self, mapping: str, entity_id: Any) -> Optional["MappedObject"]:
        ...

    @abstractmethod
    async def load_by_remote_id(self, mapping: str, remote_id: str) -> Optional["MappedObject"]:
        ...

    @abstractmethod
    async def load_by_mapping(self, mapping: str) -> list["MappedObject"]:
        ...

    @abstractmethod
    async def save(self, mapped_object: "MappedObject") -> "MappedObject":
        """Insert or update; assigns ``id`` on insert."""
        ...

    @abstractmethod
    async def delete(self, mapped_object: "MappedObject") -> None:
        ...


# ============================================
# Entity Storage
# ============================================

class IEntityStorage(ABC):
    """Local entity storage."""

    @abstractmethod
    async def load(self, entity_type: str, entity_id: Any) -> Optional["Entity"]:
        ...

    @abstractmethod
    async def save(self, entity: "Entity") -> "Entity":
        """Insert or update; assigns ``id`` on insert and refreshes ``changed``."""
        ...

    @abstractmethod
    async def delete(self, entity: "Entity") -> None:
        ...


# ============================================
# Remote Side
# ============================================

class IRemoteTransport(ABC):
    """Remote record operations."""

    @abstractmethod
    async def create(self, object_type: str, fields: dict[str, Any]) -> str:
        """Create a remote record.

        Returns:
            The remote id of the new record
        """
        ...

    @abstractmethod
    async def update(self, object_type: str, remote_id: str, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, object_type: str, remote_id: str) -> None:
        ...

    @abstractmethod
    async def read(self, object_type: str, remote_id: str) -> Optional[dict[str, Any]]:
        """Fetch a single record, or None if it does not exist."""
        ...

    @abstractmethod
    async def query(self, query: "FinalizedQuery") -> list[dict[str, Any]]:
        """Run a finalized select query, following pagination to the end."""
        ...


class ITokenProvider(ABC):
    """Credential provider for the remote service."""

    token_type: str = "Bearer"

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """Return a usable token, or None when none is available."""
        ...

    def invalidate(self) -> None:
        """Forget any cached token (called after the remote answers 401)."""


# ============================================
# Field Mapping
# ============================================

class IFieldMapper(ABC):
    """Translates between local entity fields and remote record fields."""

    @abstractmethod
    def to_remote(self, entity: "Entity", mapping: "Mapping") -> dict[str, Any]:
        ...

    @abstractmethod
    def to_local(self, record: dict[str, Any], mapping: "Mapping") -> dict[str, Any]:
        ...

    @abstractmethod
    def remote_id(self, record: dict[str, Any], mapping: "Mapping") -> Optional[str]:
        ...

    @abstractmethod
    def remote_updated(self, record: dict[str, Any], mapping: "Mapping") -> Optional[float]:
        """Unix time of the record's trigger-date field, None when absent."""
        ...


# ============================================
# Notifications
# ============================================

class INotificationSink(ABC):
    """Fire-and-forget notification channel.

    Implementations must never raise out of notify().
    """

    @abstractmethod
    def notify(self, kind: Any, event: Any) -> Any:
        """Publish an event and return it (subscribers may have modified it)."""
        ...

    @abstractmethod
    def error(self, message: str, error: Optional[Exception] = None, **context) -> Any:
        ...

    @abstractmethod
    def warning(self, message: str, error: Optional[Exception] = None, **context) -> Any:
        ...

    @abstractmethod
    def notice(self, message: str, **context) -> Any:
        ...
