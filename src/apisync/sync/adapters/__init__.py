"""Adapters layer - Infrastructure implementations for the queue engine.

This layer contains concrete implementations of the ports defined in the domain layer:
- PostgresQueueStore / InMemoryQueueStore: IQueueStore
- PostgresMappedObjectRepository / InMemoryMappedObjectRepository: IMappedObjectRepository
- PostgresEntityStorage / InMemoryEntityStorage: IEntityStorage
- FileMappingRepository / PostgresMappingRepository: IMappingRepository
- ODataTransport: IRemoteTransport over ApiSyncClient
- MappingFieldMapper: IFieldMapper driven by mapping field lists
- LoggingSubscriber: writes notifications to the logger
"""

from .event_logger import LoggingSubscriber
from .field_mapper import MappingFieldMapper
from .mapping_config import (
    FileMappingRepository,
    MappingConfig,
    PostgresMappingRepository,
    load_mappings_file,
)
from .memory_queue_store import InMemoryQueueStore
from .memory_repositories import InMemoryEntityStorage, InMemoryMappedObjectRepository
from .odata_transport import ODataTransport
from .postgres_entity_storage import PostgresEntityStorage
from .postgres_mapped_object_repo import PostgresMappedObjectRepository
from .postgres_queue_store import PostgresQueueStore

__all__ = [
    # Queue stores
    "InMemoryQueueStore",
    "PostgresQueueStore",
    # Repositories
    "FileMappingRepository",
    "InMemoryEntityStorage",
    "InMemoryMappedObjectRepository",
    "PostgresEntityStorage",
    "PostgresMappedObjectRepository",
    "PostgresMappingRepository",
    # Mapping config
    "MappingConfig",
    "load_mappings_file",
    # Remote
    "ODataTransport",
    "MappingFieldMapper",
    # Notifications
    "LoggingSubscriber",
]
