"""Explicit wiring of the queue engine.

SyncServices builds every adapter and use case once and hands them to
each other through their constructors. Two configurations exist:

    DATABASE_URL set     PostgreSQL queue stores, repositories and entity
                         storage; mappings from the apisync_mapping table
    DATABASE_URL unset   fetch-only mode: in-memory stores and repositories,
                         mappings from APISYNC_MAPPINGS_FILE

Usage:
    async with await SyncServices.create() as services:
        await services.populator.populate_queue()
        result = await services.drainer.process_queue()
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..api.auth import create_token_provider
from ..api.client import ApiSyncClient
from ..api.database import check_database_health, close_pool, create_pool
from ..api.exceptions import ConfigurationError
from .adapters.event_logger import LoggingSubscriber
from .adapters.field_mapper import MappingFieldMapper
from .adapters.mapping_config import FileMappingRepository, PostgresMappingRepository
from .adapters.memory_queue_store import InMemoryQueueStore
from .adapters.memory_repositories import InMemoryEntityStorage, InMemoryMappedObjectRepository
from .adapters.odata_transport import ODataTransport
from .adapters.postgres_entity_storage import PostgresEntityStorage
from .adapters.postgres_mapped_object_repo import PostgresMappedObjectRepository
from .adapters.postgres_queue_store import PostgresQueueStore
from .config import PULL_QUEUE_NAME, PUSH_QUEUE_NAME, SyncSettings
from .domain.events import EventDispatcher
from .domain.ports import (
    IEntityStorage,
    IFieldMapper,
    IMappedObjectRepository,
    IMappingRepository,
    IQueueStore,
    IRemoteTransport,
    ITokenProvider,
)
from .use_cases.delete_records import DeletedRecordsHandler
from .use_cases.mapped_object_sync import MappedObjectSync
from .use_cases.pull_queue import PullQueueDrainer, PullQueuePopulator, QueryHook
from .use_cases.pull_worker import PullQueueWorker
from .use_cases.push_queue import PushQueue, PushQueueProcessor
from .use_cases.resolve_mapped_object import MappedObjectResolver

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """Container for the wired queue engine."""
    settings: SyncSettings
    dispatcher: EventDispatcher
    mappings: IMappingRepository
    push_store: IQueueStore
    pull_store: IQueueStore
    mapped_objects: IMappedObjectRepository
    entities: IEntityStorage
    transport: IRemoteTransport
    token_provider: ITokenProvider
    field_mapper: IFieldMapper
    resolver: MappedObjectResolver
    sync: MappedObjectSync
    push_processor: PushQueueProcessor
    push_queue: PushQueue
    populator: PullQueuePopulator
    worker: PullQueueWorker
    drainer: PullQueueDrainer
    deleted_records: DeletedRecordsHandler
    pool: Any = None
    client: Optional[ApiSyncClient] = None

    @classmethod
    def build(
        cls,
        settings: SyncSettings,
        mappings: IMappingRepository,
        push_store: IQueueStore,
        pull_store: IQueueStore,
        mapped_objects: IMappedObjectRepository,
        entities: IEntityStorage,
        transport: IRemoteTransport,
        token_provider: ITokenProvider,
        dispatcher: Optional[EventDispatcher] = None,
        field_mapper: Optional[IFieldMapper] = None,
        query_hooks: Optional[list[QueryHook]] = None,
        pool: Any = None,
        client: Optional[ApiSyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> "SyncServices":
        """Wire use cases onto already-constructed adapters."""
        dispatcher = dispatcher or EventDispatcher()
        field_mapper = field_mapper or MappingFieldMapper()
        resolver = MappedObjectResolver(mapped_objects)
        sync = MappedObjectSync(transport, mapped_objects, entities, field_mapper, dispatcher, clock)

        push_processor = PushQueueProcessor(
            store=push_store,
            mappings=mappings,
            mapped_objects=mapped_objects,
            entities=entities,
            sync=sync,
            token_provider=token_provider,
            notifier=dispatcher,
            resolver=resolver,
            clock=clock,
        )
        worker = PullQueueWorker(
            mappings=mappings,
            mapped_objects=mapped_objects,
            entities=entities,
            field_mapper=field_mapper,
            sync=sync,
            notifier=dispatcher,
            resolver=resolver,
        )

        return cls(
            settings=settings,
            dispatcher=dispatcher,
            mappings=mappings,
            push_store=push_store,
            pull_store=pull_store,
            mapped_objects=mapped_objects,
            entities=entities,
            transport=transport,
            token_provider=token_provider,
            field_mapper=field_mapper,
            resolver=resolver,
            sync=sync,
            push_processor=push_processor,
            push_queue=PushQueue(push_store, push_processor, mappings, dispatcher, settings, clock),
            populator=PullQueuePopulator(
                mappings=mappings,
                transport=transport,
                store=pull_store,
                field_mapper=field_mapper,
                notifier=dispatcher,
                settings=settings,
                query_hooks=query_hooks,
                clock=clock,
            ),
            worker=worker,
            drainer=PullQueueDrainer(pull_store, worker, dispatcher, settings, clock),
            deleted_records=DeletedRecordsHandler(
                mappings=mappings,
                transport=transport,
                mapped_objects=mapped_objects,
                field_mapper=field_mapper,
                sync=sync,
                notifier=dispatcher,
            ),
            pool=pool,
            client=client,
        )

    @classmethod
    async def create(
        cls,
        settings: Optional[SyncSettings] = None,
        database_url: Optional[str] = None,
        mappings_file: Optional[str] = None,
        token_provider: Optional[ITokenProvider] = None,
        query_hooks: Optional[list[QueryHook]] = None,
    ) -> "SyncServices":
        """Build the production configuration from the environment.

        Raises:
            ConfigurationError: If required settings, credentials or the
                mappings source are missing
        """
        settings = settings or SyncSettings.from_env()
        database_url = database_url or os.getenv("DATABASE_URL")
        mappings_file = mappings_file or os.getenv("APISYNC_MAPPINGS_FILE")
        token_provider = token_provider or create_token_provider()
        policy = settings.retry_policy

        dispatcher = EventDispatcher()
        LoggingSubscriber(settings.log_level).attach(dispatcher)

        pool = None
        if database_url:
            pool = await create_pool(database_url)
            mappings: IMappingRepository = PostgresMappingRepository(pool)
            push_store: IQueueStore = PostgresQueueStore(pool, PUSH_QUEUE_NAME, policy)
            pull_store: IQueueStore = PostgresQueueStore(pool, PULL_QUEUE_NAME, policy)
            mapped_objects: IMappedObjectRepository = PostgresMappedObjectRepository(pool)
            entities: IEntityStorage = PostgresEntityStorage(pool)
        else:
            if not mappings_file:
                raise ConfigurationError(
                    "Without DATABASE_URL, mappings must come from APISYNC_MAPPINGS_FILE",
                    missing_keys=["APISYNC_MAPPINGS_FILE"],
                )
            logger.warning("DATABASE_URL not set, running in fetch-only mode with in-memory queues")
            mappings = FileMappingRepository(mappings_file)
            push_store = InMemoryQueueStore(PUSH_QUEUE_NAME, policy)
            pull_store = InMemoryQueueStore(PULL_QUEUE_NAME, policy)
            mapped_objects = InMemoryMappedObjectRepository()
            entities = InMemoryEntityStorage()

        try:
            key_fields = {m.remote_object_type: m.key_field for m in await mappings.load_all()}
            client = ApiSyncClient(token_provider)
            await client.__aenter__()
        except Exception:
            await close_pool(pool)
            raise

        return cls.build(
            settings=settings,
            mappings=mappings,
            push_store=push_store,
            pull_store=pull_store,
            mapped_objects=mapped_objects,
            entities=entities,
            transport=ODataTransport(client, key_fields=key_fields),
            token_provider=token_provider,
            dispatcher=dispatcher,
            query_hooks=query_hooks,
            pool=pool,
            client=client,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.__aexit__(None, None, None)
            self.client = None
        if self.pool is not None:
            await close_pool(self.pool)
            self.pool = None

    async def __aenter__(self) -> "SyncServices":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def fetch_only(self) -> bool:
        return self.pool is None

    async def queue_status(self) -> dict[str, Any]:
        """Queue sizes plus database and circuit health, for health checks and the CLI."""
        status: dict[str, Any] = {
            "mode": "fetch-only" if self.fetch_only else "database",
            "queues": {
                self.push_store.queue_name: await self.push_store.number_of_items(),
                self.pull_store.queue_name: await self.pull_store.number_of_items(),
            },
        }
        if self.pool is not None:
            status["database"] = await check_database_health(self.pool)
        if self.client is not None:
            status["circuit"] = self.client.circuit_status
        return status
