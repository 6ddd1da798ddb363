"""Shared fakes and fixtures for the queue engine tests."""

import itertools
import sys
from typing import Any, Optional

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from src.apisync.sync.adapters.memory_queue_store import InMemoryQueueStore
from src.apisync.sync.adapters.memory_repositories import (
    InMemoryEntityStorage,
    InMemoryMappedObjectRepository,
)
from src.apisync.sync.config import PULL_QUEUE_NAME, PUSH_QUEUE_NAME, SyncSettings
from src.apisync.sync.domain.entities import FieldMapping, Mapping, SyncAction
from src.apisync.sync.domain.ports import IMappingRepository, IRemoteTransport, ITokenProvider
from src.apisync.sync.domain.query import FinalizedQuery
from src.apisync.sync.services import SyncServices


# ============================================
# Fakes
# ============================================

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticTokenProvider(ITokenProvider):
    def __init__(self, token: Optional[str] = "token-abc"):
        self.token = token
        self.invalidated = 0

    async def get_token(self) -> Optional[str]:
        return self.token

    def invalidate(self) -> None:
        self.invalidated += 1


class FakeTransport(IRemoteTransport):
    """Remote records kept per object type, with call recording and error injection."""

    def __init__(self, key_field: str = "Id"):
        self.key_field = key_field
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple] = []
        self.queries: list[FinalizedQuery] = []
        self.errors: dict[str, Exception] = {}
        self._ids = itertools.count(1001)

    def _raise_if_failing(self, op: str) -> None:
        error = self.errors.get(op)
        if error is not None:
            raise error

    def add(self, object_type: str, record: dict[str, Any]) -> None:
        self.records.setdefault(object_type, {})[str(record[self.key_field])] = dict(record)

    async def create(self, object_type: str, fields: dict[str, Any]) -> str:
        self.calls.append(("create", object_type, dict(fields)))
        self._raise_if_failing("create")
        remote_id = str(next(self._ids))
        self.add(object_type, {self.key_field: remote_id, **fields})
        return remote_id

    async def update(self, object_type: str, remote_id: str, fields: dict[str, Any]) -> None:
        self.calls.append(("update", object_type, remote_id, dict(fields)))
        self._raise_if_failing("update")
        self.records.setdefault(object_type, {}).setdefault(remote_id, {self.key_field: remote_id}).update(fields)

    async def delete(self, object_type: str, remote_id: str) -> None:
        self.calls.append(("delete", object_type, remote_id))
        self._raise_if_failing("delete")
        self.records.get(object_type, {}).pop(remote_id, None)

    async def read(self, object_type: str, remote_id: str) -> Optional[dict[str, Any]]:
        self.calls.append(("read", object_type, remote_id))
        self._raise_if_failing("read")
        record = self.records.get(object_type, {}).get(str(remote_id))
        return dict(record) if record else None

    async def query(self, query: FinalizedQuery) -> list[dict[str, Any]]:
        self.calls.append(("query", query.object_type))
        self.queries.append(query)
        self._raise_if_failing("query")
        return [dict(r) for r in self.records.get(query.object_type, {}).values()]


class StaticMappingRepository(IMappingRepository):
    """Mappings held in a dict; checkpoints recorded for assertions."""

    def __init__(self, mappings: list[Mapping]):
        self._mappings = {m.id: m for m in mappings}
        self.checkpoints: list[tuple[str, Optional[float], Optional[float]]] = []

    async def load(self, mapping_id: str) -> Optional[Mapping]:
        return self._mappings.get(mapping_id)

    async def load_all(self) -> list[Mapping]:
        return sorted(self._mappings.values(), key=lambda m: (m.weight, m.id))

    async def save_checkpoint(
        self,
        mapping_id: str,
        last_pull_time: Optional[float] = None,
        last_push_time: Optional[float] = None,
    ) -> None:
        self.checkpoints.append((mapping_id, last_pull_time, last_push_time))
        mapping = self._mappings.get(mapping_id)
        if mapping is None:
            return
        if last_pull_time is not None:
            mapping.last_pull_time = last_pull_time
        if last_push_time is not None:
            mapping.last_push_time = last_push_time


def make_mapping(**overrides) -> Mapping:
    """Product mapping pushing and pulling title and price."""
    values = dict(
        id="product",
        entity_type="node",
        bundle="product",
        remote_object_type="Products",
        key_field="Id",
        pull_trigger_date="Modified",
        sync_triggers={
            SyncAction.PUSH_CREATE,
            SyncAction.PUSH_UPDATE,
            SyncAction.PUSH_DELETE,
            SyncAction.PULL_CREATE,
            SyncAction.PULL_UPDATE,
            SyncAction.PULL_DELETE,
        },
        field_mappings=[
            FieldMapping("title", "Name"),
            FieldMapping("price", "Price"),
        ],
    )
    values.update(overrides)
    return Mapping(**values)


def make_settings(**overrides) -> SyncSettings:
    values = dict(max_fails=3, retry_backoff_seconds=60, pull_time_limit=0)
    values.update(overrides)
    return SyncSettings(**values)


def build_engine(
    mappings: list[Mapping],
    clock: Optional[FakeClock] = None,
    settings: Optional[SyncSettings] = None,
    transport: Optional[FakeTransport] = None,
    token_provider: Optional[ITokenProvider] = None,
) -> SyncServices:
    """Wire the whole engine on in-memory adapters."""
    clock = clock or FakeClock()
    settings = settings or make_settings()
    policy = settings.retry_policy
    return SyncServices.build(
        settings=settings,
        mappings=StaticMappingRepository(mappings),
        push_store=InMemoryQueueStore(PUSH_QUEUE_NAME, policy, clock=clock),
        pull_store=InMemoryQueueStore(PULL_QUEUE_NAME, policy, clock=clock),
        mapped_objects=InMemoryMappedObjectRepository(clock=clock),
        entities=InMemoryEntityStorage(clock=clock),
        transport=transport or FakeTransport(),
        token_provider=token_provider or StaticTokenProvider(),
        clock=clock,
    )


class EventRecorder:
    """Catch-all subscriber remembering every (kind, event) pair."""

    def __init__(self):
        self.events = []

    def __call__(self, kind, event) -> None:
        self.events.append((kind, event))

    def of(self, kind) -> list:
        return [e for k, e in self.events if k == kind]


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mapping():
    return make_mapping()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def engine(mapping, clock, transport):
    return build_engine([mapping], clock=clock, transport=transport)


@pytest.fixture
def recorder(engine):
    recorder = EventRecorder()
    engine.dispatcher.subscribe_all(recorder)
    return recorder


__all__ = [
    "EventRecorder",
    "FakeClock",
    "FakeTransport",
    "StaticMappingRepository",
    "StaticTokenProvider",
    "build_engine",
    "make_mapping",
    "make_settings",
]
