"""Shared pytest fixtures for entity-sync tests.

Provides in-memory fake repositories and a fake mapper that behave like
the real collaborators: versions bump on every write, missing ids are
omitted from fetches, and failures can be injected per operation.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import pytest

from entity_sync.config_schema import EngineConfig
from entity_sync.errors import EntityNotFoundError, VersionConflictError
from entity_sync.sync.engine import SyncEngine
from entity_sync.sync.interfaces import MappingLogger
from entity_sync.sync.models import EntityVersion
from entity_sync.sync.reporter import CollectingSink
from entity_sync.sync.state import InMemoryRelationStore


class FakeRepository:
    """Dict-backed repository for one side.

    Attributes:
        items: Entity payloads by id.
        versions: Current version by id.
        hidden: Ids outside the enumeration scope (still queryable).
        failures: Per-operation queues of exceptions raised on the next
            calls (``"list"``, ``"get_versions"``, ``"fetch"``,
            ``"create"``, ``"update"``, ``"delete"``).
        fail_ids: Persistent failures for ``(operation, id)`` pairs.
        provisional_create_version: When set, ``create`` reports this
            version instead of the stored one.
    """

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.items: dict[str, dict] = {}
        self.versions: dict[str, int] = {}
        self.hidden: set[str] = set()
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.fail_ids: dict[tuple[str, str], Exception] = {}
        self.provisional_create_version: Any = None
        self.calls: list[tuple[str, Any]] = []
        self.released: list[dict] = []
        self.fetched = 0
        self._counter = 0

    # -- test helpers ----------------------------------------------------

    def add(self, entity_id: str, name: str, version: int = 1) -> None:
        self.items[entity_id] = {"name": name}
        self.versions[entity_id] = version

    def edit(self, entity_id: str, name: str) -> None:
        """Simulate an external edit."""
        self.items[entity_id] = {**self.items[entity_id], "name": name}
        self.versions[entity_id] += 1

    def remove(self, entity_id: str) -> None:
        """Simulate an external deletion."""
        self.items.pop(entity_id, None)
        self.versions.pop(entity_id, None)

    def writes(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    def _maybe_fail(self, op: str, entity_id: Any = None) -> None:
        if self.failures[op]:
            raise self.failures[op].pop(0)
        exc = self.fail_ids.get((op, entity_id))
        if exc is not None:
            raise exc

    # -- repository protocol ---------------------------------------------

    async def list_ids_and_versions(self, scope: Any = None) -> list[EntityVersion]:
        self.calls.append(("list", scope))
        self._maybe_fail("list")
        return [
            EntityVersion(id=i, version=v)
            for i, v in self.versions.items()
            if i not in self.hidden
        ]

    async def get_versions(self, ids) -> list[EntityVersion]:
        ids = list(ids)
        self.calls.append(("get_versions", ids))
        self._maybe_fail("get_versions")
        return [
            EntityVersion(id=i, version=self.versions[i])
            for i in ids
            if i in self.versions
        ]

    async def fetch(self, ids) -> dict[str, dict]:
        ids = list(ids)
        self.calls.append(("fetch", ids))
        for entity_id in ids:
            self._maybe_fail("fetch", entity_id)
        self.fetched += 1
        return {i: dict(self.items[i]) for i in ids if i in self.items}

    async def create(self, entity: dict) -> EntityVersion:
        self.calls.append(("create", entity))
        self._maybe_fail("create", entity.get("name"))
        self._counter += 1
        entity_id = f"{self.prefix}-new-{self._counter}"
        self.items[entity_id] = dict(entity)
        self.versions[entity_id] = 1
        if self.provisional_create_version is not None:
            return EntityVersion(
                id=entity_id, version=self.provisional_create_version
            )
        return EntityVersion(id=entity_id, version=1)

    async def update(self, entity_id, expected_version, current, mutator):
        self.calls.append(("update", entity_id))
        self._maybe_fail("update", entity_id)
        if entity_id not in self.items:
            raise EntityNotFoundError(entity_id)
        if self.versions[entity_id] != expected_version:
            raise VersionConflictError(
                entity_id, expected_version, self.versions[entity_id]
            )
        self.items[entity_id] = mutator(current)
        self.versions[entity_id] += 1
        return EntityVersion(id=entity_id, version=self.versions[entity_id])

    async def delete(self, entity_id, version) -> bool:
        self.calls.append(("delete", entity_id))
        self._maybe_fail("delete", entity_id)
        if entity_id not in self.items:
            return False
        self.remove(entity_id)
        return True

    def release(self, entities) -> None:
        self.released.extend(entities)


class FakeMapper:
    """Copies ``name`` across; names in ``fail_for`` raise, ``warn`` flags warn."""

    def __init__(self) -> None:
        self.forward_calls: list[tuple[dict, dict | None]] = []
        self.backward_calls: list[tuple[dict, dict | None]] = []
        self.fail_for: set[str] = set()

    def map_forward(self, source, target, logger: MappingLogger):
        self.forward_calls.append((source, target))
        return self._map(source, target, logger)

    def map_backward(self, source, target, logger: MappingLogger):
        self.backward_calls.append((source, target))
        return self._map(source, target, logger)

    def _map(self, source, target, logger):
        if source["name"] in self.fail_for:
            raise ValueError(f"cannot map {source['name']}")
        if source.get("warn"):
            logger.log_mapping_warning("member not accessible")
        result = dict(target or {})
        result["name"] = source["name"]
        return result


async def no_sleep(delay: float) -> None:
    """Retry sleep replacement that returns immediately."""
    return None


@pytest.fixture
def repo_a() -> FakeRepository:
    return FakeRepository("A")


@pytest.fixture
def repo_b() -> FakeRepository:
    return FakeRepository("B")


@pytest.fixture
def mapper() -> FakeMapper:
    return FakeMapper()


@pytest.fixture
def store() -> InMemoryRelationStore:
    return InMemoryRelationStore()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def make_engine(repo_a, repo_b, mapper, store, sink):
    """Factory fixture building a SyncEngine over the shared fakes."""

    def _make(**config: Any) -> SyncEngine:
        config.setdefault("operation_timeout", 5.0)
        return SyncEngine(
            repo_a,
            repo_b,
            mapper,
            store,
            config=EngineConfig(**config),
            profile_name="test",
            sink_factory=lambda: sink,
            sleep=no_sleep,
        )

    return _make
