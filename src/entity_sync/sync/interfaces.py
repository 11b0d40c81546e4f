"""Capability contracts the engine requires from its collaborators.

The engine is written once and is generic over these protocols.  Concrete
repositories (desktop client store, CalDAV/CardDAV server) and mappers
(contact <-> vCard, appointment <-> iCalendar, distribution list <-> vCard
group) live outside the engine and only need to satisfy the shapes below.
"""

from __future__ import annotations

from typing import (
    Any,
    Callable,
    Generic,
    Hashable,
    Iterable,
    Protocol,
    TypeVar,
)

from .models import EntityVersion, RelationRecord, RunOutcome, RunReport

TId = TypeVar("TId", bound=Hashable)
TEntity = TypeVar("TEntity")
TA = TypeVar("TA")
TB = TypeVar("TB")


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class EntityRepository(Protocol[TId, TEntity]):
    """One side of the synchronisation.

    Every method is a coroutine and may fail independently.  Transient
    failures must be raised as ``TransientError`` subclasses so they are
    never confused with "not found".
    """

    async def list_ids_and_versions(
        self, scope: Any = None
    ) -> list[EntityVersion]:
        """Return id/version pairs of every entity in *scope*."""
        ...  # pragma: no cover

    async def get_versions(self, ids: Iterable[TId]) -> list[EntityVersion]:
        """Return id/version pairs for known *ids*, regardless of scope.

        Ids that no longer exist are omitted.
        """
        ...  # pragma: no cover

    async def fetch(self, ids: Iterable[TId]) -> dict[TId, TEntity]:
        """Load entities by id.  Missing ids are silently omitted."""
        ...  # pragma: no cover

    async def create(self, entity: TEntity) -> EntityVersion:
        """Persist a new entity and return its id and version."""
        ...  # pragma: no cover

    async def update(
        self,
        entity_id: TId,
        expected_version: Any,
        current: TEntity,
        mutator: Callable[[TEntity], TEntity],
    ) -> EntityVersion:
        """Apply *mutator* to *current* and persist it.

        Raises:
            VersionConflictError: If the stored version is no longer
                *expected_version*.
            EntityNotFoundError: If the entity no longer exists.
        """
        ...  # pragma: no cover

    async def delete(self, entity_id: TId, version: Any) -> bool:
        """Delete the entity.  Returns ``False`` if it was already gone."""
        ...  # pragma: no cover

    def release(self, entities: Iterable[TEntity]) -> None:
        """Release handles of entities returned by ``fetch``."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


class MappingLogger:
    """Collects non-fatal warnings emitted while mapping one entity."""

    def __init__(self) -> None:
        self.warnings: list[str] = []

    def log_mapping_warning(
        self, message: str, exc: BaseException | None = None
    ) -> None:
        if exc is not None:
            message = f"{message}: {exc}"
        self.warnings.append(message)


class EntityMapper(Protocol[TA, TB]):
    """Pure translation between A-side and B-side entities."""

    def map_forward(
        self, source: TA, target: TB | None, logger: MappingLogger
    ) -> TB:
        """Translate an A entity into (an existing or new) B entity."""
        ...  # pragma: no cover

    def map_backward(
        self, source: TB, target: TA | None, logger: MappingLogger
    ) -> TA:
        """Translate a B entity into (an existing or new) A entity."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Relation store
# ---------------------------------------------------------------------------


class RelationStore(Protocol):
    """Durable id/version correspondence table."""

    def all(self) -> list[RelationRecord]:
        """Return every stored relation."""
        ...  # pragma: no cover

    def upsert(self, record: RelationRecord) -> None:
        """Insert or replace *record* (unique per a_id and per b_id)."""
        ...  # pragma: no cover

    def remove(self, a_id: Any, b_id: Any) -> None:
        """Remove the relation; no-op when absent."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class ReportingSink(Protocol):
    """Receives structured per-entity outcomes and the final report."""

    def record(self, outcome: RunOutcome) -> None:
        ...  # pragma: no cover

    def finish(self, report: RunReport) -> None:
        ...  # pragma: no cover


class EntityLogMessageFactory(Protocol[TA, TB]):
    """Builds short descriptions of written entities for the run log."""

    def describe_a(self, entity: TA) -> str | None:
        ...  # pragma: no cover

    def describe_b(self, entity: TB) -> str | None:
        ...  # pragma: no cover


class NullEntityLogMessageFactory(Generic[TA, TB]):
    """Log message factory that never describes anything."""

    def describe_a(self, entity: TA) -> str | None:
        return None

    def describe_b(self, entity: TB) -> str | None:
        return None
