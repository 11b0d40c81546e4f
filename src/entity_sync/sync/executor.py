"""Reconciliation executor: applies actions to the two repositories.

Each action is applied in isolation.  A failure on one entity becomes a
``RunOutcome`` and never aborts the batch; only a relation store failure
is fatal, because the engine could no longer record what it did.

Concurrency model:

* Independent actions run concurrently, at most ``max_workers`` at a time.
* Actions sharing a relation (or a source id, for creations) are
  serialised by a per-key ``asyncio.Lock``; there is no global lock.
* Cancellation is checked before an action starts.  An action that has
  started always runs to completion, relation update included, so a
  cancelled run leaves the relation store consistent.

Error handling per action:

* ``TransientError`` -- retried with bounded backoff; exhaustion yields a
  skipped outcome and the entity is retried next run.
* ``VersionConflictError`` / ``EntityNotFoundError`` -- the relation is
  re-evaluated once with fresh versions and the new action applied.
* Anything else -- permanent failure, relation left unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from entity_sync.core.async_utils import call_with_timeout, gather_bounded
from entity_sync.errors import (
    EntityNotFoundError,
    MappingError,
    PermanentError,
    RelationStoreError,
    TransientError,
    VersionConflictError,
)

from .classifier import ActionClassifier
from .delta import SideSnapshot, relation_status
from .interfaces import (
    EntityLogMessageFactory,
    EntityMapper,
    EntityRepository,
    MappingLogger,
    NullEntityLogMessageFactory,
    RelationStore,
)
from .models import (
    Action,
    ActionKind,
    ChangeDescriptor,
    ChangeKind,
    EntityVersion,
    OutcomeStatus,
    RelationRecord,
    RunOutcome,
    Side,
)
from .reporter import RunReporter
from .retry import RetryPolicy, retry_transient

logger = logging.getLogger(__name__)


class CancellationToken:
    """Run-level cancellation signal observed between actions."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ReconciliationExecutor:
    """Apply classified actions against repositories A and B.

    Args:
        repo_a: Repository for side A.
        repo_b: Repository for side B.
        mapper: Translates entities between the two sides.
        relation_store: The relation table (mutated only here).
        classifier: Used to re-classify a relation after a version
            conflict or a vanished entity.
        reporter: Receives one outcome per action.
        max_workers: Maximum number of actions in flight.
        retry: Retry policy for transient errors.
        timeout: Per repository call timeout in seconds.
        log_messages: Describes written entities for the run log.
        cancel_token: Run-level cancellation signal.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        repo_a: EntityRepository,
        repo_b: EntityRepository,
        mapper: EntityMapper,
        relation_store: RelationStore,
        classifier: ActionClassifier,
        reporter: RunReporter,
        *,
        max_workers: int = 4,
        retry: RetryPolicy | None = None,
        timeout: float | None = 30.0,
        log_messages: EntityLogMessageFactory | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repos = {Side.A: repo_a, Side.B: repo_b}
        self.mapper = mapper
        self.store = relation_store
        self.classifier = classifier
        self.reporter = reporter
        self.max_workers = max_workers
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.log_messages = log_messages or NullEntityLogMessageFactory()
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self._locks: defaultdict[Any, asyncio.Lock] = defaultdict(
            asyncio.Lock
        )
        self._fatal: RelationStoreError | None = None

    # ------------------------------------------------------------------
    # Batch entry point
    # ------------------------------------------------------------------

    async def execute(self, actions: list[Action]) -> None:
        """Apply every action, recording one outcome each.

        Raises:
            RelationStoreError: If the relation store failed; actions not
                yet started are reported as skipped.
        """
        await gather_bounded(
            [lambda a=a: self._run_one(a) for a in actions],
            self.max_workers,
        )
        if self._fatal is not None:
            raise self._fatal

    async def _run_one(self, action: Action) -> None:
        if self._stopped():
            self.reporter.record(self._cancelled_outcome(action))
            return

        async with self._locks[action.key]:
            if self._stopped():
                self.reporter.record(self._cancelled_outcome(action))
                return
            try:
                outcome = await self.apply(action)
            except RelationStoreError as exc:
                logger.error(
                    "Relation store failure while applying %s: %s",
                    action.kind.value,
                    exc,
                )
                self._fatal = exc
                outcome = _outcome(
                    action,
                    OutcomeStatus.FAILURE,
                    error=f"relation store failure: {exc}",
                    requires_attention=True,
                )
        self.reporter.record(outcome)

    def _stopped(self) -> bool:
        return self.cancel_token.cancelled or self._fatal is not None

    def _cancelled_outcome(self, action: Action) -> RunOutcome:
        return _outcome(action, OutcomeStatus.SKIPPED, error="cancelled")

    # ------------------------------------------------------------------
    # Single action with retry and re-evaluation
    # ------------------------------------------------------------------

    async def apply(
        self, action: Action, reevaluated: bool = False
    ) -> RunOutcome:
        """Apply one action and return its outcome.

        Only ``RelationStoreError`` propagates; every other failure is
        converted into an outcome.
        """
        attempts = 0

        async def _attempt() -> RunOutcome:
            nonlocal attempts
            attempts += 1
            return await self._dispatch(action)

        description = f"{action.kind.value} {_label(action)}"
        try:
            outcome = await retry_transient(
                _attempt, self.retry, description, sleep=self._sleep
            )
        except TransientError as exc:
            return _outcome(
                action,
                OutcomeStatus.SKIPPED,
                error=f"transient failure, retry next run: {exc}",
                attempts=attempts,
            )
        except (VersionConflictError, EntityNotFoundError) as exc:
            if reevaluated or action.relation is None:
                logger.warning("%s failed: %s", description, exc)
                return _outcome(
                    action,
                    OutcomeStatus.FAILURE,
                    error=str(exc),
                    attempts=attempts,
                )
            logger.info("%s needs re-evaluation: %s", description, exc)
            fresh = await self.reevaluate(action)
            return await self.apply(fresh, reevaluated=True)
        except RelationStoreError:
            raise
        except Exception as exc:
            logger.warning("%s failed permanently: %s", description, exc)
            return _outcome(
                action,
                OutcomeStatus.FAILURE,
                error=f"{type(exc).__name__}: {exc}",
                attempts=attempts,
            )
        return outcome.model_copy(update={"attempts": attempts})

    async def reevaluate(self, action: Action) -> Action:
        """Re-classify a single relation from freshly queried versions."""
        relation = action.relation
        assert relation is not None
        snapshots = {}
        for side in (Side.A, Side.B):
            entity_id = relation.id_of(side)
            try:
                versions = await self._call(
                    self.repos[side].get_versions([entity_id]),
                    f"get_versions on {side.name}",
                )
                snapshots[side] = SideSnapshot.from_versions(versions)
            except Exception as exc:
                # Unreadable state is reported as unknown and retried next run.
                logger.warning(
                    "Cannot re-read %s on %s: %s", entity_id, side.name, exc
                )
                snapshots[side] = SideSnapshot(failed=True)
        status = relation_status(relation, snapshots[Side.A], snapshots[Side.B])
        return self.classifier.classify_relation(status)

    async def _dispatch(self, action: Action) -> RunOutcome:
        kind = action.kind
        if kind in (ActionKind.CREATE_ON_A, ActionKind.CREATE_ON_B):
            return await self._create(action, kind.target)
        if kind in (ActionKind.UPDATE_A, ActionKind.UPDATE_B):
            return await self._update(action, kind.target)
        if kind in (ActionKind.DELETE_A, ActionKind.DELETE_B):
            return await self._delete(action, kind.target)
        if kind == ActionKind.DROP_RELATION:
            return self._drop(action)
        if kind == ActionKind.CONFLICT:
            self._tombstone(action)
            return _outcome(
                action,
                OutcomeStatus.CONFLICT,
                error=action.reason or "conflict",
                requires_attention=True,
            )
        self._tombstone(action)
        return _outcome(action, OutcomeStatus.SKIPPED, detail=action.reason)

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    async def _create(self, action: Action, target: Side) -> RunOutcome:
        source_side = target.other
        src = action.of(source_side)
        assert src is not None
        mapping_log = MappingLogger()

        async with self._acquire(source_side, src.id) as sources:
            source = sources.get(src.id)
            if source is None:
                return _outcome(
                    action,
                    OutcomeStatus.SKIPPED,
                    error="source entity disappeared before creation",
                )
            entity = self._map(target, source, None, mapping_log)
            created = await self._call(
                self.repos[target].create(entity),
                f"create on {target.name}",
            )
            detail = self._describe(target, entity)

        # The entity exists from here on; only the relation store may fail.
        written = await self._read_back(target, created)
        record = _record(source_side, src.id, src.version, written)
        self._store_upsert(record)
        logger.info(
            "Created %s on %s from %s", written.id, target.name, src.id
        )
        return _outcome(
            action,
            OutcomeStatus.SUCCESS,
            record=record,
            warnings=mapping_log.warnings,
            detail=detail,
        )

    async def _update(self, action: Action, target: Side) -> RunOutcome:
        relation = action.relation
        assert relation is not None
        source_side = target.other
        src = action.of(source_side)
        tgt = action.of(target)
        assert src is not None and tgt is not None
        mapping_log = MappingLogger()

        async with self._acquire(source_side, src.id) as sources, self._acquire(
            target, tgt.id
        ) as targets:
            source = sources.get(src.id)
            if source is None:
                raise EntityNotFoundError(src.id)
            current = targets.get(tgt.id)
            if current is None:
                raise EntityNotFoundError(tgt.id)

            mapped: list[Any] = []

            def _mutator(entity: Any) -> Any:
                result = self._map(target, source, entity, mapping_log)
                mapped.append(result)
                return result

            updated = await self._call(
                self.repos[target].update(
                    tgt.id, tgt.version, current, _mutator
                ),
                f"update on {target.name}",
            )
            detail = self._describe(target, mapped[-1]) if mapped else None

        written = await self._read_back(target, updated)
        record = _record(source_side, src.id, src.version, written)
        if record.key != relation.key:
            self._store_remove(relation)
        self._store_upsert(record)
        return _outcome(
            action,
            OutcomeStatus.SUCCESS,
            record=record,
            warnings=mapping_log.warnings,
            detail=detail,
        )

    async def _delete(self, action: Action, target: Side) -> RunOutcome:
        relation = action.relation
        assert relation is not None
        tgt = action.of(target)
        entity_id = relation.id_of(target)
        version = tgt.version if tgt is not None else None

        try:
            deleted = await self._call(
                self.repos[target].delete(entity_id, version),
                f"delete on {target.name}",
            )
        except EntityNotFoundError:
            deleted = False
        if not deleted:
            logger.debug(
                "%s already absent on %s, treating delete as done",
                entity_id,
                target.name,
            )
        self._store_remove(relation)
        return _outcome(action, OutcomeStatus.SUCCESS)

    def _drop(self, action: Action) -> RunOutcome:
        relation = action.relation
        assert relation is not None
        self._store_remove(relation)
        return _outcome(
            action,
            OutcomeStatus.SUCCESS,
            detail=action.reason,
        )

    def _tombstone(self, action: Action) -> None:
        """Keep the relation's tombstone flags in line with this run.

        Removed sides are flagged and sides seen again are cleared.
        Sides in an unknown state keep their flag.
        """
        relation = action.relation
        if relation is None:
            return
        flags = {
            "a_tombstoned": _seen_removed(action.a, relation.a_tombstoned),
            "b_tombstoned": _seen_removed(action.b, relation.b_tombstoned),
        }
        if flags != {
            "a_tombstoned": relation.a_tombstoned,
            "b_tombstoned": relation.b_tombstoned,
        }:
            self._store_upsert(relation.model_copy(update=flags))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[Any], operation: str) -> Any:
        return await call_with_timeout(awaitable, self.timeout, operation)

    @asynccontextmanager
    async def _acquire(
        self, side: Side, entity_id: Any
    ) -> AsyncIterator[dict[Any, Any]]:
        """Fetch an entity as a scoped resource, released on every exit."""
        repo = self.repos[side]
        entities = await self._call(
            repo.fetch([entity_id]), f"fetch on {side.name}"
        )
        try:
            yield entities
        finally:
            if entities:
                try:
                    repo.release(list(entities.values()))
                except Exception:
                    logger.exception(
                        "Failed to release %s on %s", entity_id, side.name
                    )

    def _map(
        self,
        target: Side,
        source: Any,
        existing: Any,
        mapping_log: MappingLogger,
    ) -> Any:
        try:
            if target is Side.B:
                return self.mapper.map_forward(source, existing, mapping_log)
            return self.mapper.map_backward(source, existing, mapping_log)
        except PermanentError:
            raise
        except Exception as exc:
            raise MappingError(f"Mapping to {target.name} failed: {exc}") from exc

    async def _read_back(
        self, side: Side, written: EntityVersion
    ) -> EntityVersion:
        """Re-read the version of a freshly written entity.

        Stores may assign timestamps on save, so the version reported by
        the write call is only a fallback.  The write already happened, so
        no read-back failure may fail the action.
        """
        try:
            versions = await self._call(
                self.repos[side].get_versions([written.id]),
                f"read back on {side.name}",
            )
        except Exception as exc:
            logger.warning(
                "Could not read back version of %s on %s: %s",
                written.id,
                side.name,
                exc,
            )
            return written
        for version in versions:
            if version.id == written.id:
                return version
        return written

    def _describe(self, side: Side, entity: Any) -> str | None:
        describe = (
            self.log_messages.describe_a
            if side is Side.A
            else self.log_messages.describe_b
        )
        try:
            return describe(entity)
        except Exception:
            logger.exception("Failed to describe written entity on %s", side.name)
            return None

    def _store_upsert(self, record: RelationRecord) -> None:
        try:
            self.store.upsert(record)
        except RelationStoreError:
            raise
        except Exception as exc:
            raise RelationStoreError(str(exc)) from exc

    def _store_remove(self, relation: RelationRecord) -> None:
        try:
            self.store.remove(relation.a_id, relation.b_id)
        except RelationStoreError:
            raise
        except Exception as exc:
            raise RelationStoreError(str(exc)) from exc


# ----------------------------------------------------------------------
# Module helpers
# ----------------------------------------------------------------------


def _label(action: Action) -> str:
    return f"{action.a_id} <-> {action.b_id}"


def _seen_removed(descriptor: ChangeDescriptor | None, previous: bool) -> bool:
    if descriptor is None or descriptor.kind == ChangeKind.UNKNOWN:
        return previous
    return descriptor.kind == ChangeKind.REMOVED


def _record(
    source_side: Side,
    source_id: Any,
    source_version: Any,
    written: EntityVersion,
) -> RelationRecord:
    if source_side is Side.A:
        return RelationRecord(
            a_id=source_id,
            a_version=source_version,
            b_id=written.id,
            b_version=written.version,
        )
    return RelationRecord(
        a_id=written.id,
        a_version=written.version,
        b_id=source_id,
        b_version=source_version,
    )


def _outcome(
    action: Action,
    status: OutcomeStatus,
    *,
    record: RelationRecord | None = None,
    error: str | None = None,
    requires_attention: bool = False,
    warnings: list[str] | None = None,
    detail: str | None = None,
    attempts: int = 0,
) -> RunOutcome:
    if action.conflict and status == OutcomeStatus.SUCCESS and detail is None:
        detail = f"conflict resolved: {action.reason}"
    return RunOutcome(
        a_id=record.a_id if record is not None else action.a_id,
        b_id=record.b_id if record is not None else action.b_id,
        action=action.kind,
        status=status,
        error=error,
        requires_attention=requires_attention,
        warnings=list(warnings or []),
        detail=detail,
        attempts=attempts,
    )
