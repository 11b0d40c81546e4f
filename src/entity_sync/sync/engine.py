"""Core sync engine that orchestrates a full reconciliation run.

The ``SyncEngine`` ties together relation store, delta resolver,
classifier, executor and reporter into a complete run.  It:

1. Loads the relation table (a failure here aborts before any mutation).
2. Applies the tombstone cleanup policy.
3. Enumerates ids and versions on both sides, querying relation ids the
   enumeration no longer reports directly.
4. Computes the delta and classifies one action per relation / new id.
5. Applies the actions (or only reports them in a dry run).
6. Builds and returns a ``RunReport``.

Error handling is per entity: a single failure never aborts the run.
Only ``FatalSyncError`` escapes ``run()``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from entity_sync.config_schema import EngineConfig, UnifiedConfig, get_profile
from entity_sync.core.async_utils import call_with_timeout
from entity_sync.errors import FatalSyncError, RelationStoreError, TransientError

from .classifier import ActionClassifier, create_conflict_policy
from .delta import ChangeSet, SideSnapshot, compute_delta
from .executor import CancellationToken, ReconciliationExecutor
from .interfaces import (
    EntityLogMessageFactory,
    EntityMapper,
    EntityRepository,
    RelationStore,
    ReportingSink,
)
from .models import (
    Action,
    ActionKind,
    OutcomeStatus,
    RelationRecord,
    RunOutcome,
    RunReport,
    Side,
)
from .reporter import LoggingSink, RunReporter
from .retry import retry_transient
from .state import JsonRelationStore

logger = logging.getLogger(__name__)


class SyncEngine:
    """Orchestrate reconciliation runs between two repositories.

    Args:
        repo_a: Repository for side A (the local client store).
        repo_b: Repository for side B (the server store).
        mapper: Translates entities between A and B.
        relation_store: Persisted relation table.
        config: Engine settings; defaults are conservative.
        profile_name: Name used in reports.
        sink_factory: Creates the reporting sink for each run.
        log_messages: Optional describer of written entities.
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        repo_a: EntityRepository,
        repo_b: EntityRepository,
        mapper: EntityMapper,
        relation_store: RelationStore,
        config: EngineConfig | None = None,
        profile_name: str = "default",
        sink_factory: Callable[[], ReportingSink] = LoggingSink,
        log_messages: EntityLogMessageFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repos = {Side.A: repo_a, Side.B: repo_b}
        self.mapper = mapper
        self.relation_store = relation_store
        self.config = config or EngineConfig()
        self.profile_name = profile_name
        self.sink_factory = sink_factory
        self.log_messages = log_messages
        self._sleep = sleep

        self.retry = self.config.retry.to_policy()
        self.classifier = ActionClassifier(
            create_conflict_policy(self.config.conflict_policy),
            self.config.direction,
        )

    @classmethod
    def from_config(
        cls,
        repo_a: EntityRepository,
        repo_b: EntityRepository,
        mapper: EntityMapper,
        unified: UnifiedConfig,
        profile_name: str,
        **kwargs: Any,
    ) -> SyncEngine:
        """Build an engine for a named profile with a JSON relation store.

        Raises:
            FatalSyncError: If the relation store cannot be opened.
        """
        config = get_profile(unified, profile_name)
        try:
            store = JsonRelationStore(Path(config.state_dir), profile_name)
        except RelationStoreError as exc:
            raise FatalSyncError(str(exc)) from exc
        return cls(
            repo_a,
            repo_b,
            mapper,
            store,
            config=config,
            profile_name=profile_name,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        scope_a: Any = None,
        scope_b: Any = None,
        dry_run: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> RunReport:
        """Execute a full reconciliation run.

        Args:
            scope_a: Query scope passed to A's enumeration (e.g. a time
                range for appointments).
            scope_b: Query scope passed to B's enumeration.
            dry_run: If ``True``, compute actions but do not apply them.
            cancel_token: Signal observed between actions.

        Returns:
            A ``RunReport`` summarising what was (or would be) done.

        Raises:
            FatalSyncError: If the relation store or an enumeration is
                unusable.
        """
        cancel_token = cancel_token or CancellationToken()
        reporter = RunReporter(self.sink_factory(), self.profile_name, dry_run)

        relations = self._load_relations()
        relations = await self._purge_tombstoned(relations, dry_run)

        snapshot_a, snapshot_b = await asyncio.gather(
            self._snapshot(Side.A, scope_a, relations),
            self._snapshot(Side.B, scope_b, relations),
        )
        change_set = compute_delta(snapshot_a, snapshot_b, relations)
        actions = self.classifier.classify(change_set)
        self._report_unrelated_unknowns(change_set, reporter)

        logger.info(
            "Run '%s': %d actions (%d relations, %d new on A, %d new on B)",
            self.profile_name,
            len(actions),
            len(change_set.statuses),
            len(change_set.added_a),
            len(change_set.added_b),
        )

        if dry_run:
            for action in actions:
                reporter.record(_planned_outcome(action))
            return reporter.finish()

        executor = ReconciliationExecutor(
            self.repos[Side.A],
            self.repos[Side.B],
            self.mapper,
            self.relation_store,
            self.classifier,
            reporter,
            max_workers=self.config.max_workers,
            retry=self.retry,
            timeout=self.config.operation_timeout,
            log_messages=self.log_messages,
            cancel_token=cancel_token,
            sleep=self._sleep,
        )
        try:
            await executor.execute(actions)
        except RelationStoreError as exc:
            reporter.finish(cancelled=True)
            raise FatalSyncError(f"Relation store failed mid-run: {exc}") from exc

        if cancel_token.cancelled:
            logger.warning("Run '%s' was cancelled", self.profile_name)
        return reporter.finish(cancelled=cancel_token.cancelled)

    def run_blocking(self, **kwargs: Any) -> RunReport:
        """Run synchronously, for callers without an event loop."""
        return asyncio.run(self.run(**kwargs))

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _load_relations(self) -> list[RelationRecord]:
        try:
            return list(self.relation_store.all())
        except Exception as exc:
            logger.error("Cannot load relations: %s", exc)
            raise FatalSyncError(f"Relation store unavailable: {exc}") from exc

    async def _purge_tombstoned(
        self, relations: list[RelationRecord], dry_run: bool
    ) -> list[RelationRecord]:
        """Apply the tombstone cleanup policy.

        A relation is purged only while its tombstoned side is still
        absent.  If that entity is reported again the relation is kept
        and the run clears the flag.
        """
        if not self.config.purge_tombstoned_relations:
            return relations
        candidates = [r for r in relations if r.tombstoned]
        if not candidates:
            return relations

        present = {
            side: await self._present_ids(
                side,
                [r.id_of(side) for r in candidates if _tombstoned_on(r, side)],
            )
            for side in (Side.A, Side.B)
        }

        kept: list[RelationRecord] = []
        for relation in relations:
            reappeared = any(
                _tombstoned_on(relation, side)
                and relation.id_of(side) in present[side]
                for side in (Side.A, Side.B)
            )
            if not relation.tombstoned or reappeared:
                kept.append(relation)
                continue
            logger.info("Purging tombstoned relation %s", relation.label())
            if dry_run:
                continue
            try:
                self.relation_store.remove(relation.a_id, relation.b_id)
            except Exception as exc:
                raise FatalSyncError(
                    f"Relation store unavailable: {exc}"
                ) from exc
        return kept

    async def _present_ids(self, side: Side, ids: list[Any]) -> set[Any]:
        """Ids of *ids* that side still reports; all of them if unsure."""
        if not ids:
            return set()
        try:
            versions = await retry_transient(
                lambda: call_with_timeout(
                    self.repos[side].get_versions(ids),
                    self.config.operation_timeout,
                    f"get_versions on {side.name}",
                ),
                self.retry,
                f"tombstone check on {side.name}",
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning(
                "Cannot verify tombstoned ids on %s, keeping their "
                "relations: %s",
                side.name,
                exc,
            )
            return set(ids)
        return {v.id for v in versions}

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    async def _snapshot(
        self,
        side: Side,
        scope: Any,
        relations: list[RelationRecord],
    ) -> SideSnapshot:
        """Enumerate one side and look up relation ids it did not report.

        A transient failure of the enumeration marks the whole side
        unknown; a transient failure of the known-id lookup marks only
        those ids unknown.  Any other failure is fatal.
        """
        repo = self.repos[side]
        timeout = self.config.operation_timeout

        try:
            versions = await retry_transient(
                lambda: call_with_timeout(
                    repo.list_ids_and_versions(scope),
                    timeout,
                    f"enumerate {side.name}",
                ),
                self.retry,
                f"enumerate {side.name}",
                sleep=self._sleep,
            )
        except TransientError as exc:
            logger.warning(
                "Enumeration of %s failed transiently, its relations are "
                "skipped this run: %s",
                side.name,
                exc,
            )
            return SideSnapshot(failed=True)
        except Exception as exc:
            raise FatalSyncError(
                f"Enumeration of {side.name} failed: {exc}"
            ) from exc

        snapshot = SideSnapshot.from_versions(versions)
        missing = [
            r.id_of(side)
            for r in relations
            if r.id_of(side) not in snapshot.current
        ]
        if not missing:
            return snapshot

        try:
            known = await retry_transient(
                lambda: call_with_timeout(
                    repo.get_versions(missing),
                    timeout,
                    f"get_versions on {side.name}",
                ),
                self.retry,
                f"get_versions on {side.name}",
                sleep=self._sleep,
            )
        except TransientError as exc:
            logger.warning(
                "Cannot verify %d relation ids on %s: %s",
                len(missing),
                side.name,
                exc,
            )
            snapshot.unknown.update(missing)
            return snapshot
        except Exception as exc:
            raise FatalSyncError(
                f"Version lookup on {side.name} failed: {exc}"
            ) from exc

        snapshot.known = {v.id: v.version for v in known}
        return snapshot

    def _report_unrelated_unknowns(
        self, change_set: ChangeSet, reporter: RunReporter
    ) -> None:
        for descriptor in change_set.unknown:
            if descriptor.related:
                continue
            reporter.record(
                RunOutcome(
                    a_id=descriptor.id if descriptor.side is Side.A else None,
                    b_id=descriptor.id if descriptor.side is Side.B else None,
                    action=ActionKind.SKIP,
                    status=OutcomeStatus.SKIPPED,
                    error="state unknown; retry next run",
                )
            )


def _planned_outcome(action: Action) -> RunOutcome:
    return RunOutcome(
        a_id=action.a_id,
        b_id=action.b_id,
        action=action.kind,
        status=OutcomeStatus.SKIPPED,
        detail="dry run",
    )


def _tombstoned_on(relation: RelationRecord, side: Side) -> bool:
    return relation.a_tombstoned if side is Side.A else relation.b_tombstoned
