"""Generic two-sided entity reconciliation engine.

Public API for synchronising entity collections (contacts, appointments,
distribution lists) held in two independent stores, typically a desktop
groupware client (side A) and a CalDAV/CardDAV server (side B).

Architecture
------------
Each run compares every side against the versions recorded in the
relation table at the end of the previous run.  Versions from the two
stores are never compared with each other; equality means unchanged.

Modules:

- ``engine``      -- ``SyncEngine``: orchestrates a full run.
- ``delta``       -- ``compute_delta``: per-side change detection.
- ``classifier``  -- ``ActionClassifier`` and conflict policies.
- ``executor``    -- ``ReconciliationExecutor``: isolated, concurrent apply.
- ``state``       -- ``JsonRelationStore`` / ``InMemoryRelationStore``.
- ``reporter``    -- ``RunReporter``, sinks and report formatting.
- ``interfaces``  -- repository, mapper, store and sink protocols.
- ``models``      -- ``RelationRecord``, ``Action``, ``RunOutcome``,
  ``RunReport`` and enums.

Usage example
-------------
::

    from entity_sync.config import load_settings
    from entity_sync.sync import (
        SyncEngine,
        format_dry_run_preview,
        format_run_report,
    )

    settings = load_settings()
    engine = SyncEngine.from_config(
        outlook_contacts,        # EntityRepository for side A
        carddav_contacts,        # EntityRepository for side B
        contact_mapper,          # EntityMapper
        settings,
        profile_name="contacts",
    )

    preview = await engine.run(dry_run=True)
    print(format_dry_run_preview(preview))

    report = await engine.run()
    print(format_run_report(report))
"""

from .classifier import (
    ActionClassifier,
    PreferAPolicy,
    PreferBPolicy,
    ReportOnlyPolicy,
    create_conflict_policy,
)
from .delta import ChangeSet, SideSnapshot, compute_delta
from .engine import SyncEngine
from .executor import CancellationToken, ReconciliationExecutor
from .interfaces import (
    EntityLogMessageFactory,
    EntityMapper,
    EntityRepository,
    MappingLogger,
    NullEntityLogMessageFactory,
    RelationStore,
    ReportingSink,
)
from .models import (
    Action,
    ActionKind,
    ChangeDescriptor,
    ChangeKind,
    EntityVersion,
    OutcomeStatus,
    RelationRecord,
    RelationStatus,
    RunOutcome,
    RunReport,
    Side,
)
from .reporter import (
    CollectingSink,
    LoggingSink,
    RunReporter,
    format_dry_run_preview,
    format_run_report,
    report_to_json,
)
from .retry import RetryPolicy
from .state import InMemoryRelationStore, JsonRelationStore

__all__ = [
    "Action",
    "ActionClassifier",
    "ActionKind",
    "CancellationToken",
    "ChangeDescriptor",
    "ChangeKind",
    "ChangeSet",
    "CollectingSink",
    "EntityLogMessageFactory",
    "EntityMapper",
    "EntityRepository",
    "EntityVersion",
    "InMemoryRelationStore",
    "JsonRelationStore",
    "LoggingSink",
    "MappingLogger",
    "NullEntityLogMessageFactory",
    "OutcomeStatus",
    "PreferAPolicy",
    "PreferBPolicy",
    "ReconciliationExecutor",
    "RelationRecord",
    "RelationStatus",
    "RelationStore",
    "ReportOnlyPolicy",
    "ReportingSink",
    "RetryPolicy",
    "RunOutcome",
    "RunReport",
    "RunReporter",
    "Side",
    "SideSnapshot",
    "SyncEngine",
    "compute_delta",
    "create_conflict_policy",
    "format_dry_run_preview",
    "format_run_report",
    "report_to_json",
]
