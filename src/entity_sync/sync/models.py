"""Pydantic models for the entity reconciliation engine.

Defines the core data contracts used across all sync modules:

- ``Side``, ``ChangeKind``, ``ActionKind``, ``OutcomeStatus``: enums.
- ``EntityVersion``: an id/version pair as reported by a repository.
- ``RelationRecord``: persisted correspondence between an A and a B entity.
- ``ChangeDescriptor``: per-side change status of one entity.
- ``RelationStatus``: both descriptors of one relation, ready to classify.
- ``Action``: the operation chosen for one relation in one run.
- ``RunOutcome``: result of applying one action.
- ``RunReport``: aggregate results for a full run.

Ids and versions are opaque to the engine: any hashable value works and
versions are only ever compared for equality.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel


class Side(str, Enum):
    """One of the two synchronised stores."""

    A = "a"
    B = "b"

    @property
    def other(self) -> Side:
        return Side.B if self is Side.A else Side.A


class ChangeKind(str, Enum):
    """Change status of an entity on one side since the last run."""

    ADDED = "added"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    UNKNOWN = "unknown"


class ActionKind(str, Enum):
    """Possible operations for one relation."""

    CREATE_ON_A = "create_on_a"
    CREATE_ON_B = "create_on_b"
    UPDATE_A = "update_a"
    UPDATE_B = "update_b"
    DELETE_A = "delete_a"
    DELETE_B = "delete_b"
    DROP_RELATION = "drop_relation"
    CONFLICT = "conflict"
    SKIP = "skip"

    @property
    def target(self) -> Side | None:
        """Side written by this action, or ``None`` for non-mutating kinds."""
        return _ACTION_TARGETS.get(self)


_ACTION_TARGETS = {
    ActionKind.CREATE_ON_A: Side.A,
    ActionKind.UPDATE_A: Side.A,
    ActionKind.DELETE_A: Side.A,
    ActionKind.CREATE_ON_B: Side.B,
    ActionKind.UPDATE_B: Side.B,
    ActionKind.DELETE_B: Side.B,
}


class OutcomeStatus(str, Enum):
    """Result of applying one action."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


class EntityVersion(BaseModel):
    """An entity id together with its current version token."""

    id: Any
    version: Any

    model_config = {"frozen": True}


class RelationRecord(BaseModel):
    """Persisted record that two entities represent the same item.

    Attributes:
        a_id: Id of the entity in repository A.
        a_version: Version of the A entity when last synchronised.
        b_id: Id of the entity in repository B.
        b_version: Version of the B entity when last synchronised.
        a_tombstoned: A was seen removed but the relation was kept.
        b_tombstoned: B was seen removed but the relation was kept.
    """

    a_id: Any
    a_version: Any = None
    b_id: Any
    b_version: Any = None
    a_tombstoned: bool = False
    b_tombstoned: bool = False

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[Any, Any]:
        return (self.a_id, self.b_id)

    @property
    def tombstoned(self) -> bool:
        return self.a_tombstoned or self.b_tombstoned

    def id_of(self, side: Side) -> Any:
        return self.a_id if side is Side.A else self.b_id

    def version_of(self, side: Side) -> Any:
        return self.a_version if side is Side.A else self.b_version

    def label(self) -> str:
        return f"{self.a_id} <-> {self.b_id}"


class ChangeDescriptor(BaseModel):
    """Change status of one entity on one side.

    Attributes:
        side: Which repository reported the entity.
        id: The entity id on that side.
        kind: Detected change kind.
        version: Current version, ``None`` when removed or unknown.
        related: ``True`` when a relation exists for the id.
    """

    side: Side
    id: Any
    kind: ChangeKind
    version: Any = None
    related: bool = False

    model_config = {"frozen": True}


class RelationStatus(BaseModel):
    """Status pair for one existing relation."""

    relation: RelationRecord
    a: ChangeDescriptor
    b: ChangeDescriptor

    model_config = {"frozen": True}

    def of(self, side: Side) -> ChangeDescriptor:
        return self.a if side is Side.A else self.b


class Action(BaseModel):
    """Operation chosen for one relation (or unrelated entity) in one run.

    Attributes:
        kind: The operation to apply.
        relation: Existing relation, ``None`` for creations from new ids.
        a: Change status of the A entity, when known.
        b: Change status of the B entity, when known.
        conflict: ``True`` when the action resolves a conflict by policy.
        reason: Short human-readable explanation of the decision.
    """

    kind: ActionKind
    relation: RelationRecord | None = None
    a: ChangeDescriptor | None = None
    b: ChangeDescriptor | None = None
    conflict: bool = False
    reason: str | None = None

    model_config = {"frozen": True}

    def of(self, side: Side) -> ChangeDescriptor | None:
        return self.a if side is Side.A else self.b

    @property
    def a_id(self) -> Any:
        if self.relation is not None:
            return self.relation.a_id
        return self.a.id if self.a is not None else None

    @property
    def b_id(self) -> Any:
        if self.relation is not None:
            return self.relation.b_id
        return self.b.id if self.b is not None else None

    @property
    def key(self) -> tuple[Any, Any]:
        """Lock key: the relation key, or the source id for creations."""
        if self.relation is not None:
            return ("relation", self.relation.a_id, self.relation.b_id)
        if self.a is not None:
            return ("a", self.a.id)
        return ("b", self.b.id if self.b is not None else None)


class RunOutcome(BaseModel):
    """Result of applying one action.

    Attributes:
        a_id: A-side id involved (new id after a creation on A).
        b_id: B-side id involved (new id after a creation on B).
        action: The action kind that was applied (after re-evaluation).
        status: Success, failure, skipped or conflict.
        error: Error message when the action did not succeed.
        requires_attention: Operator must look at this entity.
        warnings: Non-fatal mapping warnings.
        detail: Optional description of the entity that was written.
        attempts: Number of apply attempts made.
    """

    a_id: Any = None
    b_id: Any = None
    action: ActionKind
    status: OutcomeStatus
    error: str | None = None
    requires_attention: bool = False
    warnings: list[str] = []
    detail: str | None = None
    attempts: int = 0

    model_config = {"frozen": True}

    def label(self) -> str:
        return f"{self.a_id} <-> {self.b_id}"


class RunReport(BaseModel):
    """Aggregate report for a full run.

    Attributes:
        profile_name: Name of the sync profile used.
        dry_run: Whether this was a dry-run (no changes applied).
        cancelled: Whether the run was cancelled before finishing.
        outcomes: List of individual outcomes.
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run completed.
    """

    profile_name: str
    dry_run: bool = False
    cancelled: bool = False
    outcomes: list[RunOutcome] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def by_action(self, kind: ActionKind) -> list[RunOutcome]:
        return [o for o in self.outcomes if o.action == kind]

    def by_status(self, status: OutcomeStatus) -> list[RunOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[RunOutcome]:
        return self.by_status(OutcomeStatus.SUCCESS)

    @property
    def failed(self) -> list[RunOutcome]:
        return self.by_status(OutcomeStatus.FAILURE)

    @property
    def skipped(self) -> list[RunOutcome]:
        return self.by_status(OutcomeStatus.SKIPPED)

    @property
    def conflicts(self) -> list[RunOutcome]:
        return self.by_status(OutcomeStatus.CONFLICT)

    @property
    def needs_attention(self) -> list[RunOutcome]:
        return [o for o in self.outcomes if o.requires_attention]

    @property
    def mutations(self) -> list[RunOutcome]:
        """Successful outcomes that wrote to a repository."""
        return [
            o
            for o in self.succeeded
            if o.action.target is not None
        ]

    def counts(self) -> dict[str, dict[str, int]]:
        """Counts per action kind and per status."""
        actions = {kind.value: 0 for kind in ActionKind}
        statuses = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            actions[outcome.action.value] += 1
            statuses[outcome.status.value] += 1
        return {"actions": actions, "statuses": statuses}

    def summary(self) -> str:
        """Format a human-readable summary of the run.

        Returns:
            Multi-line summary string with counts by status.
        """
        header = f"Sync report for profile '{self.profile_name}'"
        if self.dry_run:
            header += " (dry run)"
        if self.cancelled:
            header += " (cancelled)"
        lines = [
            header,
            f"  Succeeded:  {len(self.succeeded)}",
            f"  Failed:     {len(self.failed)}",
            f"  Skipped:    {len(self.skipped)}",
            f"  Conflicts:  {len(self.conflicts)}",
            f"  Total:      {len(self.outcomes)}",
        ]
        return "\n".join(lines)
