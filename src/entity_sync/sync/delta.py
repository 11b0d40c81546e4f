"""Version delta resolution.

Compares what each repository currently reports against the relation
table and produces a ``ChangeSet``: a status pair for every relation plus
the ids that appeared on either side without a relation.

Each side is compared against its own recorded version only.  Versions
from heterogeneous stores (Outlook modification times, server ETags) are
never compared with each other and never assumed to be ordered: equality
means unchanged, anything else means possibly changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .models import (
    ChangeDescriptor,
    ChangeKind,
    EntityVersion,
    RelationRecord,
    RelationStatus,
    Side,
)

logger = logging.getLogger(__name__)


@dataclass
class SideSnapshot:
    """What one repository reported during this run.

    Attributes:
        current: Versions from the scoped enumeration, by id.
        known: Versions of relation ids queried directly because the
            enumeration did not report them (entity left the scope).
        unknown: Ids whose state could not be determined (transient
            failure); excluded from processing this run.
        failed: The whole enumeration failed transiently.
    """

    current: dict[Any, Any] = field(default_factory=dict)
    known: dict[Any, Any] = field(default_factory=dict)
    unknown: set[Any] = field(default_factory=set)
    failed: bool = False

    @classmethod
    def from_versions(
        cls, versions: Iterable[EntityVersion]
    ) -> SideSnapshot:
        return cls(current={v.id: v.version for v in versions})

    def version_of(self, entity_id: Any) -> Any:
        if entity_id in self.current:
            return self.current[entity_id]
        return self.known.get(entity_id)

    def reports(self, entity_id: Any) -> bool:
        return entity_id in self.current or entity_id in self.known


@dataclass
class ChangeSet:
    """Result of a delta computation.

    Attributes:
        statuses: One status pair per existing relation.
        added_a: Unrelated ids surfaced by the A enumeration.
        added_b: Unrelated ids surfaced by the B enumeration.
        unknown: Descriptors excluded this run (transient failures).
    """

    statuses: list[RelationStatus] = field(default_factory=list)
    added_a: list[ChangeDescriptor] = field(default_factory=list)
    added_b: list[ChangeDescriptor] = field(default_factory=list)
    unknown: list[ChangeDescriptor] = field(default_factory=list)

    def is_empty(self) -> bool:
        """``True`` when nothing changed on either side."""
        return (
            not self.added_a
            and not self.added_b
            and all(
                s.a.kind == ChangeKind.UNCHANGED
                and s.b.kind == ChangeKind.UNCHANGED
                for s in self.statuses
            )
        )


def side_status(
    side: Side,
    relation: RelationRecord,
    snapshot: SideSnapshot,
) -> ChangeDescriptor:
    """Classify one side of one relation.

    Args:
        side: Which side to classify.
        relation: The stored relation.
        snapshot: What that side's repository reported.

    Returns:
        A descriptor with kind ``unknown``, ``removed``, ``changed`` or
        ``unchanged``.
    """
    entity_id = relation.id_of(side)

    if snapshot.failed or entity_id in snapshot.unknown:
        kind = ChangeKind.UNKNOWN
        version = None
    elif not snapshot.reports(entity_id):
        kind = ChangeKind.REMOVED
        version = None
    else:
        version = snapshot.version_of(entity_id)
        if version != relation.version_of(side):
            kind = ChangeKind.CHANGED
        else:
            kind = ChangeKind.UNCHANGED

    return ChangeDescriptor(
        side=side,
        id=entity_id,
        kind=kind,
        version=version,
        related=True,
    )


def relation_status(
    relation: RelationRecord,
    snapshot_a: SideSnapshot,
    snapshot_b: SideSnapshot,
) -> RelationStatus:
    """Build the status pair of a single relation."""
    return RelationStatus(
        relation=relation,
        a=side_status(Side.A, relation, snapshot_a),
        b=side_status(Side.B, relation, snapshot_b),
    )


def compute_delta(
    snapshot_a: SideSnapshot,
    snapshot_b: SideSnapshot,
    relations: Iterable[RelationRecord],
) -> ChangeSet:
    """Compute the changes on both sides since the last successful run.

    Args:
        snapshot_a: Current state reported by repository A.
        snapshot_b: Current state reported by repository B.
        relations: Every stored relation.

    Returns:
        The ``ChangeSet`` for this run.  Ids new on both sides at once
        are treated as independent entities; no matching by content is
        attempted.
    """
    change_set = ChangeSet()
    related_a: set[Any] = set()
    related_b: set[Any] = set()

    for relation in relations:
        related_a.add(relation.a_id)
        related_b.add(relation.b_id)
        status = relation_status(relation, snapshot_a, snapshot_b)
        change_set.statuses.append(status)
        for descriptor in (status.a, status.b):
            if descriptor.kind == ChangeKind.UNKNOWN:
                change_set.unknown.append(descriptor)

    for side, snapshot, related, added in (
        (Side.A, snapshot_a, related_a, change_set.added_a),
        (Side.B, snapshot_b, related_b, change_set.added_b),
    ):
        for entity_id, version in snapshot.current.items():
            if entity_id in related:
                continue
            if entity_id in snapshot.unknown:
                change_set.unknown.append(
                    ChangeDescriptor(
                        side=side, id=entity_id, kind=ChangeKind.UNKNOWN
                    )
                )
                continue
            added.append(
                ChangeDescriptor(
                    side=side,
                    id=entity_id,
                    kind=ChangeKind.ADDED,
                    version=version,
                )
            )

    logger.debug(
        "Delta: %d relations, %d added on A, %d added on B, %d unknown",
        len(change_set.statuses),
        len(change_set.added_a),
        len(change_set.added_b),
        len(change_set.unknown),
    )
    return change_set
