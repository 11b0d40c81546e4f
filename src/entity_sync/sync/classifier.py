"""Action classification and conflict policies.

Turns the ``ChangeSet`` produced by the delta resolver into one ``Action``
per relation (or per unrelated new id) using a fixed decision table.
Conflicting status pairs are handed to a pluggable conflict policy:

- ``ReportOnlyPolicy``: never mutates; the conflict is reported for an
  operator to resolve (default, no implicit data loss).
- ``PreferAPolicy``: side A wins every conflict.
- ``PreferBPolicy``: side B wins every conflict.

The ``create_conflict_policy()`` factory maps config strategy strings to
policy instances.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .delta import ChangeSet
from .models import (
    Action,
    ActionKind,
    ChangeDescriptor,
    ChangeKind,
    RelationStatus,
    Side,
)

logger = logging.getLogger(__name__)

_U = ChangeKind.UNCHANGED
_C = ChangeKind.CHANGED
_R = ChangeKind.REMOVED

# (A status, B status) -> action; pairs absent here are conflicts.
_DECISION_TABLE: dict[tuple[ChangeKind, ChangeKind], ActionKind] = {
    (_U, _U): ActionKind.SKIP,
    (_C, _U): ActionKind.UPDATE_B,
    (_U, _C): ActionKind.UPDATE_A,
    (_R, _U): ActionKind.DELETE_B,
    (_U, _R): ActionKind.DELETE_A,
    (_R, _R): ActionKind.DROP_RELATION,
}

_CONFLICT_REASONS: dict[tuple[ChangeKind, ChangeKind], str] = {
    (_C, _C): "changed on both sides",
    (_R, _C): "deleted on A, changed on B",
    (_C, _R): "changed on A, deleted on B",
}


# ---------------------------------------------------------------------------
# Conflict policies
# ---------------------------------------------------------------------------


class ConflictPolicy(Protocol):
    """Protocol that all conflict policies must satisfy."""

    name: str

    def resolve(self, status: RelationStatus, reason: str) -> Action:
        """Decide what to do with a conflicting relation.

        Args:
            status: The conflicting status pair.
            reason: Human-readable description of the conflict.

        Returns:
            The action to apply.  Actions that mutate a store must be
            flagged with ``conflict=True``.
        """
        ...  # pragma: no cover


class ReportOnlyPolicy:
    """Leave both stores untouched and flag the relation for review."""

    name = "report-only"

    def resolve(self, status: RelationStatus, reason: str) -> Action:
        return _action(ActionKind.CONFLICT, status, reason=reason)


class _PreferSidePolicy:
    """Resolve every conflict in favour of ``winner``."""

    winner: Side

    def resolve(self, status: RelationStatus, reason: str) -> Action:
        winner = self.winner
        loser = winner.other
        win_kind = status.of(winner).kind
        lose_kind = status.of(loser).kind
        reason = f"{reason}; {winner.name} wins"

        if win_kind == ChangeKind.CHANGED and lose_kind == ChangeKind.CHANGED:
            kind = _update_on(loser)
        elif win_kind == ChangeKind.REMOVED:
            kind = _delete_on(loser)
        else:
            # Winner edited, loser deleted: forget the relation so the
            # winner's entity is re-created on the loser side next run.
            kind = ActionKind.DROP_RELATION
        return _action(kind, status, conflict=True, reason=reason)


class PreferAPolicy(_PreferSidePolicy):
    """Side A wins every conflict."""

    name = "prefer-a"
    winner = Side.A


class PreferBPolicy(_PreferSidePolicy):
    """Side B wins every conflict."""

    name = "prefer-b"
    winner = Side.B


_POLICY_MAP: dict[str, type] = {
    "report-only": ReportOnlyPolicy,
    "prefer-a": PreferAPolicy,
    "prefer-b": PreferBPolicy,
}


def create_conflict_policy(strategy: str) -> ConflictPolicy:
    """Create a conflict policy for the given strategy string.

    Args:
        strategy: One of ``"report-only"``, ``"prefer-a"``, ``"prefer-b"``.

    Returns:
        A ``ConflictPolicy`` implementation instance.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    cls = _POLICY_MAP.get(strategy)
    if cls is None:
        raise ValueError(
            f"Unknown conflict policy: '{strategy}'. Valid policies: {sorted(_POLICY_MAP.keys())}"
        )
    return cls()  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class ActionClassifier:
    """Map status pairs to actions.

    Args:
        policy: Conflict policy applied to conflicting pairs.
        direction: ``"bidirectional"``, ``"a-to-b"`` or ``"b-to-a"``.
            One-way directions downgrade writes to the protected side to
            ``SKIP``.
    """

    def __init__(
        self,
        policy: ConflictPolicy | None = None,
        direction: str = "bidirectional",
    ) -> None:
        if direction not in ("bidirectional", "a-to-b", "b-to-a"):
            raise ValueError(f"Unknown sync direction: '{direction}'")
        self.policy = policy or ReportOnlyPolicy()
        self.direction = direction

    def classify(self, change_set: ChangeSet) -> list[Action]:
        """Produce the ordered action list for a change set.

        Relation actions come first (in relation order), then creations
        for ids new on A, then creations for ids new on B.
        """
        actions = [self.classify_relation(s) for s in change_set.statuses]
        actions.extend(self.classify_added(d) for d in change_set.added_a)
        actions.extend(self.classify_added(d) for d in change_set.added_b)
        return actions

    def classify_relation(self, status: RelationStatus) -> Action:
        """Classify one existing relation.  Never yields a creation."""
        a_kind, b_kind = status.a.kind, status.b.kind

        if ChangeKind.UNKNOWN in (a_kind, b_kind):
            action = _action(
                ActionKind.SKIP,
                status,
                reason="state unknown; retry next run",
            )
        elif (a_kind, b_kind) in _DECISION_TABLE:
            action = _action(_DECISION_TABLE[(a_kind, b_kind)], status)
        else:
            reason = _CONFLICT_REASONS.get(
                (a_kind, b_kind), f"{a_kind.value}/{b_kind.value}"
            )
            action = self.policy.resolve(status, reason)
            logger.info(
                "Conflict on %s (%s) -> %s",
                status.relation.label(),
                reason,
                action.kind.value,
            )

        return self._filter_by_direction(action)

    def classify_added(self, descriptor: ChangeDescriptor) -> Action:
        """Classify an id that has no relation.

        Direction depends only on which repository surfaced the id.
        """
        if descriptor.side is Side.A:
            action = Action(kind=ActionKind.CREATE_ON_B, a=descriptor)
        else:
            action = Action(kind=ActionKind.CREATE_ON_A, b=descriptor)
        return self._filter_by_direction(action)

    def _filter_by_direction(self, action: Action) -> Action:
        """Downgrade actions that are not allowed by the direction."""
        if self.direction == "bidirectional":
            return action

        protected = Side.A if self.direction == "a-to-b" else Side.B
        if action.kind.target is not protected:
            return action

        logger.info(
            "Downgrading %s to SKIP (direction=%s)",
            action.kind.value,
            self.direction,
        )
        return action.model_copy(
            update={
                "kind": ActionKind.SKIP,
                "conflict": False,
                "reason": f"direction {self.direction}",
            }
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _action(
    kind: ActionKind,
    status: RelationStatus,
    conflict: bool = False,
    reason: str | None = None,
) -> Action:
    return Action(
        kind=kind,
        relation=status.relation,
        a=status.a,
        b=status.b,
        conflict=conflict,
        reason=reason,
    )


def _update_on(side: Side) -> ActionKind:
    return ActionKind.UPDATE_A if side is Side.A else ActionKind.UPDATE_B


def _delete_on(side: Side) -> ActionKind:
    return ActionKind.DELETE_A if side is Side.A else ActionKind.DELETE_B
