"""Run reporting: outcome aggregation, sinks and formatting.

- ``RunReporter`` -- per-run aggregator that forwards outcomes to a sink
  and builds the final ``RunReport``.
- ``LoggingSink`` / ``CollectingSink`` -- reporting sinks.
- ``format_run_report`` -- full post-run summary.
- ``format_dry_run_preview`` -- dry-run preview grouped by action.
- ``report_to_json`` -- structured dict for machine consumers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from .interfaces import ReportingSink
from .models import ActionKind, OutcomeStatus, RunOutcome, RunReport

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Sinks
# ------------------------------------------------------------------


class LoggingSink:
    """Forward outcomes to a ``logging`` logger as structured records.

    Each outcome is logged once with the serialised outcome attached as
    the ``sync_outcome`` record attribute (rendered by ``JsonFormatter``).
    Failures log at WARNING, conflicts needing attention at WARNING,
    everything else at DEBUG (skips) or INFO.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logging.getLogger("entity_sync.run")

    def record(self, outcome: RunOutcome) -> None:
        if outcome.status == OutcomeStatus.FAILURE or outcome.requires_attention:
            level = logging.WARNING
        elif outcome.status == OutcomeStatus.SKIPPED:
            level = logging.DEBUG
        else:
            level = logging.INFO
        message = "%s %s: %s"
        args: tuple = (
            outcome.action.value,
            outcome.label(),
            outcome.status.value,
        )
        if outcome.error:
            message += " (%s)"
            args += (outcome.error,)
        self.log.log(
            level,
            message,
            *args,
            extra={"sync_outcome": outcome.model_dump(mode="json")},
        )

    def finish(self, report: RunReport) -> None:
        self.log.info(
            "Run finished for '%s': %d succeeded, %d failed, "
            "%d skipped, %d conflicts",
            report.profile_name,
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
            len(report.conflicts),
        )


class CollectingSink:
    """Keep every outcome and the final report in memory."""

    def __init__(self) -> None:
        self.outcomes: list[RunOutcome] = []
        self.report: RunReport | None = None

    def record(self, outcome: RunOutcome) -> None:
        self.outcomes.append(outcome)

    def finish(self, report: RunReport) -> None:
        self.report = report


# ------------------------------------------------------------------
# Aggregation
# ------------------------------------------------------------------


class RunReporter:
    """Aggregate the outcomes of one run.

    A reporter is created per run.  It never mutates engine state.

    Args:
        sink: Destination for structured outcomes.
        profile_name: Name of the sync profile.
        dry_run: Whether the run applies nothing.
    """

    def __init__(
        self,
        sink: ReportingSink,
        profile_name: str,
        dry_run: bool = False,
    ) -> None:
        self.sink = sink
        self.profile_name = profile_name
        self.dry_run = dry_run
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.outcomes: list[RunOutcome] = []
        self._finished = False

    def record(self, outcome: RunOutcome) -> None:
        """Keep *outcome* and forward it to the sink."""
        if self._finished:
            raise RuntimeError("Reporter already finished")
        self.outcomes.append(outcome)
        try:
            self.sink.record(outcome)
        except Exception:
            logger.exception(
                "Reporting sink failed to record %s %s",
                outcome.action.value,
                outcome.label(),
            )

    def finish(self, cancelled: bool = False) -> RunReport:
        """Build the ``RunReport`` and flush it to the sink."""
        report = RunReport(
            profile_name=self.profile_name,
            dry_run=self.dry_run,
            cancelled=cancelled,
            outcomes=list(self.outcomes),
            started_at=self.started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        self._finished = True
        try:
            self.sink.finish(report)
        except Exception:
            logger.exception("Reporting sink failed to finish the run report")
        return report


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------

_SECTION_TITLES = [
    (ActionKind.CREATE_ON_B, "Created on B:"),
    (ActionKind.CREATE_ON_A, "Created on A:"),
    (ActionKind.UPDATE_B, "Updated on B:"),
    (ActionKind.UPDATE_A, "Updated on A:"),
    (ActionKind.DELETE_B, "Deleted on B:"),
    (ActionKind.DELETE_A, "Deleted on A:"),
    (ActionKind.DROP_RELATION, "Relations dropped:"),
]


def format_run_report(report: RunReport) -> str:
    """Format a complete run report as human-readable text.

    Sections are only included when they contain at least one entry.
    Skipped entities are summarised by count only to avoid excessive
    output.

    Args:
        report: The completed run report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync report for '{report.profile_name}'"
    if report.dry_run:
        header += " (DRY RUN)"
    if report.cancelled:
        header += " (CANCELLED)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Processed {len(report.outcomes)} entities: "
        f"{len(report.succeeded)} succeeded, "
        f"{len(report.failed)} failed, "
        f"{len(report.conflicts)} conflicts, "
        f"{len(report.skipped)} skipped"
    )
    lines.append("")

    for kind, title in _SECTION_TITLES:
        entries = [o for o in report.succeeded if o.action == kind]
        if not entries:
            continue
        lines.append(title)
        for o in entries:
            line = f"  {o.label()}"
            if o.detail:
                line += f" ({o.detail})"
            lines.append(line)
        lines.append("")

    if report.conflicts:
        lines.append("Conflicts (operator attention required):")
        for o in report.conflicts:
            lines.append(f"  {o.label()}: {o.error or 'conflict'}")
        lines.append("")

    if report.failed:
        lines.append("Errors:")
        for o in report.failed:
            lines.append(f"  [{o.action.value}] {o.label()}: {o.error}")
        lines.append("")

    warned = [o for o in report.outcomes if o.warnings]
    if warned:
        lines.append("Mapping warnings:")
        for o in warned:
            for w in o.warnings:
                lines.append(f"  {o.label()}: {w}")
        lines.append("")

    if report.skipped:
        lines.append(f"Skipped: {len(report.skipped)} entities")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: RunReport) -> str:
    """Format a dry-run preview grouped by action type.

    Each proposed action is shown as ``[ACTION] a_id <-> b_id``.

    Args:
        report: A dry-run report (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Profile: {report.profile_name}")
    lines.append("")

    groups: dict[ActionKind, list[RunOutcome]] = defaultdict(list)
    for o in report.outcomes:
        groups[o.action].append(o)

    display_order = [kind for kind in ActionKind if kind != ActionKind.SKIP]

    for action in display_order:
        if action not in groups:
            continue
        label = action.value.upper().replace("_", " ")
        lines.append(f"[{label}]")
        for o in groups[action]:
            lines.append(f"  {o.label()}")
        lines.append("")

    skip_count = len(groups.get(ActionKind.SKIP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} entities (unchanged)")
        lines.append("")

    if not any(a != ActionKind.SKIP for a in groups):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: RunReport) -> dict:
    """Convert a run report to a structured dict for JSON serialisation.

    Args:
        report: The run report.

    Returns:
        Dict with profile info, counts, and per-outcome details.
    """
    outcomes = []
    for o in report.outcomes:
        entry: dict = {
            "a_id": o.a_id,
            "b_id": o.b_id,
            "action": o.action.value,
            "status": o.status.value,
        }
        if o.error:
            entry["error"] = o.error
        if o.requires_attention:
            entry["requires_attention"] = True
        if o.warnings:
            entry["warnings"] = list(o.warnings)
        if o.detail:
            entry["detail"] = o.detail
        outcomes.append(entry)

    counts = report.counts()
    return {
        "profile_name": report.profile_name,
        "dry_run": report.dry_run,
        "cancelled": report.cancelled,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.outcomes),
            **counts["statuses"],
            "by_action": counts["actions"],
        },
        "outcomes": outcomes,
    }
