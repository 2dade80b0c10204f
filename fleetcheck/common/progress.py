"""Completion statistics derived from task statuses."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from fleetcheck.common.models import Checklist, ProgressReport, ProgressStats, TaskDefinition, TaskInstance


def _stats(tasks: Iterable[TaskInstance]) -> ProgressStats:
    total = 0
    completed = 0
    for task in tasks:
        total += 1
        if not task.is_pending:
            completed += 1
    percent = completed * 100 / total if total > 0 else 0.0
    return ProgressStats(completed=completed, total=total, percent=percent)


def compute_progress(
    checklist: Checklist,
    phase_groups: Mapping[str, Sequence[TaskDefinition]] | None = None,
) -> ProgressReport:
    """Overall and per-phase progress. Pure; recompute after every change."""
    if phase_groups is None:
        phase_ids: dict[str, set[str]] = {}
        for task in checklist.tasks:
            phase_ids.setdefault(task.phase, set()).add(task.task_id)
    else:
        phase_ids = {
            phase: {definition.task_id for definition in definitions}
            for phase, definitions in phase_groups.items()
        }

    per_phase = {
        phase: _stats(task for task in checklist.tasks if task.task_id in ids)
        for phase, ids in phase_ids.items()
    }
    return ProgressReport(overall=_stats(checklist.tasks), per_phase=per_phase)


def format_progress(stats: ProgressStats) -> str:
    return f"{stats.completed}/{stats.total} tasks completed ({stats.percent:.1f}%)"
