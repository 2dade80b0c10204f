"""Reconciliation of external checklist blobs against the current template.

A blob is any JSON-shaped snapshot previously written by this system (local
state, an exported file, or a remote backup), possibly produced under an
older catalog. ``apply_blob`` never mutates its inputs and always returns a
fresh Checklist whose tasks are exactly the current template's, in template
order.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from fleetcheck.common.errors import InvalidFormatError
from fleetcheck.common.models import Checklist, ChecklistHeader, TaskDefinition, TaskInstance


def default_header(registration: str) -> ChecklistHeader:
    return ChecklistHeader(registration=registration)


def new_checklist(registration: str, template: Sequence[TaskDefinition]) -> Checklist:
    return Checklist(
        header=default_header(registration),
        tasks=[TaskInstance.from_definition(definition) for definition in template],
    )


def parse_blob(text: str | bytes) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidFormatError(f"Blob is not valid JSON: {exc}") from exc


def _validate(blob: Any) -> tuple[Mapping[str, Any], list[Any]]:
    if not isinstance(blob, Mapping):
        raise InvalidFormatError("Blob must be a JSON object with header and tasks")
    header = blob.get("header")
    if not isinstance(header, Mapping):
        raise InvalidFormatError("Blob is missing a header object")
    registration = header.get("registration")
    if not isinstance(registration, str) or not registration.strip():
        raise InvalidFormatError("Blob header has no registration")
    tasks = blob.get("tasks")
    if not isinstance(tasks, list):
        raise InvalidFormatError("Blob is missing a tasks array", key=registration.strip().upper())
    return header, tasks


def _header_value(raw: Mapping[str, Any], name: str, alias: str | None) -> str | None:
    for candidate in (alias, name):
        if candidate and candidate in raw:
            value = raw[candidate]
            if isinstance(value, str) and value.strip():
                return value
    return None


def merge_header(raw: Mapping[str, Any]) -> ChecklistHeader:
    """Overlay recognized, non-empty blob fields on the default header."""
    values: dict[str, str] = {}
    for name, field in ChecklistHeader.model_fields.items():
        value = _header_value(raw, name, field.alias)
        if value is not None:
            values[name] = value
    return ChecklistHeader(**values)


def _restore_task(task: TaskInstance, entry: Mapping[str, Any]) -> None:
    # Only overwrite what the blob actually carries; absent or invalid values
    # leave the fresh defaults in place.
    status = entry.get("status")
    if isinstance(status, str) and status in task.available_statuses:
        task.status = status

    date_actioned = entry.get("dateActioned", entry.get("date_actioned"))
    if isinstance(date_actioned, str):
        task.date_actioned = date_actioned

    custom_value = entry.get("customValue", entry.get("custom_value"))
    if isinstance(custom_value, str) and custom_value and task.custom_input is not None:
        if custom_value in task.custom_input.options:
            task.custom_value = custom_value


def _index_tasks(entries: list[Any]) -> dict[str, Mapping[str, Any]]:
    lookup: dict[str, Mapping[str, Any]] = {}
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        task_id = entry.get("taskId", entry.get("task_id"))
        if task_id is None or isinstance(task_id, bool):
            continue
        lookup[str(task_id)] = entry
    return lookup


def apply_blob(blob: Any, template: Sequence[TaskDefinition]) -> Checklist:
    """Build a Checklist from ``template`` carrying the progress found in ``blob``.

    Tasks missing from the blob come back Pending; blob tasks unknown to the
    template are dropped. Raises InvalidFormatError before building anything
    when the blob lacks a registration or a tasks array.
    """
    header_raw, task_entries = _validate(blob)
    lookup = _index_tasks(task_entries)

    checklist = new_checklist(header_raw["registration"], template)
    for task in checklist.tasks:
        entry = lookup.get(task.task_id)
        if entry is not None:
            _restore_task(task, entry)

    checklist.header = merge_header(header_raw)
    return checklist
