"""In-memory checklist store, its JSON persistence, and the event bus."""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import date
from pathlib import Path
from typing import Any

from fleetcheck.common.catalog import PhaseGroups, group_by_phase
from fleetcheck.common.errors import (
    ChecklistNotFoundError,
    DuplicateKeyError,
    InvalidFormatError,
    TaskNotFoundError,
)
from fleetcheck.common.io import read_json, write_json
from fleetcheck.common.merge import apply_blob, new_checklist
from fleetcheck.common.models import (
    Checklist,
    ChecklistHeader,
    ProgressReport,
    TaskDefinition,
    TaskInstance,
    TaskStatus,
)
from fleetcheck.common.progress import compute_progress

logger = logging.getLogger(__name__)

DEFAULT_REGISTRATION = "NEW"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

EmailHook = Callable[[str, TaskInstance, ChecklistHeader], None]
ChangeListener = Callable[[str, str, ProgressReport | None], None]


def normalize_key(key: str) -> str:
    return key.strip().upper()


class JsonFilePersistence:
    """Write-through mirror of every checklist to a single JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, snapshot: dict[str, Any]) -> None:
        write_json(self.path, snapshot)

    def load_all(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = read_json(self.path)
        except (OSError, json.JSONDecodeError):
            logger.exception("Could not read saved checklists from %s", self.path)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring saved checklists at %s: not an object", self.path)
            return None
        # Single-checklist session blob: {"header": ..., "tasks": [...]}
        if "checklists" not in data and "header" in data:
            header = data.get("header")
            registration = header.get("registration") if isinstance(header, dict) else None
            key = registration.strip().upper() if isinstance(registration, str) and registration.strip() else ""
            return {"activeKey": key or None, "checklists": {key: data}} if key else None
        return data

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class ChecklistStore:
    """Owns the keyed checklist collection and the active-key pointer.

    Every accepted mutation is written through to the persistence adapter and
    announced to ``on_change`` with freshly computed progress. Validation
    always happens before mutation, so a raised error leaves state untouched.
    """

    def __init__(
        self,
        template: Sequence[TaskDefinition],
        persistence: JsonFilePersistence | None = None,
        *,
        default_key: str = DEFAULT_REGISTRATION,
        email_hook: EmailHook | None = None,
        on_change: ChangeListener | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._template: list[TaskDefinition] = list(template)
        self.phase_groups: PhaseGroups = group_by_phase(self._template)
        self.persistence = persistence
        self.default_key = normalize_key(default_key) or DEFAULT_REGISTRATION
        self.email_hook = email_hook
        self.on_change = on_change
        self._today = today
        self._checklists: dict[str, Checklist] = {}
        self.active_key: str | None = None

    @classmethod
    def initialize(
        cls,
        template: Sequence[TaskDefinition],
        persistence: JsonFilePersistence | None = None,
        **kwargs: Any,
    ) -> ChecklistStore:
        """Rehydrate from persistence, or seed one default checklist."""
        store = cls(template, persistence, **kwargs)
        saved = persistence.load_all() if persistence is not None else None
        if saved:
            store._rehydrate(saved)
        if not store._checklists:
            store._checklists[store.default_key] = new_checklist(store.default_key, store._template)
            store.active_key = store.default_key
            store._commit(store.default_key, "seeded")
        logger.info(
            "ChecklistStore ready checklists=%d active=%s",
            len(store._checklists),
            store.active_key,
        )
        return store

    def _rehydrate(self, saved: dict[str, Any]) -> None:
        entries = saved.get("checklists")
        if not isinstance(entries, dict):
            logger.warning("Saved state has no checklists mapping; starting fresh")
            return
        for key, blob in entries.items():
            try:
                checklist = apply_blob(blob, self._template)
            except InvalidFormatError as exc:
                logger.warning("Skipping saved checklist %s: %s", key, exc.message)
                continue
            if checklist.key in self._checklists:
                logger.warning("Skipping duplicate saved checklist %s", checklist.key)
                continue
            self._checklists[checklist.key] = checklist
        active = saved.get("activeKey")
        if isinstance(active, str) and normalize_key(active) in self._checklists:
            self.active_key = normalize_key(active)
        elif self._checklists:
            self.active_key = next(iter(self._checklists))

    # ---- queries ----

    @property
    def template(self) -> list[TaskDefinition]:
        return list(self._template)

    def keys(self) -> list[str]:
        return list(self._checklists)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and normalize_key(key) in self._checklists

    def __len__(self) -> int:
        return len(self._checklists)

    def get(self, key: str) -> Checklist:
        normalized = normalize_key(key)
        checklist = self._checklists.get(normalized)
        if checklist is None:
            raise ChecklistNotFoundError(f"Checklist not found: {normalized}", key=normalized)
        return checklist

    @property
    def active(self) -> Checklist | None:
        if self.active_key is None:
            return None
        return self._checklists.get(self.active_key)

    def progress(self, key: str | None = None) -> ProgressReport:
        checklist = self.get(key) if key is not None else self._require_active()
        return compute_progress(checklist, self.phase_groups)

    def snapshot(self) -> dict[str, Any]:
        return {
            "activeKey": self.active_key,
            "checklists": {key: checklist.to_json_dict() for key, checklist in self._checklists.items()},
        }

    def _require_active(self) -> Checklist:
        active = self.active
        if active is None:
            raise ChecklistNotFoundError("No active checklist")
        return active

    def _get_task(self, key: str, task_id: str) -> tuple[Checklist, TaskInstance]:
        checklist = self.get(key)
        task = checklist.find_task(str(task_id))
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found in checklist {checklist.key}", key=checklist.key)
        return checklist, task

    # ---- write-through ----

    def _commit(self, key: str, action: str) -> None:
        if self.persistence is not None:
            try:
                self.persistence.save(self.snapshot())
            except Exception:
                logger.exception("Persisting checklists failed after %s key=%s", action, key)
        if self.on_change is not None:
            checklist = self._checklists.get(key)
            progress = compute_progress(checklist, self.phase_groups) if checklist is not None else None
            try:
                self.on_change(key, action, progress)
            except Exception:
                logger.exception("Change listener failed after %s key=%s", action, key)

    # ---- mutations ----

    def create_checklist(self, key: str, switch_active: bool = True) -> Checklist:
        normalized = normalize_key(key)
        if not normalized:
            raise ValueError("registration is required")
        if normalized in self._checklists:
            raise DuplicateKeyError(f"A checklist for {normalized} already exists", key=normalized)
        checklist = new_checklist(normalized, self._template)
        self._checklists[normalized] = checklist
        if switch_active or self.active_key is None:
            self.active_key = normalized
        logger.info("Checklist created key=%s active=%s", normalized, self.active_key)
        self._commit(normalized, "created")
        return checklist

    def set_active(self, key: str) -> Checklist:
        checklist = self.get(key)
        self.active_key = checklist.key
        self._commit(checklist.key, "activated")
        return checklist

    def update_task_status(self, key: str, task_id: str, new_status: str) -> bool:
        """Apply a status change; returns False when the status is not permitted."""
        checklist, task = self._get_task(key, task_id)
        if new_status not in task.available_statuses:
            logger.warning(
                "Ignoring status %r for task %s in %s; allowed=%s",
                new_status,
                task.task_id,
                checklist.key,
                task.available_statuses,
            )
            return False

        previous = task.status
        task.status = new_status
        if previous == TaskStatus.PENDING.value and new_status != TaskStatus.PENDING.value:
            task.date_actioned = self._today().isoformat()

        if (
            previous == TaskStatus.PENDING.value
            and new_status == TaskStatus.ACTIONED.value
            and task.requires_email
            and self.email_hook is not None
        ):
            try:
                self.email_hook(checklist.key, task.model_copy(deep=True), checklist.header.model_copy())
            except Exception:
                logger.exception("Email hook failed for task %s in %s", task.task_id, checklist.key)

        logger.debug("Task %s in %s: %s -> %s", task.task_id, checklist.key, previous, new_status)
        self._commit(checklist.key, "status_updated")
        return True

    def set_date_actioned(self, key: str, task_id: str, value: str) -> None:
        value = value.strip()
        if value and not _DATE_RE.match(value):
            raise ValueError(f"dateActioned must be YYYY-MM-DD, got {value!r}")
        if value:
            date.fromisoformat(value)
        checklist, task = self._get_task(key, task_id)
        task.date_actioned = value
        self._commit(checklist.key, "date_updated")

    def set_custom_value(self, key: str, task_id: str, value: str) -> None:
        checklist, task = self._get_task(key, task_id)
        if task.custom_input is None:
            raise ValueError(f"Task {task.task_id} has no custom input")
        if value not in task.custom_input.options:
            raise ValueError(f"{value!r} is not one of {task.custom_input.options}")
        task.custom_value = value
        self._commit(checklist.key, "custom_value_updated")

    def update_header_field(self, key: str, field: str, value: str) -> str:
        """Set one header field; returns the checklist key afterwards."""
        return self.update_header(key, {field: value})

    def update_header(self, key: str, fields: Mapping[str, str]) -> str:
        """Set several header fields at once; returns the checklist key afterwards.

        Every field (and the new registration, if any) is validated before the
        header changes, so a rejected batch leaves the checklist untouched.
        """
        checklist = self.get(key)
        values: dict[str, str] = {}
        for field, value in fields.items():
            name = _header_field_name(field)
            if name is None:
                raise ValueError(f"Unknown header field: {field}")
            values[name] = value

        old = checklist.key
        new = old
        if "registration" in values:
            new = self._check_new_key(old, values.pop("registration"))

        for name, value in values.items():
            setattr(checklist.header, name, value)
        if new != old:
            self._rekey(old, new)
            self._commit(new, "renamed")
        else:
            self._commit(old, "header_updated")
        return new

    def rename_checklist_key(self, old_key: str, new_key: str) -> str:
        old = self.get(old_key).key
        new = self._check_new_key(old, new_key)
        if new == old:
            return old
        self._rekey(old, new)
        self._commit(new, "renamed")
        return new

    def _check_new_key(self, old: str, new_key: str) -> str:
        new = normalize_key(new_key)
        if not new:
            raise ValueError("registration is required")
        if new != old and new in self._checklists:
            raise DuplicateKeyError(f"A checklist for {new} already exists", key=new)
        return new

    def _rekey(self, old: str, new: str) -> None:
        checklist = self._checklists[old]
        checklist.header.registration = new
        self._checklists = {(new if k == old else k): v for k, v in self._checklists.items()}
        if self.active_key == old:
            self.active_key = new
        logger.info("Checklist renamed %s -> %s", old, new)

    def delete_checklist(self, key: str) -> str:
        """Remove a checklist; returns the active key afterwards."""
        checklist = self.get(key)
        del self._checklists[checklist.key]
        if not self._checklists:
            self._checklists[self.default_key] = new_checklist(self.default_key, self._template)
            self.active_key = self.default_key
        elif self.active_key not in self._checklists:
            self.active_key = next(iter(self._checklists))
        logger.info("Checklist deleted key=%s active=%s", checklist.key, self.active_key)
        self._commit(self.active_key, "deleted")
        return self.active_key

    def reset_checklist(self, key: str) -> Checklist:
        normalized = self.get(key).key
        fresh = new_checklist(normalized, self._template)
        self._checklists[normalized] = fresh
        logger.info("Checklist reset key=%s", normalized)
        self._commit(normalized, "reset")
        return fresh

    def put_checklist(self, checklist: Checklist, activate: bool = True) -> Checklist:
        """Insert or replace a whole checklist under its registration."""
        key = checklist.key
        if not key:
            raise ValueError("registration is required")
        self._checklists[key] = checklist
        if activate or self.active_key is None:
            self.active_key = key
        self._commit(key, "imported")
        return checklist

    def replace_template(self, template: Sequence[TaskDefinition]) -> None:
        """Swap the catalog and re-merge every checklist against it."""
        new_template = list(template)
        merged = {key: apply_blob(checklist.to_json_dict(), new_template) for key, checklist in self._checklists.items()}
        self._template = new_template
        self.phase_groups = group_by_phase(new_template)
        self._checklists = merged
        logger.info("Template replaced tasks=%d checklists=%d", len(new_template), len(merged))
        if self.active_key is not None:
            self._commit(self.active_key, "template_replaced")


def _header_field_name(field: str) -> str | None:
    for name, info in ChecklistHeader.model_fields.items():
        if field in (name, info.alias):
            return name
    return None


class EventBus:
    """Fan-out of events to per-subscriber bounded queues (one per SSE client).

    Events published while a channel has no subscribers are dropped; a
    subscriber whose queue is full misses events instead of blocking writers.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.maxsize = maxsize
        self._subscribers: dict[str, list[queue.Queue[str]]] = {}
        self._lock = threading.Lock()

    def publish(self, channel: str, event: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))
        if not subscribers:
            return
        message = json.dumps(event, default=str)
        for subscriber in subscribers:
            try:
                subscriber.put_nowait(message)
            except queue.Full:
                logger.warning("Dropping event for slow subscriber on %s", channel)

    def subscribe(self, channel: str) -> queue.Queue[str]:
        subscriber: queue.Queue[str] = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscriber)
        return subscriber

    def unsubscribe(self, channel: str, subscriber: queue.Queue[str]) -> None:
        with self._lock:
            subscribers = self._subscribers.get(channel, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))
