"""Checklist coordination: store access, imports, backups, and email dispatch."""

from __future__ import annotations

import contextlib
import json
import logging
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fleetcheck.common.catalog import load_email_templates, load_template
from fleetcheck.common.config import Settings
from fleetcheck.common.errors import EmailError, OperationInProgressError, RemoteBackupError
from fleetcheck.common.io import append_jsonl, read_jsonl, utcnow_iso
from fleetcheck.common.merge import apply_blob, parse_blob
from fleetcheck.common.models import Checklist, ChecklistHeader, ProgressReport, TaskDefinition, TaskInstance
from fleetcheck.common.progress import compute_progress, format_progress
from fleetcheck.common.store import ChecklistStore, EventBus, JsonFilePersistence
from fleetcheck.tools.email_notifier import EmailNotifier, ResendClient
from fleetcheck.tools.github_backup import BackupEntry, GitHubBackup, backup_path

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "checklists"


class BusyGate:
    """Cooperative flag serializing checklist-replacing operations.

    A second operation arriving while one is running is refused rather than
    queued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.operation: str | None = None

    @property
    def busy(self) -> bool:
        return self.operation is not None

    @contextlib.contextmanager
    def hold(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise OperationInProgressError(f"Cannot {operation}: {self.operation} is in progress")
        self.operation = operation
        try:
            yield
        finally:
            self.operation = None
            self._lock.release()


class ChecklistCoordinator:
    """Single entry point used by the API for every checklist operation."""

    def __init__(
        self,
        store: ChecklistStore,
        *,
        notifier: EmailNotifier | None = None,
        backup: GitHubBackup | None = None,
        event_bus: EventBus | None = None,
        activity_log_path: Path | None = None,
        background_email: bool = True,
        catalog_loader: Callable[[], list[TaskDefinition]] | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.backup = backup
        self.event_bus = event_bus or EventBus()
        self.activity_log_path = activity_log_path
        self.background_email = background_email
        self.catalog_loader = catalog_loader
        self.gate = BusyGate()
        # Handlers run to completion one at a time, even under a threaded server.
        self._lock = threading.RLock()
        self._email_threads: list[threading.Thread] = []
        store.email_hook = self._dispatch_email
        store.on_change = self._on_store_change

    @classmethod
    def from_settings(cls, settings: Settings) -> ChecklistCoordinator:
        """Build the production wiring. A missing catalog raises FetchError."""

        def _load() -> list[TaskDefinition]:
            return load_template(settings.catalog_source, timeout=settings.http_timeout)

        template = _load()
        notifier = None
        if settings.email_enabled:
            notifier = EmailNotifier(
                ResendClient(
                    settings.resend_api_key or "",
                    base_url=settings.resend_base_url,
                    timeout=settings.http_timeout,
                ),
                load_email_templates(settings.email_templates_path),
                sender=settings.email_from,
                default_recipient=settings.default_recipient,
                reply_to=settings.email_reply_to,
            )
        else:
            logger.warning("Email disabled: no Resend API key configured")

        backup = None
        if settings.backup_enabled:
            backup = GitHubBackup(
                settings.github_token or "",
                settings.github_owner,
                settings.github_repo,
                branch=settings.github_branch,
                directory=settings.github_progress_dir,
                api_url=settings.github_api_url,
                timeout=settings.http_timeout,
            )
        else:
            logger.warning("Remote backup disabled: GitHub token/owner/repo not configured")

        store = ChecklistStore.initialize(
            template,
            JsonFilePersistence(settings.state_path),
            default_key=settings.default_registration,
        )
        return cls(
            store,
            notifier=notifier,
            backup=backup,
            activity_log_path=settings.activity_log_path,
            catalog_loader=_load,
        )

    # ---- events ----

    def _event(self, action: str, outcome: str, key: str | None = None, error: str | None = None, **details: Any) -> None:
        payload = {
            "timestamp": utcnow_iso(),
            "component": "coordinator",
            "action": action,
            "key": key,
            "outcome": outcome,
            "error": error,
            **details,
        }
        if self.activity_log_path is not None:
            try:
                append_jsonl(self.activity_log_path, payload)
            except OSError:
                logger.exception("Could not append to activity log %s", self.activity_log_path)
        self.event_bus.publish(EVENTS_CHANNEL, payload)

    def _on_store_change(self, key: str, action: str, progress: ProgressReport | None) -> None:
        details: dict[str, Any] = {}
        if progress is not None:
            details["progress"] = format_progress(progress.overall)
        self._event(action, "ok", key=key, **details)

    def activity(self, limit: int = 100) -> list[dict[str, Any]]:
        if self.activity_log_path is None:
            return []
        return read_jsonl(self.activity_log_path, limit=limit)

    # ---- email ----

    def _dispatch_email(self, key: str, task: TaskInstance, header: ChecklistHeader) -> None:
        if self.notifier is None:
            self._event("email", "failed", key=key, error="Email is not configured", task_id=task.task_id)
            return
        if not self.background_email:
            self._send_notification(self.notifier, key, task, header)
            return
        thread = threading.Thread(
            target=self._send_notification,
            args=(self.notifier, key, task, header),
            daemon=True,
        )
        self._email_threads = [t for t in self._email_threads if t.is_alive()]
        self._email_threads.append(thread)
        thread.start()

    def _send_notification(self, notifier: EmailNotifier, key: str, task: TaskInstance, header: ChecklistHeader) -> None:
        self._event("email", "sending", key=key, task_id=task.task_id)
        try:
            notifier.notify(task, header)
        except EmailError as exc:
            logger.warning("Email for task %s in %s failed: %s", task.task_id, key, exc.message)
            self._event("email", "failed", key=key, error=exc.message, task_id=task.task_id)
            return
        self._event("email", "sent", key=key, task_id=task.task_id)

    def wait_for_emails(self, timeout: float | None = None) -> None:
        for thread in list(self._email_threads):
            thread.join(timeout)

    def send_email(self, *, sender: str, to: list[str], subject: str, body: str) -> dict[str, Any]:
        """Raw pass-through used by the /api/send-email endpoint."""
        if self.notifier is None:
            raise EmailError("Email is not configured")
        return self.notifier.client.send_email(
            sender=sender,
            to=to,
            subject=subject,
            body=body,
            reply_to=self.notifier.reply_to,
        )

    # ---- store operations ----

    def list_checklists(self) -> dict[str, Any]:
        with self._lock:
            items = []
            for key in self.store.keys():
                checklist = self.store.get(key)
                items.append(
                    {
                        "registration": key,
                        "makeModel": checklist.header.make_model,
                        "driverName": checklist.header.driver_name,
                        "progress": compute_progress(checklist, self.store.phase_groups).overall.to_json_dict(),
                    }
                )
            return {"activeKey": self.store.active_key, "checklists": items}

    def get_checklist(self, key: str) -> Checklist:
        with self._lock:
            return self.store.get(key).model_copy(deep=True)

    def create_checklist(self, key: str, switch_active: bool = True) -> Checklist:
        with self._lock:
            return self.store.create_checklist(key, switch_active).model_copy(deep=True)

    def activate(self, key: str) -> Checklist:
        with self._lock:
            return self.store.set_active(key).model_copy(deep=True)

    def delete_checklist(self, key: str) -> str:
        with self._lock:
            return self.store.delete_checklist(key)

    def update_task_status(self, key: str, task_id: str, status: str) -> bool:
        with self._lock:
            return self.store.update_task_status(key, task_id, status)

    def set_date_actioned(self, key: str, task_id: str, value: str) -> None:
        with self._lock:
            self.store.set_date_actioned(key, task_id, value)

    def set_custom_value(self, key: str, task_id: str, value: str) -> None:
        with self._lock:
            self.store.set_custom_value(key, task_id, value)

    def update_header(self, key: str, fields: dict[str, str]) -> str:
        """Apply several header fields atomically; returns the (possibly renamed) key."""
        with self._lock:
            return self.store.update_header(key, fields)

    def rename(self, old_key: str, new_key: str) -> str:
        with self._lock:
            return self.store.rename_checklist_key(old_key, new_key)

    def progress(self, key: str) -> ProgressReport:
        with self._lock:
            return self.store.progress(key)

    def reset_checklist(self, key: str) -> Checklist:
        with self.gate.hold("reset"), self._lock:
            return self.store.reset_checklist(key).model_copy(deep=True)

    # ---- import / export ----

    def _apply_text(self, text: str | bytes, source: str) -> Checklist:
        blob = parse_blob(text)
        with self._lock:
            checklist = apply_blob(blob, self.store.template)
            self.store.put_checklist(checklist, activate=True)
            logger.info("Progress loaded from %s key=%s", source, checklist.key)
            self._event("import", "ok", key=checklist.key, source=source)
            return checklist.model_copy(deep=True)

    def import_file(self, text: str | bytes, source: str = "upload") -> Checklist:
        with self.gate.hold("import"):
            return self._apply_text(text, source)

    def export_payload(self, key: str) -> dict[str, Any]:
        with self._lock:
            checklist = self.store.get(key)
            overall = compute_progress(checklist, self.store.phase_groups).overall
            payload = checklist.to_json_dict()
        payload["stats"] = {
            "totalTasks": overall.total,
            "completed": overall.completed,
            "progressPercent": overall.percent,
            "savedAt": datetime.now(UTC).isoformat(),
            "savedBy": checklist.header.driver_name or "Unknown",
        }
        return payload

    # ---- remote backup ----

    def _require_backup(self) -> GitHubBackup:
        if self.backup is None:
            raise RemoteBackupError("Remote backup is not configured")
        return self.backup

    def list_backups(self) -> list[BackupEntry]:
        return self._require_backup().list_backups()

    def save_backup(self, key: str) -> dict[str, Any]:
        backup = self._require_backup()
        payload = self.export_payload(key)
        registration = payload["header"]["registration"]
        path = backup_path(registration, backup.directory)
        content = json.dumps(payload, indent=2)
        try:
            result = backup.upload(path, content, f"Fleet checklist update: {registration or 'New Vehicle'}")
        except Exception as exc:
            self._event("backup", "failed", key=registration, error=str(exc), path=path)
            raise
        self._event("backup", "ok", key=registration, path=path)
        return result

    def restore_backup(self, path: str) -> Checklist:
        backup = self._require_backup()
        with self.gate.hold("restore"):
            content = backup.download(path)
            return self._apply_text(content, path)

    def reload_catalog(self) -> int:
        if self.catalog_loader is None:
            return len(self.store.template)
        with self.gate.hold("reload catalog"):
            template = self.catalog_loader()
            with self._lock:
                self.store.replace_template(template)
        return len(template)
