"""Error taxonomy for checklist, merge, and collaborator failures."""

from __future__ import annotations


class ChecklistError(Exception):
    """Base class for all checklist failures.

    ``code`` is the stable machine-readable identifier surfaced by the API.
    """

    code = "checklist_error"
    retryable = False

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key


class DuplicateKeyError(ChecklistError):
    """Raised when a create or rename would collide with an existing key."""

    code = "duplicate_key"


class InvalidFormatError(ChecklistError):
    """Raised when an imported blob is malformed. Prior state is untouched."""

    code = "invalid_format"


class FetchError(ChecklistError):
    """Raised when the task catalog cannot be loaded. Fatal at startup."""

    code = "fetch_error"


class EmailError(ChecklistError):
    code = "email_error"
    retryable = True


class ChecklistNotFoundError(ChecklistError):
    code = "checklist_not_found"


class TaskNotFoundError(ChecklistError):
    code = "task_not_found"


class RemoteBackupError(ChecklistError):
    code = "remote_backup_error"
    retryable = True


class OperationInProgressError(ChecklistError):
    """Raised when a checklist-replacing operation is already running."""

    code = "operation_in_progress"
    retryable = True
