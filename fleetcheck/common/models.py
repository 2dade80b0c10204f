"""Shared pydantic models and enums for FleetCheck."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    PENDING = "Pending"
    ACTIONED = "Actioned"
    SKIPPED = "Skipped"


DEFAULT_STATUSES: list[str] = [status.value for status in TaskStatus]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys (``taskId``, ``dateActioned``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CustomInput(CamelModel):
    id: str
    label: str
    type: str = "select"
    options: list[str] = Field(default_factory=list)


class TaskDefinition(CamelModel):
    """A catalog entry. Immutable once the template is loaded."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    task_id: str
    phase: str
    task: str
    requires_email: bool = False
    email_template: str = "default"
    email_recipients: list[str] = Field(default_factory=list)
    available_statuses: list[str] = Field(default_factory=lambda: list(DEFAULT_STATUSES))
    custom_input: CustomInput | None = None

    @field_validator("task_id", mode="before")
    @classmethod
    def _coerce_task_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("available_statuses")
    @classmethod
    def _require_pending(cls, value: list[str]) -> list[str]:
        if TaskStatus.PENDING.value not in value:
            raise ValueError("availableStatuses must include Pending")
        return value


class TaskInstance(TaskDefinition):
    """Per-checklist copy of a TaskDefinition carrying progress."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=False)

    status: str = TaskStatus.PENDING.value
    date_actioned: str = ""
    custom_value: str | None = None

    @classmethod
    def from_definition(cls, definition: TaskDefinition) -> TaskInstance:
        return cls.model_validate(definition.model_dump())

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING.value


class ChecklistHeader(CamelModel):
    registration: str = ""
    make_model: str = ""
    driver_name: str = ""
    driver_email: str = ""
    seller_email: str = ""
    purchase_date: str = ""
    start_date: str = ""
    location: str = "Office"
    tax_status: str = "None Personal Use"

    @field_validator("registration", mode="before")
    @classmethod
    def _normalize_registration(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class Checklist(CamelModel):
    header: ChecklistHeader
    tasks: list[TaskInstance] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.header.registration

    def find_task(self, task_id: str) -> TaskInstance | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None


class ProgressStats(CamelModel):
    completed: int = 0
    total: int = 0
    percent: float = 0.0


class ProgressReport(CamelModel):
    overall: ProgressStats
    per_phase: dict[str, ProgressStats] = Field(default_factory=dict)


class CreateChecklistRequest(CamelModel):
    registration: str
    switch_active: bool = True


class RenameRequest(CamelModel):
    new_registration: str


class StatusUpdateRequest(CamelModel):
    status: str


class DateActionedRequest(CamelModel):
    date_actioned: str = ""


class CustomValueRequest(CamelModel):
    value: str


class BackupRestoreRequest(CamelModel):
    path: str


class SendEmailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    to: list[str] | str
    subject: str
    body: str


class ApiError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)
