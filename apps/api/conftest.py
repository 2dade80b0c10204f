import sys
from datetime import date
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Add project root to python path for tests
ROOT_DIR = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT_DIR))

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

from fleetcheck.common.errors import EmailError  # noqa: E402
from fleetcheck.common.models import ChecklistHeader, CustomInput, TaskDefinition, TaskInstance  # noqa: E402
from fleetcheck.common.store import ChecklistStore, JsonFilePersistence  # noqa: E402

TODAY = date(2026, 3, 14)


class FakeNotifier:
    """Records notification attempts instead of calling the email API."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str]] = []
        self.raw: list[dict] = []
        self.reply_to = None
        self.client = self

    def notify(self, task: TaskInstance, header: ChecklistHeader) -> dict:
        self.calls.append((header.registration, task.task_id))
        if self.fail:
            raise EmailError("provider rejected the message")
        return {"id": f"email-{len(self.calls)}"}

    def send_email(self, *, sender, to, subject, body, reply_to=None) -> dict:
        self.raw.append({"from": sender, "to": to, "subject": subject, "body": body})
        return {"id": "raw-1"}


@pytest.fixture()
def template() -> list[TaskDefinition]:
    """Ten tasks over three phases (4 / 3 / 3)."""
    return [
        TaskDefinition(task_id="1", phase="Pre-Purchase", task="Approve budget"),
        TaskDefinition(
            task_id="2",
            phase="Pre-Purchase",
            task="Request logbook",
            requires_email=True,
            email_template="sellerDocuments",
            email_recipients=["{{sellerEmail}}"],
        ),
        TaskDefinition(task_id="3", phase="Pre-Purchase", task="History check"),
        TaskDefinition(task_id="4", phase="Pre-Purchase", task="Inspect vehicle"),
        TaskDefinition(
            task_id="5",
            phase="Registration",
            task="Check CAZ compliance",
            custom_input=CustomInput(id="caz-status", label="CAZ Status", options=["Compliant", "Non-Compliant"]),
        ),
        TaskDefinition(task_id="6", phase="Registration", task="Tax vehicle", requires_email=True),
        TaskDefinition(task_id="7", phase="Registration", task="Insure vehicle"),
        TaskDefinition(
            task_id="8",
            phase="Handover",
            task="Fit tracker",
            available_statuses=["Pending", "Actioned", "Not Applicable"],
        ),
        TaskDefinition(task_id="9", phase="Handover", task="Issue fuel card"),
        TaskDefinition(task_id="10", phase="Handover", task="Hand over keys"),
    ]


@pytest.fixture()
def persistence(tmp_path: Path) -> JsonFilePersistence:
    return JsonFilePersistence(tmp_path / "checklists.json")


@pytest.fixture()
def email_calls() -> list[tuple[str, str]]:
    return []


@pytest.fixture()
def store(template, persistence, email_calls) -> ChecklistStore:
    """Fresh store seeded with the default checklist and a recording email hook."""
    return ChecklistStore.initialize(
        template,
        persistence,
        email_hook=lambda key, task, header: email_calls.append((key, task.task_id)),
        today=lambda: TODAY,
    )


@pytest.fixture()
def today() -> date:
    return TODAY


@pytest.fixture()
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def failing_notifier() -> FakeNotifier:
    return FakeNotifier(fail=True)
