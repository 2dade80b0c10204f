import json

import pytest

from fleetcheck.common.errors import ChecklistNotFoundError, DuplicateKeyError, TaskNotFoundError
from fleetcheck.common.store import ChecklistStore, EventBus, JsonFilePersistence


def test_initialize_seeds_default_checklist(store, persistence) -> None:
    assert store.keys() == ["NEW"]
    assert store.active_key == "NEW"
    saved = json.loads(persistence.path.read_text())
    assert saved["activeKey"] == "NEW"
    assert list(saved["checklists"]) == ["NEW"]


def test_create_checklist_switches_active_and_rejects_duplicates(store) -> None:
    created = store.create_checklist("ab12 cde")
    assert created.key == "AB12 CDE"
    assert store.active_key == "AB12 CDE"
    assert all(task.status == "Pending" for task in created.tasks)

    store.create_checklist("XY99ZZZ", switch_active=False)
    assert store.active_key == "AB12 CDE"

    with pytest.raises(DuplicateKeyError):
        store.create_checklist("Ab12 Cde")
    assert store.keys() == ["NEW", "AB12 CDE", "XY99ZZZ"]


def test_create_checklist_requires_registration(store) -> None:
    with pytest.raises(ValueError):
        store.create_checklist("   ")


def test_status_transition_sets_date_and_fires_email_once(store, email_calls, today) -> None:
    assert store.update_task_status("NEW", "2", "Actioned") is True
    task = store.get("NEW").find_task("2")
    assert task.status == "Actioned"
    assert task.date_actioned == today.isoformat()
    assert email_calls == [("NEW", "2")]

    # Actioned -> Skipped -> Actioned never re-sends.
    store.update_task_status("NEW", "2", "Skipped")
    store.update_task_status("NEW", "2", "Actioned")
    assert email_calls == [("NEW", "2")]


def test_skipping_email_task_does_not_send(store, email_calls, today) -> None:
    store.update_task_status("NEW", "6", "Skipped")
    assert email_calls == []
    assert store.get("NEW").find_task("6").date_actioned == today.isoformat()


def test_date_kept_when_moving_between_non_pending_statuses(store) -> None:
    store.update_task_status("NEW", "1", "Actioned")
    store.set_date_actioned("NEW", "1", "2026-01-05")
    store.update_task_status("NEW", "1", "Skipped")
    assert store.get("NEW").find_task("1").date_actioned == "2026-01-05"


def test_back_to_pending_keeps_date_and_resends_later(store, email_calls, today) -> None:
    store.update_task_status("NEW", "2", "Actioned")
    store.update_task_status("NEW", "2", "Pending")
    assert store.get("NEW").find_task("2").date_actioned == today.isoformat()
    store.update_task_status("NEW", "2", "Actioned")
    assert email_calls == [("NEW", "2"), ("NEW", "2")]


def test_disallowed_status_is_rejected_without_mutation(store) -> None:
    assert store.update_task_status("NEW", "1", "Not Applicable") is False
    task = store.get("NEW").find_task("1")
    assert task.status == "Pending"
    assert task.date_actioned == ""

    assert store.update_task_status("NEW", "8", "Not Applicable") is True


def test_unknown_checklist_or_task_raises(store) -> None:
    with pytest.raises(ChecklistNotFoundError):
        store.update_task_status("MISSING", "1", "Actioned")
    with pytest.raises(TaskNotFoundError):
        store.update_task_status("NEW", "99", "Actioned")


def test_failing_email_hook_does_not_block_status_change(template, persistence) -> None:
    def boom(key, task, header):
        raise RuntimeError("smtp down")

    store = ChecklistStore.initialize(template, persistence, email_hook=boom)
    assert store.update_task_status("NEW", "2", "Actioned") is True
    assert store.get("NEW").find_task("2").status == "Actioned"


def test_set_date_actioned_validates_format(store) -> None:
    store.set_date_actioned("NEW", "3", "2026-02-28")
    assert store.get("NEW").find_task("3").date_actioned == "2026-02-28"
    store.set_date_actioned("NEW", "3", "")
    assert store.get("NEW").find_task("3").date_actioned == ""
    with pytest.raises(ValueError):
        store.set_date_actioned("NEW", "3", "28/02/2026")
    with pytest.raises(ValueError):
        store.set_date_actioned("NEW", "3", "2026-02-30")


def test_set_custom_value_checks_options(store) -> None:
    store.set_custom_value("NEW", "5", "Compliant")
    assert store.get("NEW").find_task("5").custom_value == "Compliant"
    with pytest.raises(ValueError):
        store.set_custom_value("NEW", "5", "Maybe")
    with pytest.raises(ValueError):
        store.set_custom_value("NEW", "1", "Compliant")


def test_header_update_accepts_camel_and_snake_names(store) -> None:
    store.update_header_field("NEW", "makeModel", "Ford Transit")
    store.update_header_field("NEW", "driver_name", "Alex")
    header = store.get("NEW").header
    assert header.make_model == "Ford Transit"
    assert header.driver_name == "Alex"
    with pytest.raises(ValueError):
        store.update_header_field("NEW", "colour", "red")


def test_registration_edit_renames_in_place(store) -> None:
    store.create_checklist("AAA111")
    store.create_checklist("BBB222")
    store.set_active("AAA111")
    store.update_task_status("AAA111", "1", "Actioned")

    new_key = store.update_header_field("AAA111", "registration", " ccc333 ")

    assert new_key == "CCC333"
    assert store.keys() == ["NEW", "CCC333", "BBB222"]
    assert store.active_key == "CCC333"
    assert store.get("CCC333").header.registration == "CCC333"
    assert store.get("CCC333").find_task("1").status == "Actioned"
    assert "AAA111" not in store


def test_rename_to_existing_key_leaves_state_untouched(store) -> None:
    store.create_checklist("AAA111")
    with pytest.raises(DuplicateKeyError):
        store.rename_checklist_key("AAA111", "new")
    assert store.keys() == ["NEW", "AAA111"]
    assert store.active_key == "AAA111"
    assert store.get("AAA111").header.registration == "AAA111"


def test_rename_to_same_key_is_a_no_op(store) -> None:
    assert store.rename_checklist_key("NEW", " new ") == "NEW"
    assert store.keys() == ["NEW"]


def test_delete_active_falls_back_to_first_key(store) -> None:
    store.create_checklist("AAA111")
    store.create_checklist("BBB222")
    assert store.delete_checklist("BBB222") == "NEW"
    assert store.keys() == ["NEW", "AAA111"]


def test_delete_last_checklist_reseeds_default(store) -> None:
    store.create_checklist("AAA111")
    store.delete_checklist("NEW")
    assert store.delete_checklist("AAA111") == "NEW"
    assert store.keys() == ["NEW"]
    assert len(store) == 1


def test_reset_restores_pending_tasks_and_default_header(store) -> None:
    store.create_checklist("AAA111")
    store.create_checklist("BBB222")
    store.update_header_field("AAA111", "driverName", "Alex")
    store.update_task_status("AAA111", "1", "Actioned")

    reset = store.reset_checklist("AAA111")

    assert reset.header.driver_name == ""
    assert all(task.status == "Pending" for task in reset.tasks)
    assert store.keys() == ["NEW", "AAA111", "BBB222"]


def test_progress_tracks_mutations(store) -> None:
    for task_id in ("1", "5", "9"):
        store.update_task_status("NEW", task_id, "Actioned")
    report = store.progress("NEW")
    assert report.overall.percent == 30.0
    assert report.per_phase["Pre-Purchase"].completed == 1


def test_change_listener_receives_fresh_progress(template) -> None:
    seen = []
    store = ChecklistStore.initialize(template, on_change=lambda key, action, progress: seen.append((key, action, progress)))
    store.update_task_status("NEW", "1", "Actioned")
    key, action, progress = seen[-1]
    assert (key, action) == ("NEW", "status_updated")
    assert progress.overall.completed == 1


def test_rehydrate_round_trip(template, persistence) -> None:
    first = ChecklistStore.initialize(template, persistence)
    first.create_checklist("AAA111")
    first.update_task_status("AAA111", "5", "Actioned")
    first.set_custom_value("AAA111", "5", "Non-Compliant")
    first.set_active("NEW")

    second = ChecklistStore.initialize(template, JsonFilePersistence(persistence.path))

    assert second.keys() == ["NEW", "AAA111"]
    assert second.active_key == "NEW"
    assert second.get("AAA111") == first.get("AAA111")


def test_rehydrate_merges_against_newer_template(template, persistence) -> None:
    first = ChecklistStore.initialize(template[:5], persistence)
    first.update_task_status("NEW", "1", "Skipped")

    second = ChecklistStore.initialize(template, persistence)

    checklist = second.get("NEW")
    assert len(checklist.tasks) == len(template)
    assert checklist.find_task("1").status == "Skipped"
    assert checklist.find_task("10").status == "Pending"


def test_rehydrate_skips_invalid_entries_and_fixes_active_key(template, persistence) -> None:
    persistence.path.write_text(
        json.dumps(
            {
                "activeKey": "GONE",
                "checklists": {
                    "BAD": {"header": {"registration": ""}, "tasks": []},
                    "AAA111": {"header": {"registration": "AAA111"}, "tasks": []},
                },
            }
        )
    )
    store = ChecklistStore.initialize(template, persistence)
    assert store.keys() == ["AAA111"]
    assert store.active_key == "AAA111"


def test_legacy_single_checklist_file_is_loaded(template, persistence) -> None:
    persistence.path.write_text(
        json.dumps({"header": {"registration": "old1"}, "tasks": [{"taskId": 1, "status": "Actioned"}]})
    )
    store = ChecklistStore.initialize(template, persistence)
    assert store.keys() == ["OLD1"]
    assert store.get("OLD1").find_task("1").status == "Actioned"


def test_corrupt_state_file_starts_fresh(template, persistence) -> None:
    persistence.path.write_text("{not json")
    store = ChecklistStore.initialize(template, persistence)
    assert store.keys() == ["NEW"]


def test_replace_template_remerges_every_checklist(store, template) -> None:
    store.update_task_status("NEW", "3", "Actioned")
    store.replace_template(template[2:])
    checklist = store.get("NEW")
    assert [t.task_id for t in checklist.tasks] == [d.task_id for d in template[2:]]
    assert checklist.find_task("3").status == "Actioned"
    assert list(store.phase_groups) == ["Pre-Purchase", "Registration", "Handover"]


def test_header_batch_is_validated_before_any_change(store, persistence) -> None:
    store.create_checklist("AAA111")
    before = persistence.path.read_text()

    with pytest.raises(DuplicateKeyError):
        store.update_header("AAA111", {"driverName": "Alex", "registration": "new"})
    with pytest.raises(ValueError):
        store.update_header("AAA111", {"driverName": "Alex", "registration": ""})
    with pytest.raises(ValueError):
        store.update_header("AAA111", {"driverName": "Alex", "colour": "red"})

    assert store.get("AAA111").header.driver_name == ""
    assert persistence.path.read_text() == before


def test_header_batch_applies_fields_and_rename_together(store) -> None:
    new_key = store.update_header("NEW", {"registration": " zz11zzz", "makeModel": "Ford Transit"})
    assert new_key == "ZZ11ZZZ"
    assert store.keys() == ["ZZ11ZZZ"]
    assert store.get("ZZ11ZZZ").header.make_model == "Ford Transit"
    assert store.update_header("ZZ11ZZZ", {"registration": "zz11zzz", "location": "Depot"}) == "ZZ11ZZZ"


def test_event_bus_drops_events_without_subscribers() -> None:
    bus = EventBus()
    for index in range(1000):
        bus.publish("checklists", {"n": index})
    assert bus.subscriber_count("checklists") == 0
    assert bus.subscribe("checklists").empty()


def test_event_bus_fans_out_to_every_subscriber() -> None:
    bus = EventBus()
    first = bus.subscribe("checklists")
    second = bus.subscribe("checklists")
    bus.publish("checklists", {"action": "created"})
    assert json.loads(first.get_nowait()) == {"action": "created"}
    assert json.loads(second.get_nowait()) == {"action": "created"}

    bus.unsubscribe("checklists", first)
    bus.publish("checklists", {"action": "deleted"})
    assert first.empty()
    assert json.loads(second.get_nowait()) == {"action": "deleted"}


def test_event_bus_subscriber_queues_are_bounded() -> None:
    bus = EventBus(maxsize=2)
    events = bus.subscribe("checklists")
    for index in range(5):
        bus.publish("checklists", {"n": index})
    assert events.qsize() == 2
    assert json.loads(events.get_nowait()) == {"n": 0}
