"""
Tests for the run ledger and the HubSpot cache
"""

from conftest import LIST_ID, QUEUE_ID, make_automation


def insert_pending(db, planned="2024-01-03T10:00:00Z", contact_id="c1"):
    return db.insert_run({
        "automation_id": "auto-1",
        "type": "create_on_entry",
        "hs_contact_id": contact_id,
        "hs_queue_id": QUEUE_ID,
        "planned_execution_timestamp": planned,
        "task_name": "Call new lead",
        "position_in_sequence": 1,
    })


def test_run_is_marked_successful_at_most_once(db):
    run_id = insert_pending(db)

    assert db.mark_run_successful(run_id, ["t1"]) is True
    assert db.mark_run_successful(run_id, ["t2"]) is False
    assert db.get_run(run_id)["hs_actioned_task_ids"] == ["t1"]


def test_blocked_run_cannot_succeed(db):
    run_id = insert_pending(db)
    assert db.block_runs([run_id]) == 1

    assert db.mark_run_successful(run_id, ["t1"]) is False
    assert db.select_pending_runs("2024-01-01T00:00:00Z", "2024-01-05T00:00:00Z") == []


def test_successful_run_is_not_blocked(db):
    run_id = insert_pending(db)
    db.mark_run_successful(run_id, ["t1"])

    assert db.block_runs([run_id]) == 0
    assert db.get_run(run_id)["exit_contact_list_block"] is False


def test_pending_selection_bounds(db):
    early = insert_pending(db, "2024-01-03T09:59:59Z")
    at_start = insert_pending(db, "2024-01-03T10:00:00Z")
    at_end = insert_pending(db, "2024-01-03T10:01:00Z")

    inclusive = db.select_pending_runs("2024-01-03T10:00:00Z", "2024-01-03T10:01:00Z", include_lower=True)
    exclusive = db.select_pending_runs("2024-01-03T09:00:00Z", "2024-01-03T10:00:00Z")

    assert [r["id"] for r in inclusive] == [at_start]
    assert [r["id"] for r in exclusive] == [early]
    assert at_end not in [r["id"] for r in inclusive + exclusive]


def test_failure_note_kept_until_success(db):
    run_id = insert_pending(db)
    db.mark_run_failure(run_id, {"error": "HubSpot unreachable"})
    assert db.get_run(run_id)["failure_description"] == {"error": "HubSpot unreachable"}

    db.mark_run_successful(run_id, ["t1"])
    assert db.get_run(run_id)["failure_description"] is None


def test_sync_upsert_keeps_automation_provenance(db):
    db.record_created_tasks([{
        "hs_object_id": "t1", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": QUEUE_ID,
        "associated_contact_id": "c1", "number_in_sequence": 2, "created_by_automation_id": "auto-1",
    }])

    created, updated = db.upsert_tasks([{
        "hs_object_id": "t1", "hs_task_status": "COMPLETED", "hs_task_completion_count": 1,
        "hs_queue_membership_ids": QUEUE_ID, "associated_contact_id": "c1",
    }])

    assert (created, updated) == (0, 1)
    task = db.get_task("t1")
    assert task["hs_task_status"] == "COMPLETED"
    assert task["created_by_automation_id"] == "auto-1"
    assert task["number_in_sequence"] == 2


def test_open_tasks_exclude_completed_deleted_and_other_queues(db):
    db.upsert_tasks([
        {"hs_object_id": "open", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": "Q1;Q9",
         "associated_contact_id": "c1"},
        {"hs_object_id": "done", "hs_task_status": "COMPLETED", "hs_task_completion_count": 1,
         "hs_queue_membership_ids": "Q1", "associated_contact_id": "c1"},
        {"hs_object_id": "gone", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": "Q1",
         "associated_contact_id": "c1"},
        {"hs_object_id": "elsewhere", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": "Q2",
         "associated_contact_id": "c1"},
    ])
    db.mark_tasks_deleted(["gone"])

    assert [t["hs_object_id"] for t in db.open_tasks_for_contacts(["c1"], "Q1")] == ["open"]
    assert len(db.open_tasks_for_contacts(None)) == 2


def test_list_reentry_reactivates_membership(db):
    make_automation(db)
    first = db.record_list_entry("auto-1", LIST_ID, "c1", QUEUE_ID, "2024-01-01T00:00:00Z")
    db.record_list_exit([first], "2024-01-02T00:00:00Z")
    assert db.list_active_memberships("auto-1") == []

    again = db.record_list_entry("auto-1", LIST_ID, "c1", QUEUE_ID, "2024-01-03T00:00:00Z")

    assert again == first
    membership = db.find_membership("auto-1", "c1")
    assert membership["list_exit_date"] is None
    assert membership["hs_list_entry_date"] == "2024-01-03T00:00:00Z"


def test_automation_round_trip(db):
    automation = make_automation(db, auto_complete_on_engagement=True)

    assert automation.hs_queue_id == QUEUE_ID
    assert automation.total_tasks == 3
    assert automation.task_at(2).delay_unit == "days"
    row = db.get_automation_row("auto-1")
    assert row["auto_complete_on_engagement"] is True
    assert row["tasks_configuration"]["initial_task"]["name"] == "Call new lead"


def test_execution_lifecycle(db):
    execution_id = db.start_execution("incremental", "manual")
    assert db.get_running_execution()["execution_id"] == execution_id

    db.complete_execution(execution_id, 1200, {"fetched": 3, "created": 1, "updated": 2, "api_calls": 4})
    db.fail_execution(execution_id, "late failure")

    execution = db.get_execution(execution_id)
    assert execution["status"] == "completed"
    assert execution["tasks_fetched"] == 3
    assert execution["hubspot_api_calls"] == 4
    assert db.get_running_execution() is None
    assert db.last_completed_execution("incremental")["execution_id"] == execution_id


def test_stale_executions_are_failed(db):
    execution_id = db.start_execution("incremental", "cron")
    db.execute("UPDATE sync_executions SET started_at = ? WHERE execution_id = ?",
               ("2000-01-01T00:00:00Z", execution_id))
    db.commit()

    assert db.fail_stale_executions("2024-01-01T00:00:00Z") == 1
    execution = db.get_execution(execution_id)
    assert execution["status"] == "failed"
    assert "stale" in execution["error_message"]


def test_old_finished_executions_are_deleted(db):
    old_done = db.start_execution("incremental", "cron")
    db.complete_execution(old_done, 10, {})
    old_failed = db.start_execution("incremental", "cron")
    db.fail_execution(old_failed, "boom")
    old_running = db.start_execution("incremental", "cron")
    recent = db.start_execution("incremental", "cron")
    db.complete_execution(recent, 10, {})
    db.execute("UPDATE sync_executions SET started_at = ? WHERE execution_id IN (?, ?, ?)",
               ("2024-01-01T00:00:00Z", old_done, old_failed, old_running))
    db.commit()

    assert db.delete_executions_before("2024-01-05T00:00:00Z") == 2

    remaining = {e["execution_id"] for e in db.list_executions(1000)}
    assert remaining == {old_running, recent}
