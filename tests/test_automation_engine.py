"""
Tests for the trigger processor, the scheduled-run executor and the stuck-run reconciler
"""

from datetime import timedelta

import pytest

from automation_engine import AutomationEngine
from conftest import QUEUE_ID, make_automation, utc
from models import (
    ConfigurationError, InvalidTriggerError, ScheduledTimeInPastError, UnknownTriggerError,
)
from working_hours import parse_timestamp, to_iso_z

NOW = utc(2024, 1, 3, 10, 0)


@pytest.fixture
def engine(db, hub):
    make_automation(db)
    return AutomationEngine(db, hub)


def pending_run(db, planned, contact_id="c1", **extra):
    run = {
        "automation_id": "auto-1",
        "type": "create_on_entry",
        "hs_trigger_object": "list",
        "hs_contact_id": contact_id,
        "hs_queue_id": QUEUE_ID,
        "planned_execution_timestamp": to_iso_z(planned),
        "task_name": "Call new lead",
        "task_owner_setting": "contact_owner",
        "position_in_sequence": 1,
    }
    run.update(extra)
    return db.insert_run(run)


# ==================== TRIGGER PROCESSOR ====================

def test_list_entry_plans_initial_task(engine, db):
    result = engine.process_list_entry("auto-1", contact_id="c1", list_id="L1", now=NOW)

    assert result["success"] is True
    assert result["planned_execution_timestamp"] == "2024-01-03T10:00:00Z"
    run = db.get_run(result["run_id"])
    assert run["type"] == "create_on_entry"
    assert run["position_in_sequence"] == 1
    assert run["task_name"] == "Call new lead"
    assert run["hs_action_successful"] is False


def test_list_entry_time_is_stored_to_the_second(engine, db):
    event = NOW + timedelta(milliseconds=750)

    result = engine.process_list_entry("auto-1", contact_id="c1", now=event)

    planned = parse_timestamp(db.get_run(result["run_id"])["planned_execution_timestamp"])
    assert planned == event.replace(microsecond=0)
    assert result["planned_execution_timestamp"] == "2024-01-03T10:00:00Z"


def test_list_entry_respects_working_hours(db, hub):
    make_automation(db, schedule_enabled=True, schedule_configuration={
        "working_hours": {"wednesday": {"enabled": True, "start_time": "09:00", "end_time": "18:00"}},
    })
    engine = AutomationEngine(db, hub)

    result = engine.process_list_entry("auto-1", contact_id="c1", now=utc(2024, 1, 1, 9, 0))

    assert result["planned_execution_timestamp"] == "2024-01-03T08:00:00Z"
    assert result["planned_execution_timestamp_display"] == "2024-01-03 09:00 Europe/Paris"


def test_list_entry_for_disabled_automation_is_skipped(db, hub):
    make_automation(db, automation_enabled=False)
    engine = AutomationEngine(db, hub)

    result = engine.process_list_entry("auto-1", contact_id="c1", now=NOW)

    assert result["skipped"] is True
    assert db.list_runs() == []


def test_list_entry_with_pending_run_is_skipped(engine, db):
    engine.process_list_entry("auto-1", contact_id="c1", now=NOW)
    result = engine.process_list_entry("auto-1", contact_id="c1", now=NOW)

    assert result["skipped"] is True
    assert len(db.list_runs()) == 1


def test_task_completion_plans_next_task_after_delay(engine, db):
    result = engine.process_task_completion(
        "auto-1", task_id="t1", current_position=1, completion_date="2024-01-03T09:00:00Z",
        contact_id="c1", previous_owner_id="o9", now=NOW,
    )

    assert result["position_in_sequence"] == 2
    assert result["planned_execution_timestamp"] == "2024-01-04T09:00:00Z"
    run = db.get_run(result["run_id"])
    assert run["type"] == "create_from_sequence"
    assert run["hs_trigger_object_id"] == "t1"
    assert run["hs_owner_id_previous_task"] == "o9"
    assert run["hs_queue_id"] == QUEUE_ID


def test_past_due_completion_writes_no_run(engine, db):
    with pytest.raises(ScheduledTimeInPastError) as exc:
        engine.process_task_completion(
            "auto-1", task_id="t2", current_position=2, completion_date=to_iso_z(NOW - timedelta(hours=3)),
            contact_id="c1", now=NOW,
        )

    assert exc.value.planned == NOW - timedelta(hours=1)
    assert db.list_runs() == []


def test_completing_last_task_ends_the_sequence(engine, db):
    result = engine.process_task_completion(
        "auto-1", task_id="t3", current_position=3, completion_date=to_iso_z(NOW),
        contact_id="c1", now=NOW,
    )

    assert result == {"success": True, "sequence_complete": True, "message": "Sequence complete"}
    assert db.list_runs() == []


@pytest.mark.parametrize("position", [0, 7])
def test_position_out_of_range_is_a_configuration_error(engine, position):
    with pytest.raises(ConfigurationError):
        engine.process_task_completion(
            "auto-1", task_id="t1", current_position=position, completion_date=to_iso_z(NOW),
            contact_id="c1", now=NOW,
        )


def test_duplicate_completion_returns_existing_run(engine, db):
    kwargs = dict(task_id="t1", current_position=1, completion_date="2024-01-03T09:00:00Z",
                  contact_id="c1", now=NOW)
    first = engine.process_task_completion("auto-1", **kwargs)
    second = engine.process_task_completion("auto-1", **kwargs)

    assert second["duplicate"] is True
    assert second["run_id"] == first["run_id"]
    assert len(db.list_runs()) == 1


def test_open_task_further_in_sequence_blocks_next_run(engine, db):
    db.record_created_tasks([{
        "hs_object_id": "t-open", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": QUEUE_ID,
        "associated_contact_id": "c1", "number_in_sequence": 2, "created_by_automation_id": "auto-1",
    }])

    result = engine.process_task_completion(
        "auto-1", task_id="t1", current_position=1, completion_date="2024-01-03T09:00:00Z",
        contact_id="c1", now=NOW,
    )

    assert result["blocked"] is True
    run = db.get_run(result["run_id"])
    assert run["planned_execution_timestamp"] is None
    assert "open task" in run["failure_description"]

    # conflict runs are never materialized
    assert engine.execute_scheduled_runs(NOW + timedelta(days=1))["runs_selected"] == 0
    assert engine.retry_stuck_runs(NOW + timedelta(days=1))["runs_selected"] == 0


def test_pending_run_blocks_sequence_run(engine, db):
    engine.process_list_entry("auto-1", contact_id="c1", now=NOW)

    result = engine.process_task_completion(
        "auto-1", task_id="t1", current_position=1, completion_date="2024-01-03T09:00:00Z",
        contact_id="c1", now=NOW,
    )

    assert result["blocked"] is True


def test_process_trigger_dispatch_and_errors(engine):
    with pytest.raises(UnknownTriggerError):
        engine.process_trigger({"trigger_type": "deal_won", "automation_id": "auto-1"}, now=NOW)
    with pytest.raises(InvalidTriggerError):
        engine.process_trigger({"trigger_type": "list_entry", "contact_id": "c1"}, now=NOW)
    with pytest.raises(ConfigurationError):
        engine.process_trigger({"trigger_type": "list_entry", "automation_id": "missing",
                                "contact_id": "c1"}, now=NOW)


def test_process_trigger_applies_schedule_override(engine):
    result = engine.process_trigger({
        "trigger_type": "list_entry",
        "automation_id": "auto-1",
        "contact_id": "c1",
        "schedule_enabled": True,
        "schedule_configuration": {
            "working_hours": {"wednesday": {"enabled": True, "start_time": "09:00", "end_time": "18:00"}},
        },
        "timezone": "Europe/Paris",
    }, now=utc(2024, 1, 1, 9, 0))

    assert result["planned_execution_timestamp"] == "2024-01-03T08:00:00Z"


def test_task_completion_requires_fields(engine):
    with pytest.raises(InvalidTriggerError):
        engine.process_task_completion("auto-1", task_id="t1", current_position="two",
                                       completion_date=to_iso_z(NOW), contact_id="c1", now=NOW)
    with pytest.raises(InvalidTriggerError):
        engine.process_task_completion("auto-1", task_id="t1", current_position=1,
                                       completion_date=None, contact_id="c1", now=NOW)


# ==================== EXECUTOR ====================

def test_executor_creates_task_and_marks_run_once(engine, db, hub):
    run_id = engine.process_list_entry("auto-1", contact_id="c1", now=NOW)["run_id"]

    result = engine.execute_scheduled_runs(NOW)

    assert result["window"] == "current_minute"
    assert result["tasks_created"] == 1
    created = hub.created[0]
    assert created["objectWriteTraceId"] == run_id
    assert created["properties"]["hs_task_subject"] == "Call new lead"
    assert created["properties"]["hs_queue_membership_ids"] == QUEUE_ID
    assert created["properties"]["hubspot_owner_id"] == "o1"
    assert created["associations"][0]["types"][0]["associationTypeId"] == 204

    run = db.get_run(run_id)
    assert run["hs_action_successful"] is True
    task = db.get_task(run["hs_actioned_task_ids"][0])
    assert task["created_by_automation_id"] == "auto-1"
    assert task["number_in_sequence"] == 1
    assert task["associated_contact_id"] == "c1"

    again = engine.execute_scheduled_runs(NOW)
    assert again["runs_selected"] == 0
    assert len(hub.created) == 1


def test_executor_falls_back_to_recent_runs(engine, db, hub):
    pending_run(db, NOW - timedelta(minutes=5))

    result = engine.execute_scheduled_runs(NOW)

    assert result["window"] == "lookback"
    assert result["tasks_created"] == 1


def test_executor_reports_overdue_runs(engine, db):
    pending_run(db, NOW - timedelta(minutes=20))

    result = engine.execute_scheduled_runs(NOW)

    assert result["runs_selected"] == 0
    assert result["stuck_runs"] == 1


def test_previous_task_owner_is_used(engine, db, hub):
    engine.process_task_completion(
        "auto-1", task_id="t1", current_position=1, completion_date="2024-01-03T09:00:00Z",
        contact_id="c1", previous_owner_id="o9", now=NOW,
    )

    engine.execute_scheduled_runs(utc(2024, 1, 4, 9, 0))

    assert hub.created[0]["properties"]["hubspot_owner_id"] == "o9"
    assert hub.created[0]["properties"]["hs_task_subject"] == "Second call"


def test_no_owner_mode_leaves_task_unassigned(engine, db, hub):
    engine.process_task_completion(
        "auto-1", task_id="t2", current_position=2, completion_date=to_iso_z(NOW),
        contact_id="c1", now=NOW,
    )

    engine.execute_scheduled_runs(NOW + timedelta(hours=2))

    assert "hubspot_owner_id" not in hub.created[0]["properties"]


def test_missing_contact_owner_skips_run(engine, db, hub):
    run_id = engine.process_list_entry("auto-1", contact_id="c3", now=NOW)["run_id"]

    result = engine.execute_scheduled_runs(NOW)

    assert result["runs_skipped"] == 1
    assert hub.created == []
    run = db.get_run(run_id)
    assert run["hs_action_successful"] is False
    assert "owner" in run["failure_description"]


def test_partial_batch_failure_is_mapped_per_run(engine, db, hub):
    ok_run = engine.process_list_entry("auto-1", contact_id="c1", now=NOW)["run_id"]
    bad_run = engine.process_list_entry("auto-1", contact_id="c2", now=NOW)["run_id"]
    hub.reject_trace_ids.add(bad_run)

    result = engine.execute_scheduled_runs(NOW)

    assert result["tasks_created"] == 1
    assert result["runs_failed"] == 1
    assert db.get_run(ok_run)["hs_action_successful"] is True
    failed = db.get_run(bad_run)
    assert failed["hs_action_successful"] is False
    assert failed["failure_description"] == "Owner is not allowed"


# ==================== RECONCILER ====================

def test_failed_batch_is_retried_by_reconciler(engine, db, hub, network_error):
    run_id = engine.process_list_entry("auto-1", contact_id="c1", now=NOW)["run_id"]
    hub.create_error = network_error

    result = engine.execute_scheduled_runs(NOW)
    assert result["runs_failed"] == 1
    assert db.get_run(run_id)["failure_description"].startswith("Batch create failed")

    hub.create_error = None
    retried = engine.retry_stuck_runs(NOW + timedelta(minutes=15))

    assert retried["tasks_created"] == 1
    assert db.get_run(run_id)["hs_action_successful"] is True


def test_rejected_stuck_run_is_picked_up_by_next_sweep(engine, db, hub):
    first = pending_run(db, NOW - timedelta(hours=1))
    rejected = pending_run(db, NOW - timedelta(hours=1), contact_id="c2")
    third = pending_run(db, NOW - timedelta(hours=1))
    hub.reject_trace_ids.add(rejected)

    result = engine.retry_stuck_runs(NOW)

    assert result["runs_selected"] == 3
    assert result["tasks_created"] == 2
    assert result["runs_failed"] == 1
    for run_id in (first, third):
        run = db.get_run(run_id)
        assert run["hs_action_successful"] is True
        assert len(run["hs_actioned_task_ids"]) == 1
    assert db.get_run(rejected)["hs_action_successful"] is False

    hub.reject_trace_ids.clear()
    retried = engine.retry_stuck_runs(NOW + timedelta(minutes=10))

    assert retried["runs_selected"] == 1
    assert retried["tasks_created"] == 1
    assert all(db.get_run(r)["hs_action_successful"] for r in (first, rejected, third))
    assert len(hub.created) == 3


def test_reconciler_window_bounds(engine, db, hub):
    pending_run(db, NOW - timedelta(hours=50))
    in_window = pending_run(db, NOW - timedelta(hours=1), contact_id="c2")
    pending_run(db, NOW - timedelta(minutes=5))

    result = engine.retry_stuck_runs(NOW)

    assert result["runs_selected"] == 1
    assert result["tasks_created"] == 1
    assert db.get_run(in_window)["hs_action_successful"] is True


def test_blocked_runs_are_never_retried(engine, db, hub):
    run_id = pending_run(db, NOW - timedelta(hours=1))
    db.block_runs([run_id])

    assert engine.retry_stuck_runs(NOW)["runs_selected"] == 0
    assert hub.created == []
