"""
Tests for the HubSpot Task Automation API
"""

import pytest
from fastapi.testclient import TestClient

import app as app_module
from app import app
from automation_engine import AutomationEngine
from conftest import QUEUE_ID, make_automation
from reactors import EngagementReactor, ExitReactor
from sync_engine import Config, TaskSyncEngine


@pytest.fixture
def client():
    """Test client fixture"""
    return TestClient(app)


@pytest.fixture
def components(db, hub, monkeypatch):
    """Wire the service globals to a temporary database and fake HubSpot"""
    make_automation(db)
    engine = AutomationEngine(db, hub)
    exit_reactor = ExitReactor(db, hub)
    monkeypatch.setattr(app_module, "db", db)
    monkeypatch.setattr(app_module, "engine", engine)
    monkeypatch.setattr(app_module, "exit_reactor", exit_reactor)
    monkeypatch.setattr(app_module, "engagement_reactor", EngagementReactor(db, hub))
    monkeypatch.setattr(app_module, "sync_engine", TaskSyncEngine(
        Config(raw={"hubspot": {"access_token": "x"}}), db, hub, engine, exit_reactor,
    ))
    monkeypatch.delenv("CRON_SECRET", raising=False)
    return db


def test_health_check(client):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data


def test_status_reports_hubspot_reachability(client, hub, monkeypatch):
    monkeypatch.setattr(app_module, "hubspot_client", hub)
    assert client.get("/api/status").json()["hubspot_connected"] is True

    hub.reachable = False
    data = client.get("/api/status").json()
    assert data["hubspot_client_ready"] is True
    assert data["hubspot_connected"] is False

    monkeypatch.setattr(app_module, "hubspot_client", None)
    assert client.get("/api/status").json()["hubspot_connected"] is False


def test_trigger_without_engine(client, monkeypatch):
    monkeypatch.setattr(app_module, "engine", None)
    response = client.post("/api/automation/trigger", json={"trigger_type": "list_entry", "automation_id": 1})
    assert response.status_code == 503


def test_list_entry_trigger(client, components):
    response = client.post("/api/automation/trigger", json={
        "trigger_type": "list_entry",
        "automation_id": "auto-1",
        "contact_id": 101,
        "list_id": "L1",
    })

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    run = components.get_run(data["run_id"])
    assert run["hs_contact_id"] == "101"
    assert run["hs_queue_id"] == QUEUE_ID


def test_unknown_trigger_type(client, components):
    response = client.post("/api/automation/trigger", json={"trigger_type": "deal_won", "automation_id": "auto-1"})
    assert response.status_code == 400
    assert "deal_won" in response.json()["message"]


def test_trigger_for_missing_automation(client, components):
    response = client.post("/api/automation/trigger", json={
        "trigger_type": "list_entry", "automation_id": "nope", "contact_id": "c1",
    })
    assert response.status_code == 422


def test_past_due_task_completion(client, components):
    response = client.post("/api/automation/trigger", json={
        "trigger_type": "task_completion",
        "automation_id": "auto-1",
        "task_id": "t1",
        "current_position": 1,
        "completion_date": "2020-01-01T09:00:00Z",
        "associated_contact_id": "c1",
    })

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["past_due"] is True
    assert data["planned_execution_timestamp"] == "2020-01-02T09:00:00Z"
    assert components.list_runs() == []


def test_runs_listing(client, components):
    client.post("/api/automation/trigger", json={
        "trigger_type": "list_entry", "automation_id": "auto-1", "contact_id": "c1",
    })

    response = client.get("/api/automation/runs", params={"type": "create_on_entry", "successful": False})

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["runs"][0]["task_name"] == "Call new lead"


def test_update_automation_validates_configuration(client, components):
    response = client.put("/api/automations/auto-1", json={
        "tasks_configuration": {"initial_task": {"name": "Call", "owner": "round_robin"}},
    })
    assert response.status_code == 422
    assert components.get_automation("auto-1").initial_task.name == "Call new lead"

    response = client.put("/api/automations/auto-1", json={"auto_complete_on_engagement": True})
    assert response.status_code == 200
    assert response.json()["total_tasks"] == 3
    assert components.get_automation_row("auto-1")["auto_complete_on_engagement"] is True


def test_update_automation_rejects_schedule_without_working_day(client, components):
    response = client.put("/api/automations/auto-1", json={
        "schedule_enabled": True,
        "schedule_configuration": {"working_hours": {"monday": {"enabled": False}}},
    })
    assert response.status_code == 422
    assert "working window" in response.json()["message"]
    assert components.get_automation("auto-1").schedule_enabled is False

    response = client.put("/api/automations/auto-1", json={
        "schedule_enabled": True,
        "schedule_configuration": {"working_hours": {
            "monday": {"enabled": True, "start_time": "09:00", "end_time": "18:00"},
        }},
    })
    assert response.status_code == 200
    assert components.get_automation("auto-1").schedule_enabled is True


def test_cron_requires_secret(client, components, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")

    assert client.get("/api/cron/execute-runs").status_code == 401

    response = client.get("/api/cron/execute-runs", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert response.json()["runs_selected"] == 0


def test_webhook_deletes_cached_task(client, components):
    components.record_created_tasks([{
        "hs_object_id": "t-9", "hs_task_status": "NOT_STARTED", "hs_queue_membership_ids": QUEUE_ID,
        "associated_contact_id": "c1", "number_in_sequence": 1, "created_by_automation_id": "auto-1",
    }])

    response = client.post("/api/webhook/hubspot", json=[
        {"objectTypeId": "0-27", "objectId": "t-9", "changeFlag": "DELETED"},
    ])

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert components.get_task("t-9")["hs_task_status"] == "DELETED"


def test_webhook_rejects_invalid_json(client, components):
    response = client.post("/api/webhook/hubspot", content=b"not json",
                           headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_missing_execution(client, components):
    response = client.get("/api/executions/does-not-exist")
    assert response.status_code == 404


def test_cron_cleanup(client, components, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    execution_id = components.start_execution("incremental", "cron")
    components.complete_execution(execution_id, 10, {})
    components.execute("UPDATE sync_executions SET started_at = ? WHERE execution_id = ?",
                       ("2000-01-01T00:00:00Z", execution_id))
    components.commit()

    assert client.get("/api/cron/cleanup").status_code == 401

    response = client.get("/api/cron/cleanup", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert response.json()["executions_deleted"] == 1
    assert client.get(f"/api/executions/{execution_id}").status_code == 404
