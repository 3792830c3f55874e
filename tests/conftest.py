"""
Shared fixtures: a throwaway SQLite cache and an in-memory HubSpot stand-in
"""

from datetime import datetime, timezone

import pytest
import requests

from database import TaskCacheDB

QUEUE_ID = "Q1"
LIST_ID = "L1"


class FakeHubSpot:
    """Records every call; answers like the HubSpot CRM API would"""

    def __init__(self, contacts=None):
        self.api_calls = 0
        self.contacts = contacts or {}
        self.created = []
        self.completed = []
        self.create_error = None
        self.reject_trace_ids = set()
        self.calls = {}
        self.task_pages = []
        self.associations = {}
        self.list_members = {}
        self.owners = []
        self.reachable = True
        self._next_id = 1000

    def batch_read_contacts(self, contact_ids):
        self.api_calls += 1
        return [
            {"id": cid, "properties": dict(self.contacts[cid])}
            for cid in contact_ids if cid in self.contacts
        ]

    def batch_create_tasks(self, inputs):
        self.api_calls += 1
        if self.create_error:
            raise self.create_error
        results, errors = [], []
        for item in inputs:
            trace_id = item.get("objectWriteTraceId")
            if trace_id in self.reject_trace_ids:
                errors.append({"status": "error", "category": "VALIDATION_ERROR",
                               "message": "Owner is not allowed", "context": {"objectWriteTraceId": [trace_id]}})
                continue
            self._next_id += 1
            self.created.append(item)
            results.append({"id": str(self._next_id), "objectWriteTraceId": trace_id,
                            "properties": item["properties"]})
        return {"results": results, "errors": errors}

    def batch_complete_tasks(self, task_ids):
        self.api_calls += 1
        self.completed.extend(task_ids)
        return {"results": [{"id": t} for t in task_ids], "errors": []}

    def get_call(self, call_id):
        self.api_calls += 1
        return self.calls[str(call_id)]

    def search_tasks_modified_since(self, since_ms, after=None, limit=100):
        self.api_calls += 1
        index = int(after or 0)
        page = self.task_pages[index] if index < len(self.task_pages) else []
        response = {"results": page}
        if index + 1 < len(self.task_pages):
            response["paging"] = {"next": {"after": str(index + 1)}}
        return response

    def batch_read_associations(self, from_type, to_type, object_ids):
        self.api_calls += 1
        return {str(i): self.associations[str(i)] for i in object_ids if str(i) in self.associations}

    def iter_list_memberships(self, list_id, page_size=250):
        self.api_calls += 1
        for record_id, timestamp in self.list_members.get(list_id, {}).items():
            yield {"recordId": record_id, "membershipTimestamp": timestamp}

    def iter_owners(self, page_size=100):
        self.api_calls += 1
        yield from self.owners

    def test_connection(self):
        self.api_calls += 1
        return self.reachable


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_automation(db, automation_id="auto-1", sequence_tasks=None, **overrides):
    """Store an enabled automation bound to queue Q1 and list L1"""
    db.upsert_task_category(1, "New leads", QUEUE_ID)
    row = {
        "id": automation_id,
        "name": "Lead follow-up",
        "task_category_id": 1,
        "automation_enabled": True,
        "hs_list_id": LIST_ID,
        "first_task_creation": True,
        "sequence_enabled": True,
        "tasks_configuration": {
            "initial_task": {"name": "Call new lead", "owner": "contact_owner"},
            "sequence_tasks": sequence_tasks if sequence_tasks is not None else [
                {"name": "Second call", "owner": "previous_task_owner", "delay": {"amount": 1, "unit": "days"}},
                {"name": "Last call", "owner": "no_owner", "delay": {"amount": 2, "unit": "hours"}},
            ],
        },
        "timezone": "Europe/Paris",
    }
    row.update(overrides)
    db.upsert_automation(row)
    return db.get_automation(automation_id)


@pytest.fixture
def db(tmp_path):
    return TaskCacheDB(str(tmp_path / "automation.db"), database_url=None)


@pytest.fixture
def hub():
    return FakeHubSpot(contacts={
        "c1": {"firstname": "Ada", "hubspot_owner_id": "o1"},
        "c2": {"firstname": "Grace", "hubspot_owner_id": "o2"},
        "c3": {"firstname": "Orphan"},
    })


@pytest.fixture
def network_error():
    return requests.exceptions.ConnectionError("HubSpot unreachable")
