"""
Exit and Engagement Reactors
Curtail in-flight automation state when a contact leaves an automation's list
or when an outbound call is logged against the contact.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import requests

from contact_sync import ContactSync
from database import TaskCacheDB
from hubspot_client import HubSpotClient, chunked
from models import (
    AutomationDefinition, RUN_CANCEL_ON_EXIT, RUN_COMPLETE_ON_ENGAGEMENT, RUN_COMPLETE_ON_EXIT,
    task_queue_ids,
)
from working_hours import parse_timestamp, to_iso_z, utc_now

logger = logging.getLogger(__name__)

CALL_OBJECT_TYPE = "0-48"
TASK_OBJECT_TYPE = "0-27"

# Shorter outbound calls never complete tasks
MIN_CALL_DURATION_MS = 2000


def batch_complete_tasks(hub: HubSpotClient, task_ids: Sequence[str]) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Mark tasks COMPLETED in HubSpot, chunk by chunk. A failing chunk does not
    stop the others. Returns (completed ids, error records).
    """
    completed, errors = [], []
    for chunk in chunked([str(t) for t in task_ids]):
        try:
            response = hub.batch_complete_tasks(chunk)
        except requests.exceptions.RequestException as e:
            logger.error(f"Batch completion failed for tasks {chunk}: {e}")
            errors.append({"task_ids": chunk, "error": str(e)})
            continue

        ok = {str(r.get("id")) for r in response.get("results", [])}
        for error in response.get("errors", []):
            failed_ids = (error.get("context") or {}).get("id") or []
            logger.error(f"HubSpot refused to complete tasks {failed_ids}: {error.get('message')}")
            errors.append({"task_ids": failed_ids, "error": error.get("message") or error.get("category")})
        completed.extend(t for t in chunk if t in ok)
    return completed, errors


class ExitReactor:
    """Auto-complete tasks and block pending runs for contacts that left the list"""

    def __init__(self, db: TaskCacheDB, hub: HubSpotClient, contacts: Optional[ContactSync] = None):
        self.db = db
        self.hub = hub
        self.contacts = contacts or ContactSync(db, hub)

    def process(self, membership_ids: Optional[Sequence[str]] = None,
                now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Sweep every enabled automation with exit handling. With membership_ids
        the sweep is restricted to those memberships' contacts, and the
        memberships are stamped as processed afterwards.
        """
        now = now or utc_now()
        result = {
            "success": True,
            "contacts_exited": 0,
            "tasks_completed": 0,
            "runs_blocked": 0,
            "automation_runs_created": 0,
            "memberships_processed": 0,
            "errors": [],
        }

        restrict: Optional[Dict[str, Set[str]]] = None
        if membership_ids is not None:
            restrict = defaultdict(set)
            for membership in self.db.get_memberships(membership_ids):
                restrict[membership["automation_id"]].add(membership["hs_object_id"])

        automations = [
            a for a in self.db.list_automations(enabled_only=True)
            if a.hs_list_id and a.hs_queue_id and a.exit_handling_enabled
        ]
        if restrict is not None:
            automations = [a for a in automations if a.id in restrict]
            self.contacts.refresh([c for ids in restrict.values() for c in ids])

        for automation in automations:
            try:
                outcome = self._process_automation(
                    automation, restrict.get(automation.id) if restrict is not None else None, now
                )
            except Exception as e:
                logger.error(f"Exit processing failed for automation {automation.id}: {e}")
                result["errors"].append({"automation_id": automation.id, "error": str(e)})
                continue
            for key in ("contacts_exited", "tasks_completed", "runs_blocked", "automation_runs_created"):
                result[key] += outcome[key]
            result["errors"].extend(outcome["errors"])

        if membership_ids:
            result["memberships_processed"] = self.db.mark_exit_processed(membership_ids, to_iso_z(now))

        logger.info(f"✓ Exit sweep: {result['contacts_exited']} contacts exited, "
                    f"{result['tasks_completed']} tasks completed, {result['runs_blocked']} runs blocked")
        return result

    def _process_automation(self, automation: AutomationDefinition, only_contacts: Optional[Set[str]],
                            now: datetime) -> Dict[str, Any]:
        outcome = {"contacts_exited": 0, "tasks_completed": 0, "runs_blocked": 0,
                   "automation_runs_created": 0, "errors": []}
        now_iso = to_iso_z(now)

        open_tasks = self.db.open_tasks_for_contacts(
            sorted(only_contacts) if only_contacts is not None else None, automation.hs_queue_id
        )
        candidates = {t["associated_contact_id"] for t in open_tasks if t.get("associated_contact_id")}
        if automation.sequence_exit_enabled:
            pending = self.db.pending_runs_for_contacts(
                sorted(only_contacts) if only_contacts is not None else None,
                automation.hs_queue_id, now_iso,
            )
            candidates |= {r["hs_contact_id"] for r in pending}
        if only_contacts is not None:
            candidates &= only_contacts
        if not candidates:
            return outcome

        memberships = self.db.get_list_memberships(automation.id, automation.hs_list_id, sorted(candidates))
        exited = sorted(
            c for c in candidates
            if c not in memberships or memberships[c].get("list_exit_date")
        )
        outcome["contacts_exited"] = len(exited)
        if not exited:
            return outcome

        if automation.auto_complete_on_exit_enabled:
            tasks = [t for t in open_tasks if t.get("associated_contact_id") in exited]
            if tasks:
                completed = self._auto_complete(automation, tasks, exited, now)
                outcome["tasks_completed"] += completed
                outcome["automation_runs_created"] += 1

        if automation.sequence_exit_enabled:
            blocked = self._block_pending_runs(automation, exited, now)
            outcome["runs_blocked"] += blocked
            if blocked:
                outcome["automation_runs_created"] += 1

        return outcome

    def _auto_complete(self, automation: AutomationDefinition, tasks: List[Dict[str, Any]],
                       exited: List[str], now: datetime) -> int:
        task_ids = [t["hs_object_id"] for t in tasks]
        run = {
            "automation_id": automation.id,
            "type": RUN_COMPLETE_ON_EXIT,
            "hs_trigger_object": "list",
            "hs_trigger_object_id": automation.hs_list_id,
            "hs_contact_id": exited[0] if len(exited) == 1 else None,
            "hs_queue_id": automation.hs_queue_id,
            "planned_execution_timestamp": to_iso_z(now),
        }
        try:
            completed, errors = batch_complete_tasks(self.hub, task_ids)
            self.db.mark_tasks_completed(completed, automation.id, "list_exit", skipped=True,
                                         completed_at=to_iso_z(now))
        except Exception as e:
            logger.error(f"Auto-complete on exit failed for automation {automation.id}: {e}")
            run.update({"hs_action_successful": False, "hs_actioned_task_ids": [],
                        "failure_description": {"error": str(e), "task_ids": task_ids}})
            self.db.insert_run(run)
            return 0

        run.update({
            "hs_action_successful": bool(completed) and not errors,
            "hs_actioned_task_ids": completed,
            "failure_description": {"errors": errors} if errors else None,
        })
        self.db.insert_run(run)
        logger.info(f"✓ Completed {len(completed)}/{len(task_ids)} tasks for contacts leaving "
                    f"list {automation.hs_list_id}")
        return len(completed)

    def _block_pending_runs(self, automation: AutomationDefinition, exited: List[str], now: datetime) -> int:
        pending = self.db.pending_runs_for_contacts(exited, automation.hs_queue_id, to_iso_z(now))
        run_ids = [r["id"] for r in pending]
        if not run_ids:
            return 0

        blocked = self.db.block_runs(run_ids)
        self.db.insert_run({
            "automation_id": automation.id,
            "type": RUN_CANCEL_ON_EXIT,
            "hs_trigger_object": "list",
            "hs_trigger_object_id": automation.hs_list_id,
            "hs_contact_id": exited[0] if len(exited) == 1 else None,
            "hs_queue_id": automation.hs_queue_id,
            "planned_execution_timestamp": to_iso_z(now),
            "hs_action_successful": True,
            "actioned_run_ids": run_ids,
        })
        logger.info(f"⛔ Blocked {blocked} pending runs in queue {automation.hs_queue_id} for exited contacts")
        return blocked


class EngagementReactor:
    """Complete automation tasks when an outbound call is logged for the contact"""

    def __init__(self, db: TaskCacheDB, hub: HubSpotClient, min_call_duration_ms: int = MIN_CALL_DURATION_MS):
        self.db = db
        self.hub = hub
        self.min_call_duration_ms = min_call_duration_ms

    def handle_call(self, call_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        result = {"call_id": str(call_id), "tasks_completed": 0, "tasks_skipped": 0,
                  "automation_runs_created": 0, "errors": []}

        call = self.hub.get_call(call_id)
        props = call.get("properties") or {}
        if (props.get("hs_call_direction") or "").upper() != "OUTBOUND":
            result["skipped"] = "not an outbound call"
            return result

        duration = int(float(props.get("hs_call_duration") or 0))
        if duration < self.min_call_duration_ms:
            result["skipped"] = f"call shorter than {self.min_call_duration_ms}ms"
            return result

        contact_results = ((call.get("associations") or {}).get("contacts") or {}).get("results") or []
        contact_ids = sorted({str(c["id"]) for c in contact_results if c.get("id")})
        if not contact_ids:
            result["skipped"] = "no associated contact"
            return result

        automations = [a for a in self.db.list_automations(enabled_only=True) if a.auto_complete_on_engagement]
        if not automations:
            result["skipped"] = "no automation completes tasks on engagement"
            return result

        groups: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        by_id = {a.id: a for a in automations}
        for task in self.db.open_tasks_for_contacts(contact_ids):
            for automation in automations:
                if (task.get("created_by_automation_id") == automation.id
                        or (automation.hs_queue_id and automation.hs_queue_id in task_queue_ids(task))):
                    groups[automation.id].append(task)
                    break

        for automation_id, tasks in groups.items():
            outcome = self._complete_group(by_id[automation_id], tasks, call_id, contact_ids, now)
            result["tasks_completed"] += outcome["completed"]
            result["tasks_skipped"] += outcome["skipped"]
            result["automation_runs_created"] += 1
            result["errors"].extend(outcome["errors"])

        logger.info(f"📞 Call {call_id}: completed {result['tasks_completed']} tasks "
                    f"({result['tasks_skipped']} ahead of their due date)")
        return result

    def _complete_group(self, automation: AutomationDefinition, tasks: List[Dict[str, Any]],
                        call_id: str, contact_ids: List[str], now: datetime) -> Dict[str, Any]:
        due, future = [], []
        for task in tasks:
            due_at = parse_timestamp(task.get("hs_timestamp"))
            (due if due_at is None or due_at <= now else future).append(task["hs_object_id"])

        run = {
            "automation_id": automation.id,
            "type": RUN_COMPLETE_ON_ENGAGEMENT,
            "hs_trigger_object": "engagement",
            "hs_trigger_object_id": str(call_id),
            "hs_contact_id": contact_ids[0] if len(contact_ids) == 1 else None,
            "hs_queue_id": automation.hs_queue_id,
            "planned_execution_timestamp": to_iso_z(now),
        }
        try:
            completed, errors = batch_complete_tasks(self.hub, due + future)
            done = set(completed)
            completed_at = to_iso_z(now)
            self.db.mark_tasks_completed([t for t in due if t in done], automation.id, "phone_call",
                                         skipped=False, completed_at=completed_at)
            self.db.mark_tasks_completed([t for t in future if t in done], automation.id, "phone_call",
                                         skipped=True, completed_at=completed_at)
        except Exception as e:
            logger.error(f"Engagement completion failed for automation {automation.id}: {e}")
            run.update({"hs_action_successful": False, "hs_actioned_task_ids": [],
                        "failure_description": {"error": str(e), "task_ids": due + future}})
            self.db.insert_run(run)
            return {"completed": 0, "skipped": 0, "errors": [{"automation_id": automation.id, "error": str(e)}]}

        run.update({
            "hs_action_successful": bool(completed) and not errors,
            "hs_actioned_task_ids": completed,
            "failure_description": {"errors": errors} if errors else None,
        })
        self.db.insert_run(run)
        return {
            "completed": len(completed),
            "skipped": len([t for t in future if t in done]),
            "errors": errors,
        }


def _is_call_creation(event: Dict[str, Any]) -> bool:
    return (str(event.get("objectTypeId")) == CALL_OBJECT_TYPE
            and (event.get("changeFlag") in ("NEW", "CREATED")
                 or event.get("subscriptionType") == "object.creation"))


def _is_task_deletion(event: Dict[str, Any]) -> bool:
    return (str(event.get("objectTypeId")) == TASK_OBJECT_TYPE
            and (event.get("changeFlag") == "DELETED"
                 or event.get("subscriptionType") == "object.deletion"))


def route_webhook_events(events: List[Any], engagement: EngagementReactor,
                         db: TaskCacheDB) -> Dict[str, Any]:
    """
    Dispatch a HubSpot webhook batch: call creations go to the engagement
    reactor, task deletions mark the cached task DELETED, the rest is ignored.
    """
    call_ids, deleted_task_ids, ignored = [], [], 0
    for event in events:
        if not isinstance(event, dict) or not event.get("objectId"):
            logger.info(f"Ignoring unrecognized webhook event: {event!r}")
            ignored += 1
            continue
        if _is_call_creation(event):
            call_ids.append(str(event["objectId"]))
        elif _is_task_deletion(event):
            deleted_task_ids.append(str(event["objectId"]))
        else:
            logger.info(f"Ignoring webhook event {event.get('subscriptionType')} "
                        f"for object type {event.get('objectTypeId')}")
            ignored += 1

    result = {"calls_processed": 0, "tasks_completed": 0, "tasks_deleted": 0,
              "ignored": ignored, "errors": []}

    for call_id in dict.fromkeys(call_ids):
        try:
            outcome = engagement.handle_call(call_id)
        except Exception as e:
            logger.error(f"Failed to process call {call_id}: {e}")
            result["errors"].append({"call_id": call_id, "error": str(e)})
            continue
        result["calls_processed"] += 1
        result["tasks_completed"] += outcome["tasks_completed"]
        result["errors"].extend(outcome["errors"])

    if deleted_task_ids:
        result["tasks_deleted"] = db.mark_tasks_deleted(deleted_task_ids)
        logger.info(f"🗑️ Marked {result['tasks_deleted']} tasks as deleted")

    return result
