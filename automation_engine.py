"""
Task Automation Engine
Turns list-entry and task-completion events into planned automation runs,
materializes due runs as HubSpot tasks, and replays runs that were missed.

Run lifecycle: planned -> executed | blocked. The ledger's success flag is the
only idempotency gate: every path selects unsuccessful, unblocked runs and
flips the flag with a conditional single-row update.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from contact_sync import ContactSync
from database import TaskCacheDB
from hubspot_client import BATCH_SIZE, HubSpotClient, TASK_TO_CONTACT_ASSOCIATION_TYPE, chunked
from models import (
    AutomationDefinition, ConfigurationError, InvalidTriggerError, ScheduleConfig,
    ScheduledTimeInPastError, UnknownTriggerError,
    CREATE_RUN_TYPES, DEFAULT_TASK_SUBJECT, OWNER_CONTACT, OWNER_NO_OWNER, OWNER_PREVIOUS_TASK,
    RUN_CREATE_FROM_SEQUENCE, RUN_CREATE_ON_ENTRY, TRIGGER_LIST_ENTRY, TRIGGER_TASK_COMPLETION,
)
from working_hours import (
    PlannedTime, calculate_delay, compute_planned_time, parse_timestamp, to_iso_z, utc_now,
)

logger = logging.getLogger(__name__)


class RunResolutionError(Exception):
    """A run's contact or owner cannot be resolved; needs a config fix"""


class AutomationEngine:
    """Trigger processor, scheduled-run executor and stuck-run reconciler"""

    def __init__(self, db: TaskCacheDB, hub: HubSpotClient,
                 settings: Optional[Dict[str, Any]] = None,
                 contacts: Optional[ContactSync] = None):
        settings = settings or {}
        self.db = db
        self.hub = hub
        self.contacts = contacts or ContactSync(db, hub, settings.get("contact_max_age_minutes", 10))
        self.batch_size = int(settings.get("batch_size", BATCH_SIZE))
        self.executor_lookback = timedelta(minutes=settings.get("executor_lookback_minutes", 10))
        self.executor_limit = int(settings.get("executor_limit", 500))
        self.stuck_min_age = timedelta(minutes=settings.get("stuck_min_age_minutes", 10))
        self.stuck_max_age = timedelta(hours=settings.get("stuck_max_age_hours", 48))
        self.stuck_batch_limit = int(settings.get("stuck_batch_limit", 100))
        self.stuck_alert_age = timedelta(minutes=settings.get("stuck_alert_minutes", 15))
        self.past_due_grace = timedelta(minutes=settings.get("past_due_grace_minutes", 0))
        self.default_timezone = settings.get("default_timezone")

    # ==================== TRIGGER PROCESSOR ====================

    def process_trigger(self, payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Dispatch a trigger payload to the matching entry point"""
        trigger_type = payload.get("trigger_type")
        automation_id = payload.get("automation_id")
        if not automation_id:
            raise InvalidTriggerError("automation_id is required")

        if trigger_type == TRIGGER_LIST_ENTRY:
            return self.process_list_entry(
                automation_id,
                contact_id=payload.get("contact_id") or payload.get("hs_contact_id"),
                list_id=payload.get("list_id") or payload.get("hs_list_id"),
                membership_id=payload.get("membership_id") or payload.get("hs_membership_id"),
                now=now,
                schedule_override=self._schedule_override(payload),
            )

        if trigger_type == TRIGGER_TASK_COMPLETION:
            return self.process_task_completion(
                automation_id,
                task_id=payload.get("task_id"),
                current_position=payload.get("current_position"),
                completion_date=payload.get("completion_date"),
                contact_id=payload.get("associated_contact_id") or payload.get("contact_id"),
                previous_owner_id=payload.get("hubspot_owner_id"),
                queue_id=payload.get("hs_queue_id"),
                now=now,
                schedule_override=self._schedule_override(payload),
            )

        raise UnknownTriggerError(f"Unsupported trigger type: {trigger_type}")

    def _schedule_override(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if "schedule_enabled" not in payload:
            return None
        return {
            "schedule_enabled": bool(payload.get("schedule_enabled")),
            "schedule": ScheduleConfig.from_dict(payload.get("schedule_configuration")),
            "timezone": payload.get("timezone"),
        }

    def _load_automation(self, automation_id: str) -> AutomationDefinition:
        automation = self.db.get_automation(automation_id)
        if automation is None:
            raise ConfigurationError(f"Automation {automation_id} not found")
        return automation

    def _plan(self, automation: AutomationDefinition, candidate: datetime,
              override: Optional[Dict[str, Any]] = None) -> PlannedTime:
        if override is not None:
            return compute_planned_time(candidate, override["schedule"], override["schedule_enabled"],
                                        override["timezone"] or automation.timezone or self.default_timezone)
        return compute_planned_time(candidate, automation.schedule, automation.schedule_enabled,
                                    automation.timezone or self.default_timezone)

    def process_list_entry(self, automation_id: str, contact_id: Optional[str] = None,
                           list_id: Optional[str] = None, membership_id: Optional[str] = None,
                           now: Optional[datetime] = None,
                           schedule_override: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Plan the initial task (position 1) for a contact that entered the list"""
        now = (now or utc_now()).replace(microsecond=0)
        automation = self._load_automation(automation_id)
        if not automation.enabled:
            return {"success": True, "skipped": True, "message": f"Automation {automation_id} is disabled"}

        if not contact_id and membership_id:
            memberships = self.db.get_memberships([membership_id])
            contact_id = memberships[0]["hs_object_id"] if memberships else None
        if not contact_id and not membership_id:
            raise InvalidTriggerError("contact_id or membership_id is required for list entry")

        if contact_id and self.db.has_pending_run(automation.id, contact_id, automation.hs_queue_id,
                                                  to_iso_z(now - self.stuck_max_age)):
            logger.info(f"Contact {contact_id} already has a pending run for automation {automation.id}")
            return {"success": True, "skipped": True, "message": "Pending run already exists"}

        template = automation.task_at(1)
        planned = self._plan(automation, now, schedule_override)

        run_id = self.db.insert_run({
            "automation_id": automation.id,
            "type": RUN_CREATE_ON_ENTRY,
            "hs_trigger_object": "list",
            "hs_trigger_object_id": list_id or automation.hs_list_id,
            "hs_contact_id": contact_id,
            "hs_membership_id": membership_id,
            "hs_queue_id": automation.hs_queue_id,
            "planned_execution_timestamp": planned.iso,
            "planned_execution_timestamp_display": planned.display,
            "task_name": template.name,
            "task_owner_setting": template.owner,
            "position_in_sequence": 1,
        })
        logger.info(f"📅 Planned '{template.name}' for contact {contact_id} at {planned.display} (run {run_id})")

        return {
            "success": True,
            "run_id": run_id,
            "planned_execution_timestamp": planned.iso,
            "planned_execution_timestamp_display": planned.display,
            "schedule_fallback": planned.fallback,
        }

    def process_task_completion(self, automation_id: str, task_id: Optional[str],
                                current_position: Any, completion_date: Any,
                                contact_id: Optional[str] = None,
                                previous_owner_id: Optional[str] = None,
                                queue_id: Optional[str] = None,
                                now: Optional[datetime] = None,
                                schedule_override: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Plan the next sequence task after the task at `current_position` was
        completed. Raises ScheduledTimeInPastError when completion + delay has
        already elapsed; no run is written in that case.
        """
        now = now or utc_now()
        if not task_id:
            raise InvalidTriggerError("task_id is required for task completion")
        try:
            position = int(current_position)
        except (TypeError, ValueError):
            raise InvalidTriggerError(f"current_position must be an integer, got {current_position!r}")
        try:
            completed_at = parse_timestamp(completion_date)
        except (ValueError, OverflowError):
            raise InvalidTriggerError(f"completion_date is not a timestamp: {completion_date!r}")
        if completed_at is None:
            raise InvalidTriggerError("completion_date is required for task completion")
        completed_at = completed_at.replace(microsecond=0)
        if not contact_id:
            raise InvalidTriggerError("associated_contact_id is required for task completion")

        automation = self._load_automation(automation_id)
        if not automation.enabled:
            return {"success": True, "skipped": True, "message": f"Automation {automation_id} is disabled"}

        if position == automation.total_tasks:
            logger.info(f"Sequence complete for contact {contact_id} (automation {automation.id})")
            return {"success": True, "sequence_complete": True, "message": "Sequence complete"}
        if position < 1:
            raise ConfigurationError(f"Invalid sequence position {position} for automation {automation.id}")

        existing = self.db.find_run_by_trigger(automation.id, RUN_CREATE_FROM_SEQUENCE, task_id)
        if existing:
            return {
                "success": True,
                "duplicate": True,
                "run_id": existing["id"],
                "planned_execution_timestamp": existing["planned_execution_timestamp"],
            }

        next_position = position + 1
        template = automation.task_at(next_position)
        due = completed_at + calculate_delay(template.delay_amount, template.delay_unit)

        if due < now - self.past_due_grace:
            raise ScheduledTimeInPastError(
                f"Task {next_position} of automation {automation.id} was due at {to_iso_z(due)}, "
                f"which is already in the past",
                planned=due,
            )

        queue_id = queue_id or automation.hs_queue_id
        run = {
            "automation_id": automation.id,
            "type": RUN_CREATE_FROM_SEQUENCE,
            "hs_trigger_object": "task",
            "hs_trigger_object_id": str(task_id),
            "hs_contact_id": str(contact_id),
            "hs_queue_id": queue_id,
            "task_name": template.name,
            "task_owner_setting": template.owner,
            "position_in_sequence": next_position,
            "hs_owner_id_previous_task": previous_owner_id,
        }

        conflict = self._sequence_conflict(automation, str(contact_id), queue_id, next_position, now)
        if conflict:
            run["failure_description"] = conflict
            run_id = self.db.insert_run(run)
            logger.warning(f"Sequence blocked for contact {contact_id}: {conflict}")
            return {"success": True, "blocked": True, "run_id": run_id, "message": conflict}

        planned = self._plan(automation, due, schedule_override)
        run["planned_execution_timestamp"] = planned.iso
        run["planned_execution_timestamp_display"] = planned.display
        run_id = self.db.insert_run(run)
        logger.info(f"📅 Planned '{template.name}' (position {next_position}) for contact {contact_id} "
                    f"at {planned.display} (run {run_id})")

        return {
            "success": True,
            "run_id": run_id,
            "position_in_sequence": next_position,
            "planned_execution_timestamp": planned.iso,
            "planned_execution_timestamp_display": planned.display,
            "schedule_fallback": planned.fallback,
        }

    def _sequence_conflict(self, automation: AutomationDefinition, contact_id: str,
                           queue_id: Optional[str], next_position: int, now: datetime) -> Optional[str]:
        if queue_id and self.db.has_open_task_at_or_after(contact_id, queue_id, next_position):
            return (f"Contact already has an open task at position {next_position} or later "
                    f"in queue {queue_id}")
        if self.db.has_pending_run(automation.id, contact_id, queue_id, to_iso_z(now - self.stuck_max_age)):
            return f"Contact already has a pending run for automation {automation.id}"
        return None

    # ==================== EXECUTOR & RECONCILER ====================

    def execute_scheduled_runs(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Materialize runs due in the current minute, falling back to the last
        few minutes when the current minute has nothing (cron jitter).
        """
        now = now or utc_now()
        minute_start = now.replace(second=0, microsecond=0)
        minute_end = minute_start + timedelta(minutes=1)

        runs = self.db.select_pending_runs(to_iso_z(minute_start), to_iso_z(minute_end),
                                           limit=self.executor_limit, include_lower=True)
        window = "current_minute"
        if not runs:
            runs = self.db.select_pending_runs(to_iso_z(now - self.executor_lookback), to_iso_z(minute_end),
                                               limit=self.executor_limit, include_lower=True)
            window = "lookback"

        result = self._materialize_runs(runs, force_refresh=False)
        result["window"] = window

        stuck = self.db.count_overdue_runs(to_iso_z(now - self.stuck_alert_age))
        result["stuck_runs"] = stuck
        if stuck:
            logger.warning(f"⚠️ {stuck} automation runs are more than "
                           f"{int(self.stuck_alert_age.total_seconds() // 60)} minutes overdue")
        return result

    def retry_stuck_runs(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Replay create runs planned between now-48h and now-10min that never
        succeeded. Bounded by stuck_batch_limit per sweep.
        """
        now = now or utc_now()
        runs = self.db.select_pending_runs(to_iso_z(now - self.stuck_max_age),
                                           to_iso_z(now - self.stuck_min_age),
                                           types=CREATE_RUN_TYPES,
                                           limit=self.stuck_batch_limit)
        if runs:
            logger.info(f"🔁 Retrying {len(runs)} stuck automation runs")
        return self._materialize_runs(runs, force_refresh=True)

    def _materialize_runs(self, runs: List[Dict[str, Any]], force_refresh: bool) -> Dict[str, Any]:
        result = {
            "success": True,
            "runs_selected": len(runs),
            "tasks_created": 0,
            "runs_failed": 0,
            "runs_skipped": 0,
            "contacts_refreshed": 0,
            "errors": [],
        }
        if not runs:
            return result

        membership_ids = [r["hs_membership_id"] for r in runs
                          if not r.get("hs_contact_id") and r.get("hs_membership_id")]
        memberships = {m["id"]: m for m in self.db.get_memberships(membership_ids)}

        contact_for_run = {}
        for run in runs:
            contact_id = run.get("hs_contact_id")
            if not contact_id and run.get("hs_membership_id") in memberships:
                contact_id = memberships[run["hs_membership_id"]]["hs_object_id"]
            contact_for_run[run["id"]] = contact_id

        refresh = self.contacts.refresh([c for c in contact_for_run.values() if c], force=force_refresh)
        result["contacts_refreshed"] = refresh["synced"]
        contacts = self.db.get_contacts([c for c in contact_for_run.values() if c])

        prepared = []
        for run in runs:
            try:
                prepared.append(self._prepare_task(run, contact_for_run[run["id"]], contacts))
            except RunResolutionError as e:
                logger.warning(f"Skipping run {run['id']}: {e}")
                self.db.mark_run_failure(run["id"], str(e))
                result["runs_skipped"] += 1

        for chunk in chunked(prepared, self.batch_size):
            run_ids = [p["run"]["id"] for p in chunk]
            try:
                response = self.hub.batch_create_tasks([p["input"] for p in chunk])
            except requests.exceptions.RequestException as e:
                logger.error(f"Batch task creation failed for runs {run_ids}: {e}")
                for run_id in run_ids:
                    self.db.mark_run_failure(run_id, f"Batch create failed: {e}")
                result["runs_failed"] += len(chunk)
                result["errors"].append({"run_ids": run_ids, "error": str(e)})
                continue

            created, failed = self._apply_batch_results(chunk, response)
            result["tasks_created"] += created
            result["runs_failed"] += len(failed)
            if failed:
                result["errors"].append({"run_ids": failed, "error": "Not created by HubSpot batch"})

        logger.info(f"✓ Automation runs: {result['tasks_created']} created, {result['runs_failed']} failed, "
                    f"{result['runs_skipped']} skipped of {len(runs)}")
        return result

    def _resolve_owner(self, run: Dict[str, Any], contact: Optional[Dict[str, Any]]) -> Optional[str]:
        mode = run.get("task_owner_setting") or OWNER_CONTACT
        if mode == OWNER_NO_OWNER:
            return None
        if mode == OWNER_CONTACT:
            owner_id = (contact or {}).get("hubspot_owner_id")
            if not owner_id:
                raise RunResolutionError("Failed to resolve owner: contact has no owner")
            return str(owner_id)
        if mode == OWNER_PREVIOUS_TASK:
            owner_id = run.get("hs_owner_id_previous_task")
            if not owner_id:
                raise RunResolutionError("Failed to resolve owner: previous task had no owner")
            return str(owner_id)
        raise RunResolutionError(f"Unknown owner mode '{mode}'")

    def _prepare_task(self, run: Dict[str, Any], contact_id: Optional[str],
                      contacts: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        if not contact_id:
            raise RunResolutionError("Failed to resolve contact ID")
        owner_id = self._resolve_owner(run, contacts.get(str(contact_id)))

        properties = {
            "hs_task_subject": run.get("task_name") or DEFAULT_TASK_SUBJECT,
            "hs_task_type": "TODO",
            "hs_task_status": "NOT_STARTED",
            "hs_timestamp": run["planned_execution_timestamp"],
        }
        if run.get("hs_queue_id"):
            properties["hs_queue_membership_ids"] = str(run["hs_queue_id"])
        if owner_id:
            properties["hubspot_owner_id"] = owner_id

        return {
            "run": run,
            "contact_id": str(contact_id),
            "owner_id": owner_id,
            "input": {
                "properties": properties,
                "associations": [{
                    "to": {"id": str(contact_id)},
                    "types": [{
                        "associationCategory": "HUBSPOT_DEFINED",
                        "associationTypeId": TASK_TO_CONTACT_ASSOCIATION_TYPE,
                    }],
                }],
                "objectWriteTraceId": run["id"],
            },
        }

    def _apply_batch_results(self, chunk: List[Dict[str, Any]],
                             response: Dict[str, Any]) -> Tuple[int, List[str]]:
        """
        Match batch results back to runs by objectWriteTraceId (or by order when
        the whole batch succeeded) and record each created task. Returns
        (runs marked successful, ids of runs left unsuccessful).
        """
        results = response.get("results", [])
        errors = response.get("errors", [])
        by_run = {p["run"]["id"]: p for p in chunk}

        created_for = {}
        for obj in results:
            trace_id = obj.get("objectWriteTraceId")
            if trace_id in by_run:
                created_for[trace_id] = obj
        if not created_for and not errors and len(results) == len(chunk):
            created_for = {p["run"]["id"]: obj for p, obj in zip(chunk, results)}
        elif len(created_for) < len(results):
            logger.error(f"{len(results) - len(created_for)} created tasks could not be matched to runs")

        error_for = {}
        for error in errors:
            trace_ids = (error.get("context") or {}).get("objectWriteTraceId") or []
            if isinstance(trace_ids, str):
                trace_ids = [trace_ids]
            for trace_id in trace_ids:
                error_for[trace_id] = error.get("message") or error.get("category") or "HubSpot error"

        marked, failed = 0, []
        for run_id, prepared in by_run.items():
            obj = created_for.get(run_id)
            if obj is None:
                message = error_for.get(run_id, "Task not returned by HubSpot batch create")
                self.db.mark_run_failure(run_id, message)
                failed.append(run_id)
                continue

            run = prepared["run"]
            task_id = str(obj["id"])
            if self.db.mark_run_successful(run_id, [task_id]):
                marked += 1
            else:
                logger.warning(f"Run {run_id} was already executed or blocked; created task {task_id}")
            self.db.record_created_tasks([{
                "hs_object_id": task_id,
                "hs_task_subject": prepared["input"]["properties"]["hs_task_subject"],
                "hs_task_type": "TODO",
                "hs_task_status": "NOT_STARTED",
                "hs_timestamp": run["planned_execution_timestamp"],
                "hs_queue_membership_ids": run.get("hs_queue_id"),
                "hubspot_owner_id": prepared["owner_id"],
                "associated_contact_id": prepared["contact_id"],
                "number_in_sequence": run.get("position_in_sequence"),
                "created_by_automation_id": run.get("automation_id"),
            }])

        return marked, failed
