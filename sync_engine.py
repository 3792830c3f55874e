"""
HubSpot Task Sync Engine
Keeps the local task / contact / owner / list-membership cache in step with
HubSpot and feeds task completions and list movements into the automations.
"""

import os
import sys
import time
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

import requests
import yaml

from database import TaskCacheDB, IS_VERCEL
from automation_engine import AutomationEngine
from contact_sync import ContactSync
from hubspot_client import HubSpotClient
from models import AutomationError, ScheduledTimeInPastError
from reactors import ExitReactor
from working_hours import parse_timestamp, to_epoch_ms, to_iso_z, utc_now

# Process-level guard; the sync_executions table guards across instances
_sync_lock = threading.Lock()
_sync_in_progress = False

INCREMENTAL_SYNC = "incremental"


def is_sync_in_progress() -> bool:
    """Check if a sync is currently running in this process"""
    return _sync_in_progress


# --- Logging ---
def setup_logging():
    """Configure logging (console-only on Vercel due to read-only filesystem)"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    if not IS_VERCEL:
        try:
            if not os.path.exists('logs'):
                os.makedirs('logs')
            handlers.append(logging.FileHandler('logs/task_automation.log', encoding='utf-8'))
        except OSError:
            pass  # console logging only

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )
    return logging.getLogger(__name__)


logger = setup_logging()


# --- Configuration Management ---
NUMERIC_AUTOMATION_SETTINGS = (
    "stuck_min_age_minutes", "stuck_max_age_hours", "stuck_batch_limit", "stuck_alert_minutes",
    "executor_lookback_minutes", "executor_limit", "batch_size", "contact_max_age_minutes",
    "past_due_grace_minutes", "min_call_duration_ms",
)
NUMERIC_SYNC_SETTINGS = (
    "lookback_hours", "page_size", "max_pages", "timeout_minutes", "stale_execution_minutes",
    "execute_runs_interval_minutes", "retry_stuck_interval_minutes", "exit_sweep_interval_minutes",
    "incremental_sync_interval_minutes", "list_membership_interval_minutes", "owner_sync_hour",
    "execution_retention_days", "cleanup_hour",
)


@dataclass
class Config:
    """Service configuration with validation"""
    raw: Dict[str, Any]

    @property
    def hubspot(self) -> Dict[str, Any]:
        return self.raw.get("hubspot") or {}

    @property
    def automation(self) -> Dict[str, Any]:
        return self.raw.get("automation") or {}

    @property
    def sync(self) -> Dict[str, Any]:
        return self.raw.get("sync") or {}

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database") or {}

    @property
    def environment(self) -> str:
        return self.raw.get("environment", "development")

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = []

        # The hubspot section may be omitted when HUBSPOT_ACCESS_TOKEN is set
        if not isinstance(self.hubspot, dict):
            errors.append("Section hubspot must be a mapping")
        elif not self.hubspot.get("access_token"):
            errors.append("Missing hubspot.access_token (or HUBSPOT_ACCESS_TOKEN)")

        for section, keys in (("automation", NUMERIC_AUTOMATION_SETTINGS), ("sync", NUMERIC_SYNC_SETTINGS)):
            values = self.raw.get(section) or {}
            if not isinstance(values, dict):
                errors.append(f"Section {section} must be a mapping")
                continue
            for key in keys:
                if key not in values:
                    continue
                value = values[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                    errors.append(f"{section}.{key} must be a non-negative number, got {value!r}")

        return errors


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Environment variables take precedence over the file"""
    token = os.environ.get('HUBSPOT_ACCESS_TOKEN')
    if token:
        raw.setdefault("hubspot", {})["access_token"] = token
    database_url = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')
    if database_url:
        raw.setdefault("database", {})["url"] = database_url
    return raw


def load_config(path: Optional[str]) -> Config:
    """Load, merge environment overrides and validate configuration"""
    raw: Any = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Config YAML must be a mapping at the top level.")

    config = Config(raw=apply_env_overrides(raw))
    errors = config.validate()

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ValueError(error_msg)

    logger.info(f"Configuration loaded from {path if path and os.path.exists(path) else 'environment'}")
    return config


# --- Helpers ---
TIMESTAMP_TASK_PROPERTIES = ("hs_timestamp", "hs_task_completion_date", "hs_lastmodifieddate")


def flatten_task(obj: Dict[str, Any], contact_id: Optional[str] = None) -> Dict[str, Any]:
    """HubSpot task object -> hs_tasks row (HubSpot-sourced columns only)"""
    props = obj.get("properties") or {}
    row = {
        "hs_object_id": str(obj["id"]),
        "hs_task_subject": props.get("hs_task_subject"),
        "hs_task_type": props.get("hs_task_type"),
        "hs_task_status": props.get("hs_task_status"),
        "hs_task_priority": props.get("hs_task_priority"),
        "hs_queue_membership_ids": props.get("hs_queue_membership_ids"),
        "hubspot_owner_id": props.get("hubspot_owner_id"),
        "associated_contact_id": contact_id,
        "hs_task_completion_count": int(float(props.get("hs_task_completion_count") or 0)),
    }
    for name in TIMESTAMP_TASK_PROPERTIES:
        value = props.get(name)
        row[name] = to_iso_z(parse_timestamp(value)) if value else None
    return row


def _is_completed(task: Optional[Dict[str, Any]]) -> bool:
    return bool(task) and (task.get("hs_task_status") == "COMPLETED"
                           or int(task.get("hs_task_completion_count") or 0) > 0)


class SyncCancelled(Exception):
    """The sync exceeded its wall-clock budget and was asked to stop"""


class TaskSyncEngine:
    """Incremental task sync, list-membership sync and owner sync"""

    def __init__(self, cfg: Config, db: TaskCacheDB, hub: HubSpotClient,
                 engine: AutomationEngine, exit_reactor: ExitReactor,
                 contacts: Optional[ContactSync] = None):
        self.cfg = cfg
        self.db = db
        self.hub = hub
        self.engine = engine
        self.exit_reactor = exit_reactor
        self.contacts = contacts or engine.contacts

        sync = cfg.sync
        self.lookback = timedelta(hours=sync.get("lookback_hours", 24))
        self.page_size = int(sync.get("page_size", 100))
        self.max_pages = int(sync.get("max_pages", 100))
        self.timeout = timedelta(minutes=sync.get("timeout_minutes", 25))
        self.stale_after = timedelta(minutes=sync.get("stale_execution_minutes", 30))
        self.retention = timedelta(days=sync.get("execution_retention_days", 5))

    # ==================== INCREMENTAL TASK SYNC ====================

    def run_incremental_sync(self, trigger_source: str = "manual") -> Dict[str, Any]:
        """
        Single-flight incremental sync. A concurrent invocation is skipped;
        the run is bounded by a wall-clock timeout and recorded in
        sync_executions either way.
        """
        global _sync_in_progress

        if not _sync_lock.acquire(blocking=False):
            logger.warning("Sync already in progress, skipping...")
            return {"success": False, "skipped": True, "message": "Sync already in progress"}

        try:
            _sync_in_progress = True
            stale = self.db.fail_stale_executions(to_iso_z(utc_now() - self.stale_after))
            if stale:
                logger.warning(f"⚠️ Marked {stale} stale sync executions as failed")

            running = self.db.get_running_execution()
            if running:
                logger.warning(f"Sync {running['execution_id']} is still running, skipping...")
                return {"success": False, "skipped": True, "message": "Sync already in progress",
                        "execution_id": running["execution_id"]}

            execution_id = self.db.start_execution(INCREMENTAL_SYNC, trigger_source)
            logger.info(f"🔄 Starting incremental sync {execution_id} (trigger: {trigger_source})")
            started = time.monotonic()
            cancel = threading.Event()
            executor = ThreadPoolExecutor(max_workers=1)
            try:
                future = executor.submit(self._perform_incremental_sync, cancel)
                try:
                    stats = future.result(timeout=self.timeout.total_seconds())
                except FutureTimeoutError:
                    cancel.set()
                    duration_ms = int((time.monotonic() - started) * 1000)
                    message = f"Sync timed out after {int(self.timeout.total_seconds() // 60)} minutes"
                    logger.error(f"{message} (execution {execution_id})")
                    self.db.fail_execution(execution_id, message, duration_ms)
                    return {"success": False, "execution_id": execution_id, "error": message}
                except Exception as e:
                    duration_ms = int((time.monotonic() - started) * 1000)
                    logger.error(f"Incremental sync failed: {e}")
                    self.db.fail_execution(execution_id, str(e), duration_ms)
                    raise
            finally:
                executor.shutdown(wait=False)

            duration_ms = int((time.monotonic() - started) * 1000)
            self.db.complete_execution(execution_id, duration_ms, stats["counters"], stats["task_details"])
            logger.info(f"✓ Incremental sync complete in {duration_ms / 1000:.1f}s: {stats['counters']}")
            return {
                "success": True,
                "execution_id": execution_id,
                "duration_ms": duration_ms,
                **stats["counters"],
                "sequence_triggers": stats["sequence_triggers"],
            }
        finally:
            _sync_in_progress = False
            _sync_lock.release()

    def _sync_since(self) -> datetime:
        last = self.db.last_completed_execution(INCREMENTAL_SYNC)
        since = parse_timestamp(last["started_at"]) if last else None
        return since or (utc_now() - self.lookback)

    def _fetch_modified_tasks(self, since: datetime, cancel: threading.Event) -> List[Dict[str, Any]]:
        tasks: Dict[str, Dict[str, Any]] = {}
        after = None
        for page in range(self.max_pages):
            if cancel.is_set():
                raise SyncCancelled("Sync cancelled while fetching tasks")
            response = self.hub.search_tasks_modified_since(to_epoch_ms(since), after=after, limit=self.page_size)
            for task in response.get("results", []):
                tasks[str(task["id"])] = task
            after = response.get("paging", {}).get("next", {}).get("after")
            if not after:
                break
        else:
            logger.warning(f"⚠️ Stopped paging after {self.max_pages} pages; the rest is picked up next sync")
        return list(tasks.values())

    def _perform_incremental_sync(self, cancel: threading.Event) -> Dict[str, Any]:
        api_calls_before = self.hub.api_calls
        counters = {"fetched": 0, "created": 0, "updated": 0, "failed": 0, "api_calls": 0}
        task_details: List[Dict[str, Any]] = []
        sequence_triggers = {"planned": 0, "past_due": 0, "skipped": 0, "failed": 0}

        since = self._sync_since()
        logger.info(f"📊 Fetching tasks modified since {to_iso_z(since)}")
        objects = self._fetch_modified_tasks(since, cancel)
        counters["fetched"] = len(objects)
        if not objects:
            counters["api_calls"] = self.hub.api_calls - api_calls_before
            return {"counters": counters, "task_details": task_details, "sequence_triggers": sequence_triggers}

        task_ids = [str(t["id"]) for t in objects]
        associations = self.hub.batch_read_associations("tasks", "contacts", task_ids)
        self.contacts.refresh([c for ids in associations.values() for c in ids[:1]], force=True)
        previous = self.db.get_tasks(task_ids)

        completions = []
        for obj in objects:
            if cancel.is_set():
                raise SyncCancelled("Sync cancelled while storing tasks")
            task_id = str(obj["id"])
            prior = previous.get(task_id)
            contact_ids = associations.get(task_id) or []
            contact_id = contact_ids[0] if contact_ids else (prior or {}).get("associated_contact_id")
            try:
                row = flatten_task(obj, contact_id)
                created, updated = self.db.upsert_tasks([row])
            except Exception as e:
                logger.error(f"Failed to store task {task_id}: {e}")
                counters["failed"] += 1
                task_details.append({"task_id": task_id, "error": str(e)})
                continue
            counters["created"] += created
            counters["updated"] += updated

            if (prior and prior.get("created_by_automation_id") and prior.get("number_in_sequence")
                    and _is_completed(row) and not _is_completed(prior)):
                completions.append((prior, row))

        for prior, row in completions:
            outcome = self._trigger_next_task(prior, row)
            sequence_triggers[outcome] += 1
            if outcome == "failed":
                task_details.append({"task_id": row["hs_object_id"], "error": "sequence trigger failed"})

        counters["api_calls"] = self.hub.api_calls - api_calls_before
        return {"counters": counters, "task_details": task_details, "sequence_triggers": sequence_triggers}

    def _trigger_next_task(self, prior: Dict[str, Any], row: Dict[str, Any]) -> str:
        """Feed a completed automation task into the task-completion trigger"""
        automation = self.db.get_automation(prior["created_by_automation_id"])
        if automation is None or not automation.enabled or not automation.sequence_enabled:
            return "skipped"

        task_id = row["hs_object_id"]
        try:
            result = self.engine.process_task_completion(
                automation.id,
                task_id=task_id,
                current_position=prior["number_in_sequence"],
                completion_date=row.get("hs_task_completion_date") or row.get("hs_lastmodifieddate"),
                contact_id=row.get("associated_contact_id") or prior.get("associated_contact_id"),
                previous_owner_id=row.get("hubspot_owner_id"),
                queue_id=automation.hs_queue_id,
            )
        except ScheduledTimeInPastError as e:
            logger.warning(f"Next task after {task_id} not planned: {e}")
            return "past_due"
        except AutomationError as e:
            logger.error(f"Sequence trigger failed for task {task_id}: {e}")
            return "failed"

        if result.get("run_id") and not result.get("blocked") and not result.get("duplicate"):
            return "planned"
        return "skipped"

    # ==================== LIST MEMBERSHIPS ====================

    def sync_list_memberships(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Diff every list-bound automation's HubSpot list against the recorded
        memberships. Entries are recorded (and planned when first task
        creation is on); exits are recorded and handed to the exit reactor.
        """
        now = now or utc_now()
        now_iso = to_iso_z(now)
        result = {"success": True, "automations": 0, "entries": 0, "runs_planned": 0,
                  "exits": 0, "errors": []}
        exited_membership_ids: List[str] = []

        for automation in self.db.list_automations(enabled_only=True):
            if not automation.hs_list_id:
                continue
            result["automations"] += 1
            try:
                members = {
                    str(m["recordId"]): m.get("membershipTimestamp")
                    for m in self.hub.iter_list_memberships(automation.hs_list_id)
                }
            except requests.exceptions.RequestException as e:
                logger.error(f"Failed to read list {automation.hs_list_id} for automation {automation.id}: {e}")
                result["errors"].append({"automation_id": automation.id, "error": str(e)})
                continue

            active = {m["hs_object_id"]: m for m in self.db.list_active_memberships(automation.id)}

            for contact_id in sorted(set(members) - set(active)):
                entered = parse_timestamp(members[contact_id]) if members[contact_id] else None
                membership_id = self.db.record_list_entry(
                    automation.id, automation.hs_list_id, contact_id, automation.hs_queue_id,
                    to_iso_z(entered or now),
                )
                result["entries"] += 1
                if not automation.first_task_creation:
                    continue
                try:
                    outcome = self.engine.process_list_entry(
                        automation.id, contact_id=contact_id, list_id=automation.hs_list_id,
                        membership_id=membership_id, now=now,
                    )
                except AutomationError as e:
                    logger.error(f"List entry failed for contact {contact_id} (automation {automation.id}): {e}")
                    result["errors"].append({"automation_id": automation.id, "contact_id": contact_id,
                                             "error": str(e)})
                    continue
                if outcome.get("run_id"):
                    result["runs_planned"] += 1

            gone = [active[c]["id"] for c in sorted(set(active) - set(members))]
            if gone:
                result["exits"] += self.db.record_list_exit(gone, now_iso)
                exited_membership_ids.extend(gone)

        if exited_membership_ids:
            result["exit_processing"] = self.exit_reactor.process(membership_ids=exited_membership_ids, now=now)

        logger.info(f"✓ List membership sync: {result['entries']} entries, {result['exits']} exits, "
                    f"{result['runs_planned']} runs planned")
        return result

    # ==================== OWNERS ====================

    def sync_owners(self) -> Dict[str, Any]:
        owners = list(self.hub.iter_owners())
        count = self.db.upsert_owners(o for o in owners if o.get("id"))
        logger.info(f"✓ Synced {count} HubSpot owners")
        return {"success": True, "owners_synced": count}

    # ==================== HOUSEKEEPING ====================

    def cleanup_executions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Delete finished sync execution records older than the retention window"""
        cutoff = to_iso_z((now or utc_now()) - self.retention)
        deleted = self.db.delete_executions_before(cutoff)
        logger.info(f"🧹 Deleted {deleted} sync executions started before {cutoff}")
        return {"success": True, "executions_deleted": deleted, "cutoff": cutoff}
