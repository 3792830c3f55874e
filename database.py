"""
Task Automation Database Abstraction Layer
Supports both SQLite (local development) and PostgreSQL (Vercel/production)

Holds the HubSpot cache (tasks, contacts, owners, list memberships), the
automation configuration, the automation run ledger and the sync execution
records used as an advisory lock.
"""

import os
import json
import sqlite3
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod

from models import AutomationDefinition, CREATE_RUN_TYPES, task_queue_ids

logger = logging.getLogger(__name__)

# Check if we're on Vercel (PostgreSQL) or local (SQLite)
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None
DATABASE_URL = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')

OPEN_TASK_EXCLUDED_STATUSES = ("COMPLETED", "DELETED")

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS task_categories (
        id INTEGER PRIMARY KEY,
        label TEXT,
        hs_queue_id TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_automations (
        id TEXT PRIMARY KEY,
        name TEXT,
        task_category_id INTEGER,
        automation_enabled INTEGER DEFAULT 0,
        hs_list_id TEXT,
        first_task_creation INTEGER DEFAULT 1,
        sequence_enabled INTEGER DEFAULT 0,
        sequence_exit_enabled INTEGER DEFAULT 0,
        auto_complete_on_exit_enabled INTEGER DEFAULT 0,
        auto_complete_on_engagement INTEGER DEFAULT 0,
        tasks_configuration TEXT,
        schedule_enabled INTEGER DEFAULT 0,
        schedule_configuration TEXT,
        timezone TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hs_contacts (
        hs_object_id TEXT PRIMARY KEY,
        firstname TEXT,
        lastname TEXT,
        mobilephone TEXT,
        ensol_source_group TEXT,
        hs_lead_status TEXT,
        lifecyclestage TEXT,
        createdate TEXT,
        lastmodifieddate TEXT,
        hubspot_owner_id TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hs_owners (
        id TEXT PRIMARY KEY,
        email TEXT,
        first_name TEXT,
        last_name TEXT,
        user_id TEXT,
        archived INTEGER DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hs_tasks (
        hs_object_id TEXT PRIMARY KEY,
        hs_task_subject TEXT,
        hs_task_type TEXT,
        hs_task_status TEXT,
        hs_task_priority TEXT,
        hs_timestamp TEXT,
        hs_queue_membership_ids TEXT,
        hubspot_owner_id TEXT,
        associated_contact_id TEXT,
        hs_task_completion_count INTEGER DEFAULT 0,
        hs_task_completion_date TEXT,
        hs_lastmodifieddate TEXT,
        number_in_sequence INTEGER,
        created_by_automation INTEGER DEFAULT 0,
        created_by_automation_id TEXT,
        marked_completed_by_automation INTEGER DEFAULT 0,
        marked_completed_by_automation_id TEXT,
        marked_completed_by_automation_source TEXT,
        is_skipped INTEGER DEFAULT 0,
        archived INTEGER DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hs_list_memberships (
        id TEXT PRIMARY KEY,
        automation_id TEXT NOT NULL,
        hs_list_id TEXT NOT NULL,
        hs_object_id TEXT NOT NULL,
        hs_queue_id TEXT,
        hs_list_entry_date TEXT,
        list_exit_date TEXT,
        exit_processed_at TEXT,
        updated_at TEXT,
        UNIQUE(automation_id, hs_object_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_automation_runs (
        id TEXT PRIMARY KEY,
        automation_id TEXT,
        type TEXT NOT NULL,
        hs_trigger_object TEXT,
        hs_trigger_object_id TEXT,
        hs_contact_id TEXT,
        hs_membership_id TEXT,
        hs_queue_id TEXT,
        planned_execution_timestamp TEXT,
        planned_execution_timestamp_display TEXT,
        task_name TEXT,
        task_owner_setting TEXT,
        position_in_sequence INTEGER,
        hs_owner_id_previous_task TEXT,
        hs_action_successful INTEGER DEFAULT 0,
        hs_actioned_task_ids TEXT,
        actioned_run_ids TEXT,
        exit_contact_list_block INTEGER DEFAULT 0,
        failure_description TEXT,
        executed_at TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_executions (
        execution_id TEXT PRIMARY KEY,
        sync_type TEXT NOT NULL,
        trigger_source TEXT,
        status TEXT DEFAULT 'running',
        started_at TEXT NOT NULL,
        completed_at TEXT,
        duration_ms INTEGER,
        tasks_fetched INTEGER DEFAULT 0,
        tasks_created INTEGER DEFAULT 0,
        tasks_updated INTEGER DEFAULT 0,
        tasks_failed INTEGER DEFAULT 0,
        hubspot_api_calls INTEGER DEFAULT 0,
        error_message TEXT,
        task_details TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_pending ON task_automation_runs(hs_action_successful, planned_execution_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_runs_contact_queue ON task_automation_runs(hs_contact_id, hs_queue_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_contact ON hs_tasks(associated_contact_id)",
    "CREATE INDEX IF NOT EXISTS idx_memberships_list ON hs_list_memberships(hs_list_id)",
    "CREATE INDEX IF NOT EXISTS idx_executions_status ON sync_executions(status)",
]

RUN_COLUMNS = (
    "id", "automation_id", "type", "hs_trigger_object", "hs_trigger_object_id",
    "hs_contact_id", "hs_membership_id", "hs_queue_id", "planned_execution_timestamp",
    "planned_execution_timestamp_display", "task_name", "task_owner_setting",
    "position_in_sequence", "hs_owner_id_previous_task", "hs_action_successful",
    "hs_actioned_task_ids", "actioned_run_ids", "exit_contact_list_block",
    "failure_description", "executed_at", "created_at", "updated_at",
)

TASK_COLUMNS = (
    "hs_object_id", "hs_task_subject", "hs_task_type", "hs_task_status", "hs_task_priority",
    "hs_timestamp", "hs_queue_membership_ids", "hubspot_owner_id", "associated_contact_id",
    "hs_task_completion_count", "hs_task_completion_date", "hs_lastmodifieddate",
    "number_in_sequence", "created_by_automation", "created_by_automation_id",
    "marked_completed_by_automation", "marked_completed_by_automation_id",
    "marked_completed_by_automation_source", "is_skipped", "archived", "updated_at",
)

# Columns refreshed from HubSpot on every sync; provenance columns are local only
TASK_SYNC_COLUMNS = TASK_COLUMNS[:12]

CONTACT_COLUMNS = (
    "hs_object_id", "firstname", "lastname", "mobilephone", "ensol_source_group",
    "hs_lead_status", "lifecyclestage", "createdate", "lastmodifieddate",
    "hubspot_owner_id", "updated_at",
)

MEMBERSHIP_COLUMNS = (
    "id", "automation_id", "hs_list_id", "hs_object_id", "hs_queue_id",
    "hs_list_entry_date", "list_exit_date", "exit_processed_at", "updated_at",
)

AUTOMATION_COLUMNS = (
    "id", "name", "task_category_id", "automation_enabled", "hs_list_id",
    "first_task_creation", "sequence_enabled", "sequence_exit_enabled",
    "auto_complete_on_exit_enabled", "auto_complete_on_engagement",
    "tasks_configuration", "schedule_enabled", "schedule_configuration", "timezone",
    "created_at", "updated_at",
)

EXECUTION_COLUMNS = (
    "execution_id", "sync_type", "trigger_source", "status", "started_at", "completed_at",
    "duration_ms", "tasks_fetched", "tasks_created", "tasks_updated", "tasks_failed",
    "hubspot_api_calls", "error_message", "task_details",
)

AUTOMATION_JSON_COLUMNS = ("tasks_configuration", "schedule_configuration")
AUTOMATION_BOOL_COLUMNS = (
    "automation_enabled", "first_task_creation", "sequence_enabled", "sequence_exit_enabled",
    "auto_complete_on_exit_enabled", "auto_complete_on_engagement", "schedule_enabled",
)
RUN_JSON_COLUMNS = ("hs_actioned_task_ids", "actioned_run_ids", "failure_description")
RUN_BOOL_COLUMNS = ("hs_action_successful", "exit_contact_list_block")


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _to_dict(columns: Sequence[str], row: Optional[Tuple]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return dict(zip(columns, row))


class DatabaseInterface(ABC):
    """Abstract base class for database operations"""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        pass

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        pass

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass


class SQLiteDatabase(DatabaseInterface):
    """SQLite implementation for local development"""

    def __init__(self, path: str = "automation.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.conn.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def _init_schema(self) -> None:
        """Initialize SQLite schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        self.conn.commit()


class PostgreSQLDatabase(DatabaseInterface):
    """PostgreSQL implementation for Vercel/production"""

    def __init__(self, database_url: str = None):
        import psycopg2

        self.database_url = database_url or DATABASE_URL
        if not self.database_url:
            raise ValueError("No PostgreSQL database URL provided. Set POSTGRES_URL environment variable.")

        self._errors = psycopg2.Error
        self.conn = psycopg2.connect(self.database_url)
        self.conn.autocommit = False
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        # Convert SQLite-style ? placeholders to PostgreSQL-style %s
        query = self._convert_placeholders(query)
        cur = self.conn.cursor()
        try:
            cur.execute(query, params)
        except self._errors:
            self.conn.rollback()
            raise
        return cur

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def _convert_placeholders(self, query: str) -> str:
        """Convert SQLite ? placeholders to PostgreSQL %s"""
        return query.replace('?', '%s')

    def _init_schema(self) -> None:
        """Initialize PostgreSQL schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        self.conn.commit()
        logger.info("✓ PostgreSQL schema initialized")


class TaskCacheDB:
    """
    Database wrapper that works with both SQLite and PostgreSQL.
    Automatically selects the appropriate backend based on environment.
    """

    def __init__(self, path: str = "automation.db", database_url: Optional[str] = None):
        database_url = database_url or (DATABASE_URL if IS_VERCEL else None)
        self.is_postgres = bool(database_url)

        if self.is_postgres:
            logger.info("🐘 Using PostgreSQL database (Vercel mode)")
            self._db = PostgreSQLDatabase(database_url)
        else:
            logger.info(f"📁 Using SQLite database: {path}")
            self._db = SQLiteDatabase(path)
            self.path = path

    @property
    def conn(self):
        return self._db.conn

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self._db.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self._db.fetchone(query, params)

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self._db.fetchall(query, params)

    def commit(self) -> None:
        self._db.commit()

    def _select(self, table: str, columns: Sequence[str], where: str = "1=1",
                params: tuple = (), suffix: str = "") -> List[Dict[str, Any]]:
        rows = self.fetchall(
            f"SELECT {', '.join(columns)} FROM {table} WHERE {where} {suffix}", params
        )
        return [_to_dict(columns, r) for r in rows]

    # ============================================
    # AUTOMATION CONFIGURATION
    # ============================================

    def upsert_task_category(self, category_id: int, label: str, hs_queue_id: Optional[str]) -> None:
        self.execute("""
            INSERT INTO task_categories(id, label, hs_queue_id, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                label = excluded.label,
                hs_queue_id = excluded.hs_queue_id,
                updated_at = excluded.updated_at
        """, (category_id, label, hs_queue_id, _now_iso()))
        self.commit()

    def upsert_automation(self, automation: Dict[str, Any]) -> str:
        """Insert or replace an automation row; JSON fields may be dicts"""
        now = _now_iso()
        row = {c: automation.get(c) for c in AUTOMATION_COLUMNS}
        row["id"] = str(automation.get("id") or uuid.uuid4())
        row["created_at"] = row["created_at"] or now
        row["updated_at"] = now
        for key in AUTOMATION_JSON_COLUMNS:
            if isinstance(row[key], (dict, list)):
                row[key] = json.dumps(row[key])
        for key in AUTOMATION_BOOL_COLUMNS:
            row[key] = 1 if row[key] else 0
        row["first_task_creation"] = 0 if automation.get("first_task_creation") is False else 1

        updates = ", ".join(f"{c} = excluded.{c}" for c in AUTOMATION_COLUMNS if c not in ("id", "created_at"))
        self.execute(f"""
            INSERT INTO task_automations({', '.join(AUTOMATION_COLUMNS)})
            VALUES({_placeholders(AUTOMATION_COLUMNS)})
            ON CONFLICT(id) DO UPDATE SET {updates}
        """, tuple(row[c] for c in AUTOMATION_COLUMNS))
        self.commit()
        return row["id"]

    def _automation_rows(self, where: str = "1=1", params: tuple = ()) -> List[Dict[str, Any]]:
        columns = tuple(f"a.{c}" for c in AUTOMATION_COLUMNS) + ("c.hs_queue_id",)
        rows = self.fetchall(f"""
            SELECT {', '.join(columns)}
            FROM task_automations a
            LEFT JOIN task_categories c ON c.id = a.task_category_id
            WHERE {where}
            ORDER BY a.created_at
        """, params)
        decoded = []
        for r in rows:
            row = _to_dict(AUTOMATION_COLUMNS + ("hs_queue_id",), r)
            for key in AUTOMATION_JSON_COLUMNS:
                row[key] = _loads(row[key])
            for key in AUTOMATION_BOOL_COLUMNS:
                row[key] = bool(row[key])
            decoded.append(row)
        return decoded

    def get_automation_row(self, automation_id: str) -> Optional[Dict[str, Any]]:
        rows = self._automation_rows("a.id = ?", (str(automation_id),))
        return rows[0] if rows else None

    def get_automation(self, automation_id: str) -> Optional[AutomationDefinition]:
        row = self.get_automation_row(automation_id)
        return AutomationDefinition.from_row(row) if row else None

    def list_automation_rows(self, enabled_only: bool = False) -> List[Dict[str, Any]]:
        if enabled_only:
            return self._automation_rows("a.automation_enabled = 1")
        return self._automation_rows()

    def list_automations(self, enabled_only: bool = True) -> List[AutomationDefinition]:
        """Parsed automations; rows with broken configuration are logged and skipped"""
        automations = []
        for row in self.list_automation_rows(enabled_only):
            try:
                automations.append(AutomationDefinition.from_row(row))
            except Exception as e:
                logger.error(f"Skipping automation {row.get('id')} with invalid configuration: {e}")
        return automations

    # ============================================
    # CONTACTS & OWNERS
    # ============================================

    def upsert_contacts(self, contacts: Iterable[Dict[str, Any]]) -> int:
        """Upsert flattened contact rows keyed by hs_object_id"""
        now = _now_iso()
        updates = ", ".join(f"{c} = excluded.{c}" for c in CONTACT_COLUMNS[1:])
        count = 0
        for contact in contacts:
            row = {c: contact.get(c) for c in CONTACT_COLUMNS}
            row["hs_object_id"] = str(contact["hs_object_id"])
            row["updated_at"] = now
            self.execute(f"""
                INSERT INTO hs_contacts({', '.join(CONTACT_COLUMNS)})
                VALUES({_placeholders(CONTACT_COLUMNS)})
                ON CONFLICT(hs_object_id) DO UPDATE SET {updates}
            """, tuple(row[c] for c in CONTACT_COLUMNS))
            count += 1
        self.commit()
        return count

    def get_contacts(self, contact_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        ids = [str(c) for c in contact_ids if c]
        if not ids:
            return {}
        rows = self._select("hs_contacts", CONTACT_COLUMNS,
                            f"hs_object_id IN ({_placeholders(ids)})", tuple(ids))
        return {r["hs_object_id"]: r for r in rows}

    def stale_contact_ids(self, contact_ids: Sequence[str], fresher_than: str) -> List[str]:
        """Ids that are missing, have no owner, or were cached before `fresher_than`"""
        cached = self.get_contacts(contact_ids)
        stale = []
        for contact_id in {str(c) for c in contact_ids if c}:
            row = cached.get(contact_id)
            if (row is None or not row.get("hubspot_owner_id")
                    or not row.get("updated_at") or row["updated_at"] < fresher_than):
                stale.append(contact_id)
        return sorted(stale)

    def upsert_owners(self, owners: Iterable[Dict[str, Any]]) -> int:
        now = _now_iso()
        count = 0
        for owner in owners:
            self.execute("""
                INSERT INTO hs_owners(id, email, first_name, last_name, user_id, archived, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    user_id = excluded.user_id,
                    archived = excluded.archived,
                    updated_at = excluded.updated_at
            """, (str(owner["id"]), owner.get("email"), owner.get("firstName"),
                  owner.get("lastName"), str(owner["userId"]) if owner.get("userId") else None,
                  1 if owner.get("archived") else 0, now))
            count += 1
        self.commit()
        return count

    def list_owners(self) -> List[Dict[str, Any]]:
        return self._select("hs_owners", ("id", "email", "first_name", "last_name", "user_id", "archived"),
                            suffix="ORDER BY last_name, first_name")

    # ============================================
    # TASK CACHE
    # ============================================

    def upsert_tasks(self, tasks: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
        """
        Upsert HubSpot-sourced task columns. Provenance columns
        (created/completed by automation, skipped) are left untouched.
        Returns (created, updated).
        """
        now = _now_iso()
        created = updated = 0
        columns = TASK_SYNC_COLUMNS + ("updated_at",)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])
        for task in tasks:
            task_id = str(task["hs_object_id"])
            exists = self.fetchone("SELECT 1 FROM hs_tasks WHERE hs_object_id = ?", (task_id,))
            row = {c: task.get(c) for c in columns}
            row["hs_object_id"] = task_id
            row["hs_task_completion_count"] = int(row["hs_task_completion_count"] or 0)
            row["updated_at"] = now
            self.execute(f"""
                INSERT INTO hs_tasks({', '.join(columns)})
                VALUES({_placeholders(columns)})
                ON CONFLICT(hs_object_id) DO UPDATE SET {updates}
            """, tuple(row[c] for c in columns))
            if exists:
                updated += 1
            else:
                created += 1
        self.commit()
        return created, updated

    def record_created_tasks(self, tasks: Iterable[Dict[str, Any]]) -> None:
        """Insert tasks just created by an automation, with provenance"""
        now = _now_iso()
        columns = TASK_COLUMNS
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])
        for task in tasks:
            row = {c: task.get(c) for c in columns}
            row["hs_object_id"] = str(task["hs_object_id"])
            row["hs_task_completion_count"] = 0
            row["created_by_automation"] = 1
            row["marked_completed_by_automation"] = 0
            row["is_skipped"] = 0
            row["archived"] = 0
            row["updated_at"] = now
            self.execute(f"""
                INSERT INTO hs_tasks({', '.join(columns)})
                VALUES({_placeholders(columns)})
                ON CONFLICT(hs_object_id) DO UPDATE SET {updates}
            """, tuple(row[c] for c in columns))
        self.commit()

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select("hs_tasks", TASK_COLUMNS, "hs_object_id = ?", (str(task_id),))
        return rows[0] if rows else None

    def get_tasks(self, task_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        ids = [str(t) for t in task_ids if t]
        if not ids:
            return {}
        rows = self._select("hs_tasks", TASK_COLUMNS, f"hs_object_id IN ({_placeholders(ids)})", tuple(ids))
        return {r["hs_object_id"]: r for r in rows}

    def open_tasks_for_contacts(self, contact_ids: Optional[Sequence[str]],
                                queue_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Open (not completed, not deleted, not archived) tasks, optionally within
        one queue. contact_ids=None means every contact.
        """
        ids = None if contact_ids is None else [str(c) for c in contact_ids if c]
        if ids is not None and not ids:
            return []
        contact_filter = "1=1" if ids is None else f"associated_contact_id IN ({_placeholders(ids)})"
        rows = self._select(
            "hs_tasks", TASK_COLUMNS,
            f"""{contact_filter}
                AND COALESCE(hs_task_status, '') NOT IN ({_placeholders(OPEN_TASK_EXCLUDED_STATUSES)})
                AND COALESCE(hs_task_completion_count, 0) = 0
                AND COALESCE(archived, 0) = 0""",
            tuple(ids or ()) + OPEN_TASK_EXCLUDED_STATUSES,
            "ORDER BY hs_timestamp",
        )
        if queue_id is None:
            return rows
        return [r for r in rows if str(queue_id) in task_queue_ids(r)]

    def has_open_task_at_or_after(self, contact_id: str, queue_id: str, position: int) -> bool:
        for task in self.open_tasks_for_contacts([contact_id], queue_id):
            if task.get("number_in_sequence") is not None and task["number_in_sequence"] >= position:
                return True
        return False

    def mark_tasks_completed(self, task_ids: Sequence[str], automation_id: str, source: str,
                             skipped: bool = False, completed_at: Optional[str] = None) -> int:
        """Mirror an automation-driven completion before the next sync confirms it"""
        ids = [str(t) for t in task_ids if t]
        if not ids:
            return 0
        completed_at = completed_at or _now_iso()
        cur = self.execute(f"""
            UPDATE hs_tasks
            SET hs_task_status = 'COMPLETED',
                hs_task_completion_date = ?,
                hs_task_completion_count = 1,
                marked_completed_by_automation = 1,
                marked_completed_by_automation_id = ?,
                marked_completed_by_automation_source = ?,
                is_skipped = ?,
                updated_at = ?
            WHERE hs_object_id IN ({_placeholders(ids)})
        """, (completed_at, str(automation_id), source, 1 if skipped else 0, _now_iso()) + tuple(ids))
        self.commit()
        return cur.rowcount

    def mark_tasks_deleted(self, task_ids: Sequence[str]) -> int:
        ids = [str(t) for t in task_ids if t]
        if not ids:
            return 0
        cur = self.execute(f"""
            UPDATE hs_tasks SET hs_task_status = 'DELETED', updated_at = ?
            WHERE hs_object_id IN ({_placeholders(ids)})
        """, (_now_iso(),) + tuple(ids))
        self.commit()
        return cur.rowcount

    # ============================================
    # LIST MEMBERSHIPS
    # ============================================

    def get_memberships(self, membership_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ids = [str(m) for m in membership_ids if m]
        if not ids:
            return []
        return self._select("hs_list_memberships", MEMBERSHIP_COLUMNS,
                            f"id IN ({_placeholders(ids)})", tuple(ids))

    def find_membership(self, automation_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select("hs_list_memberships", MEMBERSHIP_COLUMNS,
                            "automation_id = ? AND hs_object_id = ?",
                            (str(automation_id), str(contact_id)))
        return rows[0] if rows else None

    def get_list_memberships(self, automation_id: str, list_id: str,
                             contact_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Membership rows of an automation's bound list, keyed by contact id"""
        ids = [str(c) for c in contact_ids if c]
        if not ids:
            return {}
        rows = self._select(
            "hs_list_memberships", MEMBERSHIP_COLUMNS,
            f"automation_id = ? AND hs_list_id = ? AND hs_object_id IN ({_placeholders(ids)})",
            (str(automation_id), str(list_id)) + tuple(ids),
        )
        return {r["hs_object_id"]: r for r in rows}

    def list_active_memberships(self, automation_id: str) -> List[Dict[str, Any]]:
        return self._select("hs_list_memberships", MEMBERSHIP_COLUMNS,
                            "automation_id = ? AND list_exit_date IS NULL", (str(automation_id),))

    def record_list_entry(self, automation_id: str, list_id: str, contact_id: str,
                          queue_id: Optional[str], entry_date: str) -> str:
        """Insert a membership or reactivate an exited one; returns its id"""
        existing = self.find_membership(automation_id, contact_id)
        if existing:
            self.execute("""
                UPDATE hs_list_memberships
                SET hs_list_id = ?, hs_queue_id = ?, hs_list_entry_date = ?,
                    list_exit_date = NULL, exit_processed_at = NULL, updated_at = ?
                WHERE id = ?
            """, (str(list_id), queue_id, entry_date, _now_iso(), existing["id"]))
            self.commit()
            return existing["id"]

        membership_id = str(uuid.uuid4())
        self.execute("""
            INSERT INTO hs_list_memberships(id, automation_id, hs_list_id, hs_object_id,
                hs_queue_id, hs_list_entry_date, updated_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
        """, (membership_id, str(automation_id), str(list_id), str(contact_id),
              queue_id, entry_date, _now_iso()))
        self.commit()
        return membership_id

    def record_list_exit(self, membership_ids: Sequence[str], exit_date: str) -> int:
        ids = [str(m) for m in membership_ids if m]
        if not ids:
            return 0
        cur = self.execute(f"""
            UPDATE hs_list_memberships SET list_exit_date = ?, updated_at = ?
            WHERE id IN ({_placeholders(ids)}) AND list_exit_date IS NULL
        """, (exit_date, _now_iso()) + tuple(ids))
        self.commit()
        return cur.rowcount

    def mark_exit_processed(self, membership_ids: Sequence[str], processed_at: str) -> int:
        ids = [str(m) for m in membership_ids if m]
        if not ids:
            return 0
        cur = self.execute(f"""
            UPDATE hs_list_memberships SET exit_processed_at = ?, updated_at = ?
            WHERE id IN ({_placeholders(ids)})
        """, (processed_at, _now_iso()) + tuple(ids))
        self.commit()
        return cur.rowcount

    # ============================================
    # AUTOMATION RUN LEDGER
    # ============================================

    def _decode_run(self, row: Dict[str, Any]) -> Dict[str, Any]:
        for key in RUN_JSON_COLUMNS:
            row[key] = _loads(row[key])
        for key in RUN_BOOL_COLUMNS:
            row[key] = bool(row[key])
        return row

    def insert_run(self, run: Dict[str, Any]) -> str:
        """Write a run once; returns its id"""
        now = _now_iso()
        row = {c: run.get(c) for c in RUN_COLUMNS}
        row["id"] = str(run.get("id") or uuid.uuid4())
        for key in RUN_JSON_COLUMNS:
            row[key] = _dumps(row[key])
        for key in RUN_BOOL_COLUMNS:
            row[key] = 1 if row[key] else 0
        row["created_at"] = now
        row["updated_at"] = now
        self.execute(f"""
            INSERT INTO task_automation_runs({', '.join(RUN_COLUMNS)})
            VALUES({_placeholders(RUN_COLUMNS)})
        """, tuple(row[c] for c in RUN_COLUMNS))
        self.commit()
        return row["id"]

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select("task_automation_runs", RUN_COLUMNS, "id = ?", (str(run_id),))
        return self._decode_run(rows[0]) if rows else None

    def find_run_by_trigger(self, automation_id: str, run_type: str,
                            trigger_object_id: str) -> Optional[Dict[str, Any]]:
        """Run already written for this triggering object, if any"""
        rows = self._select("task_automation_runs", RUN_COLUMNS,
                            "automation_id = ? AND type = ? AND hs_trigger_object_id = ?",
                            (str(automation_id), run_type, str(trigger_object_id)),
                            "ORDER BY created_at LIMIT 1")
        return self._decode_run(rows[0]) if rows else None

    def select_pending_runs(self, planned_after: str, planned_before: str,
                            types: Sequence[str] = CREATE_RUN_TYPES, limit: int = 100,
                            include_lower: bool = False) -> List[Dict[str, Any]]:
        """
        Unsuccessful, unblocked runs of the given types whose planned time lies
        between the bounds (upper bound exclusive), oldest first.
        """
        lower_op = ">=" if include_lower else ">"
        rows = self._select(
            "task_automation_runs", RUN_COLUMNS,
            f"""hs_action_successful = 0
                AND COALESCE(exit_contact_list_block, 0) = 0
                AND type IN ({_placeholders(types)})
                AND planned_execution_timestamp IS NOT NULL
                AND planned_execution_timestamp {lower_op} ?
                AND planned_execution_timestamp < ?""",
            tuple(types) + (planned_after, planned_before, int(limit)),
            "ORDER BY planned_execution_timestamp ASC LIMIT ?",
        )
        return [self._decode_run(r) for r in rows]

    def pending_runs_for_contacts(self, contact_ids: Optional[Sequence[str]], queue_id: Optional[str],
                                  planned_after: str,
                                  types: Sequence[str] = CREATE_RUN_TYPES) -> List[Dict[str, Any]]:
        """
        Unsuccessful, unblocked runs for contacts in a queue, planned after a
        bound. contact_ids=None means every contact.
        """
        ids = None if contact_ids is None else [str(c) for c in contact_ids if c]
        if ids is not None and not ids:
            return []
        contact_filter = "hs_contact_id IS NOT NULL" if ids is None else f"hs_contact_id IN ({_placeholders(ids)})"
        where = f"""hs_action_successful = 0
            AND COALESCE(exit_contact_list_block, 0) = 0
            AND type IN ({_placeholders(types)})
            AND {contact_filter}
            AND planned_execution_timestamp > ?"""
        params = tuple(types) + tuple(ids or ()) + (planned_after,)
        if queue_id is not None:
            where += " AND hs_queue_id = ?"
            params += (str(queue_id),)
        rows = self._select("task_automation_runs", RUN_COLUMNS, where, params,
                            "ORDER BY planned_execution_timestamp ASC")
        return [self._decode_run(r) for r in rows]

    def has_pending_run(self, automation_id: str, contact_id: str, queue_id: Optional[str],
                        planned_after: str) -> bool:
        row = self.fetchone(f"""
            SELECT 1 FROM task_automation_runs
            WHERE automation_id = ? AND hs_contact_id = ?
              AND COALESCE(hs_queue_id, '') = ?
              AND hs_action_successful = 0
              AND COALESCE(exit_contact_list_block, 0) = 0
              AND type IN ({_placeholders(CREATE_RUN_TYPES)})
              AND planned_execution_timestamp IS NOT NULL
              AND planned_execution_timestamp > ?
            LIMIT 1
        """, (str(automation_id), str(contact_id), str(queue_id or "")) + CREATE_RUN_TYPES + (planned_after,))
        return row is not None

    def mark_run_successful(self, run_id: str, task_ids: Sequence[str]) -> bool:
        """
        Single-row conditional transition to success. Returns False when the
        run was already successful or blocked, so a run is marked at most once.
        """
        now = _now_iso()
        cur = self.execute("""
            UPDATE task_automation_runs
            SET hs_action_successful = 1, hs_actioned_task_ids = ?,
                failure_description = NULL, executed_at = ?, updated_at = ?
            WHERE id = ? AND hs_action_successful = 0
              AND COALESCE(exit_contact_list_block, 0) = 0
        """, (_dumps([str(t) for t in task_ids]), now, now, str(run_id)))
        self.commit()
        return cur.rowcount == 1

    def mark_run_failure(self, run_id: str, description: Any) -> bool:
        """Attach a failure note to a still-unsuccessful run"""
        cur = self.execute("""
            UPDATE task_automation_runs
            SET failure_description = ?, updated_at = ?
            WHERE id = ? AND hs_action_successful = 0
        """, (_dumps(description), _now_iso(), str(run_id)))
        self.commit()
        return cur.rowcount == 1

    def block_runs(self, run_ids: Sequence[str]) -> int:
        """Permanently disqualify still-unsuccessful runs from execution"""
        ids = [str(r) for r in run_ids if r]
        if not ids:
            return 0
        cur = self.execute(f"""
            UPDATE task_automation_runs
            SET exit_contact_list_block = 1, updated_at = ?
            WHERE id IN ({_placeholders(ids)}) AND hs_action_successful = 0
        """, (_now_iso(),) + tuple(ids))
        self.commit()
        return cur.rowcount

    def count_overdue_runs(self, planned_before: str) -> int:
        row = self.fetchone(f"""
            SELECT COUNT(*) FROM task_automation_runs
            WHERE hs_action_successful = 0
              AND COALESCE(exit_contact_list_block, 0) = 0
              AND type IN ({_placeholders(CREATE_RUN_TYPES)})
              AND planned_execution_timestamp IS NOT NULL
              AND planned_execution_timestamp < ?
        """, CREATE_RUN_TYPES + (planned_before,))
        return row[0] if row else 0

    def list_runs(self, limit: int = 100, automation_id: Optional[str] = None,
                  run_type: Optional[str] = None, successful: Optional[bool] = None) -> List[Dict[str, Any]]:
        where, params = ["1=1"], []
        if automation_id:
            where.append("automation_id = ?")
            params.append(str(automation_id))
        if run_type:
            where.append("type = ?")
            params.append(run_type)
        if successful is not None:
            where.append("hs_action_successful = ?")
            params.append(1 if successful else 0)
        params.append(int(limit))
        rows = self._select("task_automation_runs", RUN_COLUMNS, " AND ".join(where), tuple(params),
                            "ORDER BY created_at DESC LIMIT ?")
        return [self._decode_run(r) for r in rows]

    # ============================================
    # SYNC EXECUTIONS (advisory single-flight lock)
    # ============================================

    def fail_stale_executions(self, started_before: str) -> int:
        cur = self.execute("""
            UPDATE sync_executions
            SET status = 'failed', completed_at = ?,
                error_message = 'Execution timed out (marked as stale)'
            WHERE status = 'running' AND started_at < ?
        """, (_now_iso(), started_before))
        self.commit()
        return cur.rowcount

    def get_running_execution(self) -> Optional[Dict[str, Any]]:
        rows = self._select("sync_executions", EXECUTION_COLUMNS, "status = 'running'",
                            suffix="ORDER BY started_at DESC LIMIT 1")
        return rows[0] if rows else None

    def start_execution(self, sync_type: str, trigger_source: str) -> str:
        execution_id = str(uuid.uuid4())
        self.execute("""
            INSERT INTO sync_executions(execution_id, sync_type, trigger_source, status, started_at)
            VALUES(?, ?, ?, 'running', ?)
        """, (execution_id, sync_type, trigger_source, _now_iso()))
        self.commit()
        return execution_id

    def complete_execution(self, execution_id: str, duration_ms: int, counters: Dict[str, int],
                           task_details: Optional[List[Dict[str, Any]]] = None) -> None:
        self.execute("""
            UPDATE sync_executions
            SET status = 'completed', completed_at = ?, duration_ms = ?,
                tasks_fetched = ?, tasks_created = ?, tasks_updated = ?, tasks_failed = ?,
                hubspot_api_calls = ?, task_details = ?
            WHERE execution_id = ? AND status = 'running'
        """, (_now_iso(), duration_ms, counters.get("fetched", 0), counters.get("created", 0),
              counters.get("updated", 0), counters.get("failed", 0), counters.get("api_calls", 0),
              _dumps(task_details or []), execution_id))
        self.commit()

    def fail_execution(self, execution_id: str, error_message: str, duration_ms: Optional[int] = None,
                       task_details: Optional[List[Dict[str, Any]]] = None) -> None:
        self.execute("""
            UPDATE sync_executions
            SET status = 'failed', completed_at = ?, duration_ms = ?, error_message = ?,
                task_details = COALESCE(?, task_details)
            WHERE execution_id = ? AND status = 'running'
        """, (_now_iso(), duration_ms, error_message, _dumps(task_details), execution_id))
        self.commit()

    def last_completed_execution(self, sync_type: str) -> Optional[Dict[str, Any]]:
        rows = self._select("sync_executions", EXECUTION_COLUMNS,
                            "sync_type = ? AND status = 'completed'", (sync_type,),
                            "ORDER BY completed_at DESC LIMIT 1")
        return rows[0] if rows else None

    def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        rows = self._select("sync_executions", EXECUTION_COLUMNS, "execution_id = ?", (execution_id,))
        if not rows:
            return None
        rows[0]["task_details"] = _loads(rows[0]["task_details"])
        return rows[0]

    def delete_executions_before(self, started_before: str) -> int:
        """Drop finished execution records started before the cutoff"""
        cur = self.execute("""
            DELETE FROM sync_executions
            WHERE status != 'running' AND started_at < ?
        """, (started_before,))
        self.commit()
        return cur.rowcount

    def list_executions(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._select("sync_executions", EXECUTION_COLUMNS,
                            suffix="ORDER BY started_at DESC LIMIT ?", params=(int(limit),))
        for row in rows:
            row["task_details"] = _loads(row["task_details"])
        return rows
