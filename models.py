"""
Task Automation Data Models
Automation definitions, task templates and schedule configuration parsed from
the task_automations table, plus the run-type / owner-mode vocabulary and the
automation error taxonomy.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# --- Run types ---
RUN_CREATE_ON_ENTRY = "create_on_entry"
RUN_CREATE_FROM_SEQUENCE = "create_from_sequence"
RUN_COMPLETE_ON_EXIT = "complete_on_exit"
RUN_COMPLETE_ON_ENGAGEMENT = "complete_on_engagement"
RUN_CANCEL_ON_EXIT = "cancel_on_exit"

CREATE_RUN_TYPES = (RUN_CREATE_ON_ENTRY, RUN_CREATE_FROM_SEQUENCE)

# --- Owner resolution modes ---
OWNER_NO_OWNER = "no_owner"
OWNER_CONTACT = "contact_owner"
OWNER_PREVIOUS_TASK = "previous_task_owner"

OWNER_MODES = (OWNER_NO_OWNER, OWNER_CONTACT, OWNER_PREVIOUS_TASK)

# --- Trigger types ---
TRIGGER_LIST_ENTRY = "list_entry"
TRIGGER_TASK_COMPLETION = "task_completion"

DEFAULT_INITIAL_TASK_NAME = "New Lead Task"
DEFAULT_TASK_SUBJECT = "Automated Task (No Name)"

# datetime.weekday() order
DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


# --- Errors ---
class AutomationError(Exception):
    """Base class for automation failures reported back to the caller"""


class ConfigurationError(AutomationError):
    """Automation or schedule configuration cannot be applied"""


class InvalidTriggerError(AutomationError):
    """Trigger payload is missing or has malformed fields"""


class UnknownTriggerError(InvalidTriggerError):
    """Trigger type is not one the processor understands"""


class ScheduledTimeInPastError(AutomationError):
    """The delayed execution time of a sequence task has already elapsed"""

    def __init__(self, message: str, planned: Optional[datetime] = None):
        super().__init__(message)
        self.planned = planned


def _load_json(value: Any, default: Any) -> Any:
    """Columns holding JSON may arrive as text (SQLite) or already decoded"""
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid JSON configuration: {e}")


def parse_clock(value: Optional[str]) -> Optional[time]:
    """Parse 'HH:MM' (or 'HH:MM:SS'); None when missing or malformed"""
    if not value or not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(p) for p in parts]
        return time(*numbers)
    except ValueError:
        return None


@dataclass
class DaySchedule:
    """Working window for one weekday"""
    enabled: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    def window(self) -> Optional[Tuple[time, time]]:
        if not self.enabled:
            return None
        start = parse_clock(self.start_time)
        end = parse_clock(self.end_time)
        if start is None or end is None or end <= start:
            return None
        return start, end


@dataclass
class ScheduleConfig:
    """Per-weekday working hours plus excluded calendar dates"""
    working_hours: Dict[str, DaySchedule] = field(default_factory=dict)
    non_working_dates: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "ScheduleConfig":
        raw = _load_json(raw, {})
        if not isinstance(raw, dict):
            raise ConfigurationError("Schedule configuration must be a mapping")

        hours = raw.get("working_hours") or {}
        if not isinstance(hours, dict):
            raise ConfigurationError("working_hours must be a mapping of weekday to window")

        dates = raw.get("non_working_dates") or []
        if not isinstance(dates, list):
            raise ConfigurationError("non_working_dates must be a list of YYYY-MM-DD dates")

        working_hours = {}
        for day_name, day in hours.items():
            key = str(day_name).lower()[:3]
            if not isinstance(day, dict):
                logger.warning(f"Ignoring malformed working hours for {day_name}: {day!r}")
                continue
            working_hours[key] = DaySchedule(
                enabled=bool(day.get("enabled", False)),
                start_time=day.get("start_time"),
                end_time=day.get("end_time"),
            )

        return cls(working_hours=working_hours,
                   non_working_dates=[str(d)[:10] for d in dates])

    def window_for(self, day: date) -> Optional[Tuple[time, time]]:
        """Window for a local calendar date, None when the day is unusable"""
        if day.isoformat() in self.non_working_dates:
            return None
        schedule = self.working_hours.get(DAY_NAMES[day.weekday()])
        if schedule is None:
            return None
        return schedule.window()

    def has_working_day(self) -> bool:
        return any(d.window() is not None for d in self.working_hours.values())


@dataclass
class TaskTemplate:
    """One task of an automation; position 1 is the initial task"""
    position: int
    name: str
    owner: str = OWNER_CONTACT
    delay_amount: float = 0
    delay_unit: str = "minutes"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], position: int) -> "TaskTemplate":
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Task {position} configuration must be a mapping")

        name = raw.get("name") or raw.get("task_name")
        if not name and position == 1:
            name = DEFAULT_INITIAL_TASK_NAME
        owner = raw.get("owner") or raw.get("task_owner_setting") or OWNER_CONTACT
        if owner not in OWNER_MODES:
            raise ConfigurationError(f"Task {position} has unknown owner mode '{owner}'")

        delay = raw.get("delay") or {}
        if not isinstance(delay, dict):
            raise ConfigurationError(f"Task {position} delay must be a mapping")
        amount = delay.get("amount", raw.get("delay_value", 0)) or 0
        unit = delay.get("unit", raw.get("delay_unit")) or "minutes"

        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Task {position} delay amount is not a number: {amount!r}")

        return cls(position=position, name=name or "", owner=owner,
                   delay_amount=amount, delay_unit=str(unit).lower())


@dataclass
class AutomationDefinition:
    """A task automation rule bound to a task category / queue"""
    id: str
    name: str = ""
    enabled: bool = False
    hs_list_id: Optional[str] = None
    task_category_id: Optional[int] = None
    hs_queue_id: Optional[str] = None
    initial_task: Optional[TaskTemplate] = None
    sequence_tasks: List[TaskTemplate] = field(default_factory=list)
    first_task_creation: bool = True
    sequence_enabled: bool = False
    sequence_exit_enabled: bool = False
    auto_complete_on_exit_enabled: bool = False
    auto_complete_on_engagement: bool = False
    schedule_enabled: bool = False
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    timezone: Optional[str] = None

    @property
    def total_tasks(self) -> int:
        return 1 + len(self.sequence_tasks)

    @property
    def exit_handling_enabled(self) -> bool:
        return self.sequence_exit_enabled or self.auto_complete_on_exit_enabled

    def task_at(self, position: int) -> TaskTemplate:
        """Template for a 1-indexed sequence position"""
        if position == 1 and self.initial_task is not None:
            return self.initial_task
        index = position - 2
        if position < 1 or index >= len(self.sequence_tasks):
            raise ConfigurationError(
                f"Automation {self.id} has no task at position {position} "
                f"(configured tasks: {self.total_tasks})"
            )
        return self.sequence_tasks[index]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AutomationDefinition":
        tasks_cfg = _load_json(row.get("tasks_configuration"), {})
        if not isinstance(tasks_cfg, dict):
            raise ConfigurationError(f"Automation {row.get('id')}: tasks_configuration must be a mapping")

        initial = TaskTemplate.from_dict(tasks_cfg.get("initial_task") or {}, 1)
        sequence = [
            TaskTemplate.from_dict(t, i + 2)
            for i, t in enumerate(tasks_cfg.get("sequence_tasks") or [])
        ]

        schedule = ScheduleConfig.from_dict(row.get("schedule_configuration"))
        if row.get("schedule_enabled") and not schedule.has_working_day():
            raise ConfigurationError(
                f"Automation {row.get('id')}: schedule is enabled but no weekday has a usable working window"
            )

        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            enabled=bool(row.get("automation_enabled")),
            hs_list_id=row.get("hs_list_id"),
            task_category_id=row.get("task_category_id"),
            hs_queue_id=row.get("hs_queue_id"),
            initial_task=initial,
            sequence_tasks=sequence,
            first_task_creation=bool(row.get("first_task_creation", True)),
            sequence_enabled=bool(row.get("sequence_enabled")),
            sequence_exit_enabled=bool(row.get("sequence_exit_enabled")),
            auto_complete_on_exit_enabled=bool(row.get("auto_complete_on_exit_enabled")),
            auto_complete_on_engagement=bool(row.get("auto_complete_on_engagement")),
            schedule_enabled=bool(row.get("schedule_enabled")),
            schedule=schedule,
            timezone=row.get("timezone"),
        )


def task_queue_ids(task: Dict[str, Any]) -> List[str]:
    """Queue ids of a cached task (HubSpot stores them ';'-separated)"""
    raw = task.get("hs_queue_membership_ids") or ""
    return [q.strip() for q in str(raw).split(";") if q.strip()]
