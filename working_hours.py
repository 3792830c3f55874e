"""
Working-Hours Scheduler
Computes when an automation task may be created: the next instant at or after
a candidate that falls inside an enabled, non-excluded working window of the
automation's timezone. Also holds the delay arithmetic and UTC helpers shared
by the engine and the sync code.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dateutil import parser as dtparser
from dateutil import tz

from models import ConfigurationError, ScheduleConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Paris"
SCAN_DAYS = 14

DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


def utc_now() -> datetime:
    """Current UTC time at the one-second precision stored in the ledger"""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso_z(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings or epoch milliseconds into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        dt = dtparser.isoparse(str(value).strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str]):
    """tzinfo for an IANA name; unknown names are a configuration error"""
    zone = tz.gettz(name or DEFAULT_TIMEZONE)
    if zone is None:
        raise ConfigurationError(f"Unknown timezone: {name}")
    return zone


def calculate_delay(amount: float, unit: str) -> timedelta:
    """Delay of a sequence task as an absolute duration"""
    step = DELAY_UNITS.get((unit or "").lower())
    if step is None:
        raise ConfigurationError(f"Unsupported delay unit '{unit}' (expected minutes, hours or days)")
    if amount < 0:
        raise ConfigurationError(f"Delay amount cannot be negative: {amount}")
    return step * amount


def format_display(dt: datetime, timezone_name: Optional[str]) -> str:
    """Human readable zoned form, e.g. '2024-01-03 09:00 Europe/Paris'"""
    name = timezone_name or DEFAULT_TIMEZONE
    zone = tz.gettz(name)
    if zone is None:
        zone, name = tz.UTC, "UTC"
    return f"{dt.astimezone(zone).strftime('%Y-%m-%d %H:%M')} {name}"


@dataclass
class PlannedTime:
    timestamp: datetime
    display: str
    fallback: bool = False

    @property
    def iso(self) -> str:
        return to_iso_z(self.timestamp)


def compute_planned_time(candidate: datetime, schedule: Optional[ScheduleConfig],
                         schedule_enabled: bool, timezone_name: Optional[str] = None) -> PlannedTime:
    """
    Next instant at or after `candidate` inside a working window.

    Scans up to SCAN_DAYS local calendar days starting at the candidate's local
    day. On day 0 a candidate already inside the window is returned unchanged;
    otherwise the first day whose window start lies after the candidate wins.
    When nothing qualifies the candidate is returned with fallback=True.
    """
    if candidate.tzinfo is None:
        candidate = candidate.replace(tzinfo=timezone.utc)

    if not schedule_enabled or schedule is None:
        return PlannedTime(candidate, format_display(candidate, timezone_name))

    zone = resolve_timezone(timezone_name)
    local = candidate.astimezone(zone)

    for offset in range(SCAN_DAYS):
        day = local.date() + timedelta(days=offset)
        window = schedule.window_for(day)
        if window is None:
            continue
        start, end = window

        if offset == 0 and start <= local.time() < end:
            return PlannedTime(candidate, format_display(candidate, timezone_name))

        start_local = tz.resolve_imaginary(datetime.combine(day, start, tzinfo=zone))
        if start_local > local:
            planned = start_local.astimezone(timezone.utc)
            return PlannedTime(planned, format_display(planned, timezone_name))

    logger.warning(
        f"⚠️ No working window within {SCAN_DAYS} days of {to_iso_z(candidate)} "
        f"({timezone_name or DEFAULT_TIMEZONE}); using candidate time"
    )
    return PlannedTime(candidate, format_display(candidate, timezone_name), fallback=True)
