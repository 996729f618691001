# task_fields.py — Canonical parsing for task priority, status and due dates
# Every handler goes through these; aliases are never re-derived elsewhere.

import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from errors import ValidationFailed
from models import TaskPriority, TaskStatus

# Unrecognised priorities fall back to medium unless strict mode is on
TASK_PRIORITY_STRICT = os.getenv("TASK_PRIORITY_STRICT", "false").lower() == "true"

# Wall-clock offset for due dates without an explicit one (e.g. "-03:00")
TASK_TIMEZONE_OFFSET = os.getenv("TASK_TIMEZONE_OFFSET", "-03:00")

PRIORITY_ALIASES = {
    "low": TaskPriority.LOW,
    "baixa": TaskPriority.LOW,
    "medium": TaskPriority.MEDIUM,
    "media": TaskPriority.MEDIUM,
    "média": TaskPriority.MEDIUM,
    "normal": TaskPriority.MEDIUM,
    "urgent": TaskPriority.URGENT,
    "urgente": TaskPriority.URGENT,
    "high": TaskPriority.URGENT,
    "alta": TaskPriority.URGENT,
}

STATUS_ALIASES = {
    "pending": TaskStatus.PENDING,
    "pendente": TaskStatus.PENDING,
    "in_progress": TaskStatus.IN_PROGRESS,
    "em_andamento": TaskStatus.IN_PROGRESS,
    "completed": TaskStatus.COMPLETED,
    "concluida": TaskStatus.COMPLETED,
    "concluída": TaskStatus.COMPLETED,
    "cancelled": TaskStatus.CANCELLED,
    "cancelada": TaskStatus.CANCELLED,
}

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):?(\d{2})$")
_NAIVE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M")


def parse_offset(value: str) -> timezone:
    if value.upper() in ("Z", "UTC"):
        return timezone.utc
    match = _OFFSET_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid UTC offset: {value!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


LOCAL_TZ = parse_offset(TASK_TIMEZONE_OFFSET)


def canonical_priority(value: Optional[str], strict: Optional[bool] = None) -> TaskPriority:
    if value is None:
        return TaskPriority.MEDIUM
    if isinstance(value, TaskPriority):
        return value
    key = str(value).strip().lower()
    if key in PRIORITY_ALIASES:
        return PRIORITY_ALIASES[key]
    if TASK_PRIORITY_STRICT if strict is None else strict:
        raise ValidationFailed(f"Invalid priority: {value}")
    return TaskPriority.MEDIUM


def canonical_status(value: str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    key = str(value).strip().lower().replace(" ", "_")
    if key not in STATUS_ALIASES:
        raise ValidationFailed(f"Invalid status: {value}")
    return STATUS_ALIASES[key]


def parse_due_date(value: Optional[str], tz: timezone = None) -> Optional[datetime]:
    """Parse a due date as wall-clock time in the configured fixed offset.

    "2025-03-14 09:30:00" means 09:30 at TASK_TIMEZONE_OFFSET, never the
    server's local zone. Explicit offsets ("Z", "+01:00") are honoured.
    A bare date means the end of that day. Empty clears the due date.
    """
    if value is None:
        return None
    tz = tz or LOCAL_TZ
    text = str(value).strip()
    if not text:
        return None

    for fmt in _NAIVE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue

    try:
        day = datetime.strptime(text, "%Y-%m-%d")
        return day.replace(hour=23, minute=59, second=59, tzinfo=tz)
    except ValueError:
        pass

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed(f"Invalid due date: {value}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed


def format_due_date(dt: Optional[datetime], tz: timezone = None) -> Optional[str]:
    """ISO-8601 in the configured offset, so wall-clock components round-trip"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz or LOCAL_TZ).isoformat()


def day_bounds(value: str, tz: timezone = None):
    """(start, end) of a calendar day in the configured offset"""
    tz = tz or LOCAL_TZ
    try:
        day = datetime.strptime(value.strip(), "%Y-%m-%d")
    except ValueError:
        raise ValidationFailed(f"Invalid date: {value}")
    start = day.replace(tzinfo=tz)
    return start, start + timedelta(days=1)
