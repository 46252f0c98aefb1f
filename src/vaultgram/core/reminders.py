"""Reminder and recurrence timing.

All timestamps are epoch milliseconds. Nothing here owns a timer: callers pass
``now`` and the time of their previous check, and these functions decide
whether a trigger fell inside that window. A trigger therefore fires exactly
once across successive ticks, whatever the tick spacing.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
import math
from typing import Optional

from vaultgram.core.markers import (
    IntervalSpec,
    RecurrenceSpec,
    get_recurring_completed_at,
    parse_recurrence,
    strip_recurring_completed_tag,
    upsert_recurring_completed_tag,
)
from vaultgram.core.tasks import TaskRecord, is_completed_task_line, uncheck_checkbox

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

UNIT_MS = {
    "m": MINUTE_MS,
    "h": HOUR_MS,
    "d": DAY_MS,
    "w": 7 * DAY_MS,
}

# minute/hour offsets need a time-of-day on the due value
SUB_DAY_UNITS = ("m", "h")


def add_calendar_months(timestamp: int, months: int) -> int:
    """Shift by whole calendar months in local time, clamping the day.

    Jan 31 + 1 month is Feb 29 in a leap year, Feb 28 otherwise. The time of
    day is preserved.
    """
    source = datetime.fromtimestamp(timestamp / 1000)
    month_index = source.month - 1 + months
    year = source.year + month_index // 12
    month = month_index % 12 + 1
    day = min(source.day, calendar.monthrange(year, month)[1])
    target = source.replace(year=year, month=month, day=day)
    return int(round(target.timestamp() * 1000))


def shift(timestamp: int, spec: IntervalSpec, direction: int = 1) -> int:
    if spec.unit == "mo":
        return add_calendar_months(timestamp, direction * spec.value)
    return timestamp + direction * spec.value * UNIT_MS[spec.unit]


def get_reminder_trigger_timestamp(due: int, value: int, unit: str) -> int:
    return shift(due, IntervalSpec(value=value, unit=unit), direction=-1)


def get_recurrence_next_timestamp(completed_at: int, recurrence: RecurrenceSpec) -> int:
    return shift(completed_at, recurrence)


def is_recurring_task_due(completed_at: int, recurrence: RecurrenceSpec, now: int) -> bool:
    return now >= get_recurrence_next_timestamp(completed_at, recurrence)


def was_timestamp_crossed(last_checked: int, now: int, trigger_at: int) -> bool:
    """True iff ``trigger_at`` is in ``(last_checked, now]``.

    A first-ever check (``last_checked <= 0``) counts every past trigger.
    """
    if trigger_at > now:
        return False
    return last_checked <= 0 or last_checked < trigger_at


def should_send_hourly_overdue_reminder(task: TaskRecord, last_checked: int, now: int) -> bool:
    """Fire once per whole hour past a timed due date."""
    due = task.due_timestamp
    if due is None or not task.due_has_time or now < due:
        return False
    if last_checked <= 0 or last_checked < due:
        return True
    current_bucket = math.floor((now - due) / HOUR_MS)
    previous_bucket = math.floor((last_checked - due) / HOUR_MS)
    return current_bucket > previous_bucket


def should_list_overdue_task_in_reminders(task: TaskRecord, now: int) -> bool:
    """Date-only tasks with reminders stay listed every sweep while overdue."""
    return (
        task.due_timestamp is not None
        and not task.due_has_time
        and now >= task.due_timestamp
        and len(task.reminders) > 0
    )


def reminder_triggers(task: TaskRecord) -> list[int]:
    if task.due_timestamp is None:
        return []
    triggers = []
    for reminder in task.reminders:
        if reminder.unit in SUB_DAY_UNITS and not task.due_has_time:
            continue
        triggers.append(get_reminder_trigger_timestamp(task.due_timestamp, reminder.value, reminder.unit))
    return triggers


def should_send_reminder(task: TaskRecord, last_checked: int, now: int) -> bool:
    if task.due_timestamp is None:
        return False
    for trigger_at in reminder_triggers(task):
        if was_timestamp_crossed(last_checked, now, trigger_at):
            return True
    return should_send_hourly_overdue_reminder(task, last_checked, now)


def is_reminder_eligible(task: TaskRecord, last_checked: int, now: int) -> bool:
    return should_send_reminder(task, last_checked, now) or should_list_overdue_task_in_reminders(task, now)


def is_reminder_active(task: TaskRecord, now: int) -> bool:
    """Overdue, or at least one reminder trigger already passed."""
    if task.due_timestamp is None:
        return False
    if now >= task.due_timestamp:
        return True
    return any(trigger_at <= now for trigger_at in reminder_triggers(task))


def is_interval_due(
    now: int,
    interval_minutes: int,
    last_reminder_check_at: int,
    last_interval_sent_at: int,
) -> bool:
    if interval_minutes <= 0:
        return False
    last = max(last_reminder_check_at or 0, last_interval_sent_at or 0)
    return now - last >= interval_minutes * MINUTE_MS


# ── Recurrence sweep ─────────────────────────────────────────


@dataclass
class SweepResult:
    text: str
    stamped: int = 0
    reopened: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.stamped or self.reopened)


def sweep_recurring_line(line: str, now: int) -> tuple[str, Optional[str]]:
    """Return ``(new_line, action)`` where action is ``stamped``, ``reopened`` or None."""
    if not is_completed_task_line(line):
        return line, None
    recurrence = parse_recurrence(line)
    if recurrence is None:
        return line, None
    completed_at = get_recurring_completed_at(line)
    if completed_at is None:
        return upsert_recurring_completed_tag(line, now), "stamped"
    if not is_recurring_task_due(completed_at, recurrence, now):
        return line, None
    unchecked = uncheck_checkbox(line)
    if unchecked is None:
        return line, None
    return strip_recurring_completed_tag(unchecked), "reopened"


def sweep_recurring_text(text: str, now: int) -> SweepResult:
    lines = text.split("\n")
    result = SweepResult(text=text)
    for index, line in enumerate(lines):
        updated, action = sweep_recurring_line(line, now)
        if action == "stamped":
            result.stamped += 1
        elif action == "reopened":
            result.reopened += 1
        lines[index] = updated
    if result.changed:
        result.text = "\n".join(lines)
    return result
