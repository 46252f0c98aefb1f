from datetime import datetime

from vaultgram.core.markers import IntervalSpec
from vaultgram.core.reminders import (
    DAY_MS,
    HOUR_MS,
    MINUTE_MS,
    get_recurrence_next_timestamp,
    get_reminder_trigger_timestamp,
    is_interval_due,
    is_reminder_active,
    is_reminder_eligible,
    reminder_triggers,
    should_list_overdue_task_in_reminders,
    should_send_hourly_overdue_reminder,
    should_send_reminder,
    sweep_recurring_line,
    sweep_recurring_text,
    was_timestamp_crossed,
)
from vaultgram.core.tasks import TaskRecord


def _local_ms(*args: int) -> int:
    return int(datetime(*args).timestamp() * 1000)


def _task(due: int | None, has_time: bool = True, reminders: list[IntervalSpec] | None = None) -> TaskRecord:
    return TaskRecord(
        id="abcdef0123", short_id="abcdef01", text="Task", path="a.md", line=0,
        raw="- [ ] Task", due_timestamp=due, due_has_time=has_time, reminders=reminders or [],
    )


def test_month_arithmetic_clamps_to_leap_day() -> None:
    start = _local_ms(2024, 1, 31, 8, 30)
    assert get_recurrence_next_timestamp(start, IntervalSpec(1, "mo")) == _local_ms(2024, 2, 29, 8, 30)


def test_month_arithmetic_clamps_non_leap() -> None:
    start = _local_ms(2025, 1, 31, 8, 30)
    assert get_recurrence_next_timestamp(start, IntervalSpec(1, "mo")) == _local_ms(2025, 2, 28, 8, 30)


def test_month_arithmetic_crosses_year() -> None:
    start = _local_ms(2024, 11, 30, 12, 0)
    assert get_recurrence_next_timestamp(start, IntervalSpec(3, "mo")) == _local_ms(2025, 2, 28, 12, 0)


def test_reminder_trigger_subtracts() -> None:
    due = _local_ms(2024, 3, 31, 9, 0)
    assert get_reminder_trigger_timestamp(due, 2, "h") == due - 2 * HOUR_MS
    assert get_reminder_trigger_timestamp(due, 1, "w") == due - 7 * DAY_MS
    assert get_reminder_trigger_timestamp(due, 1, "mo") == _local_ms(2024, 2, 29, 9, 0)


def test_crossing_fires_exactly_once() -> None:
    due = _local_ms(2024, 6, 1, 12, 0)
    trigger = get_reminder_trigger_timestamp(due, 30, "m")
    now = trigger - 10 * MINUTE_MS
    last = now - MINUTE_MS
    fired = 0
    while now < trigger + 10 * MINUTE_MS:
        if was_timestamp_crossed(last, now, trigger):
            fired += 1
        last, now = now, now + MINUTE_MS
    assert fired == 1


def test_cold_start_fires_for_past_trigger() -> None:
    assert was_timestamp_crossed(0, 10_000, 5_000)
    assert not was_timestamp_crossed(0, 10_000, 20_000)
    assert not was_timestamp_crossed(6_000, 10_000, 5_000)


def test_hourly_overdue_fires_once_per_hour() -> None:
    due = _local_ms(2024, 6, 1, 12, 0)
    task = _task(due)
    assert not should_send_hourly_overdue_reminder(task, due - HOUR_MS, due - 1)
    assert should_send_hourly_overdue_reminder(task, due - 1, due)
    assert not should_send_hourly_overdue_reminder(task, due + 5 * MINUTE_MS, due + 30 * MINUTE_MS)
    assert should_send_hourly_overdue_reminder(task, due + 59 * MINUTE_MS, due + 61 * MINUTE_MS)
    assert not should_send_hourly_overdue_reminder(_task(due, has_time=False), 0, due + HOUR_MS)


def test_sub_day_reminders_skipped_without_time() -> None:
    due = _local_ms(2024, 6, 1, 0, 0)
    task = _task(due, has_time=False, reminders=[IntervalSpec(2, "h"), IntervalSpec(1, "d")])
    assert reminder_triggers(task) == [due - DAY_MS]


def test_should_send_reminder_on_trigger() -> None:
    due = _local_ms(2024, 6, 1, 12, 0)
    task = _task(due, reminders=[IntervalSpec(1, "d")])
    trigger = due - DAY_MS
    assert should_send_reminder(task, trigger - MINUTE_MS, trigger + MINUTE_MS)
    assert not should_send_reminder(task, trigger + MINUTE_MS, trigger + 2 * MINUTE_MS)
    assert not should_send_reminder(_task(None), 0, due)


def test_overdue_without_time_listed_every_sweep() -> None:
    due = _local_ms(2024, 6, 1)
    task = _task(due, has_time=False, reminders=[IntervalSpec(1, "d")])
    assert should_list_overdue_task_in_reminders(task, due + 3 * DAY_MS)
    assert is_reminder_eligible(task, due + 2 * DAY_MS, due + 3 * DAY_MS)
    assert not should_list_overdue_task_in_reminders(_task(due, has_time=False), due + DAY_MS)


def test_reminder_active() -> None:
    due = _local_ms(2024, 6, 1, 12, 0)
    task = _task(due, reminders=[IntervalSpec(1, "h")])
    assert not is_reminder_active(task, due - 2 * HOUR_MS)
    assert is_reminder_active(task, due - 30 * MINUTE_MS)
    assert is_reminder_active(_task(due), due + 1)
    assert not is_reminder_active(_task(None), due)


def test_interval_due() -> None:
    now = 10 * 60 * MINUTE_MS
    assert is_interval_due(now, 60, 0, 0)
    assert not is_interval_due(now, 60, now - 30 * MINUTE_MS, 0)
    assert is_interval_due(now, 60, now - 60 * MINUTE_MS, now - 90 * MINUTE_MS)
    assert not is_interval_due(now, 60, now - 90 * MINUTE_MS, now - 10 * MINUTE_MS)
    assert not is_interval_due(now, 0, 0, 0)


def test_sweep_stamps_then_reopens() -> None:
    now = _local_ms(2024, 1, 10, 9, 0)
    line = "- [x] Water plants #recur/1d"

    stamped, action = sweep_recurring_line(line, now)
    assert action == "stamped"
    assert stamped == f"{line} #recurdone/{now}"

    same, action = sweep_recurring_line(stamped, now + HOUR_MS)
    assert action is None
    assert same == stamped

    reopened, action = sweep_recurring_line(stamped, now + DAY_MS)
    assert action == "reopened"
    assert reopened == "- [ ] Water plants #recur/1d"

    again, action = sweep_recurring_line(reopened, now + 2 * DAY_MS)
    assert action is None
    assert again == reopened


def test_sweep_text_counts() -> None:
    now = _local_ms(2024, 1, 10, 9, 0)
    text = "\n".join([
        "# Chores",
        "- [x] Water plants #recur/1d",
        f"- [x] Rent #recur/1mo #recurdone/{_local_ms(2023, 12, 10, 9, 0)}",
        "- [x] One-off",
        "- [ ] Open #recur/1w",
    ])
    result = sweep_recurring_text(text, now)
    assert result.stamped == 1
    assert result.reopened == 1
    lines = result.text.split("\n")
    assert lines[1].endswith(f"#recurdone/{now}")
    assert lines[2] == "- [ ] Rent #recur/1mo"
    assert lines[3] == "- [x] One-off"
    assert lines[4] == "- [ ] Open #recur/1w"
