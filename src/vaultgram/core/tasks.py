"""Task normalization.

Turns heterogeneous task-like inputs into canonical :class:`TaskRecord`
objects. Two sources feed this module:

* opaque objects returned by the task-query plugin (dicts, or objects with
  attributes; the exact schema is unknown and varies between versions), and
* raw markdown checkbox lines found while scanning the vault.

Field extraction walks ordered candidate lists and the first non-empty value
wins, so several upstream schemas work without coupling to any one of them.
Nothing outside this module looks at the raw upstream shape.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
import math
import re
from typing import Any, Iterable, NamedTuple, Optional

from vaultgram.core.markers import (
    SHARED_TAG_RE,
    ReminderSpec,
    dedupe_specs,
    get_stored_task_id,
    has_shared_tag,
    hash_task_id,
    normalize_tag,
    parse_reminders,
    parse_reminders_from_tags,
    strip_tags,
    strip_task_id_tag,
    tag_pattern,
)

logger = logging.getLogger("vaultgram.tasks")

UNNAMED_TASK = "(unnamed task)"

PRIORITY_EMOJI = {
    4: "\u23eb",        # ⏫
    3: "\U0001f53c",    # 🔼
    1: "\U0001f53d",    # 🔽
    0: "\u23ec",        # ⏬
}
DUE_EMOJI = "\U0001f4c5"  # 📅

_PRIORITY_WORDS = {
    "highest": 4, "urgent": 4, "top": 4,
    "high": 3,
    "medium": 2, "normal": 2, "default": 2,
    "low": 1,
    "lowest": 0, "none": 0,
}

_UNCHECKED_RE = re.compile(r"^\s*-\s*\[ \]\s*(.*)$")
_TASK_LINE_RE = re.compile(r"^\s*-\s*\[[ xX]\]\s*")
_COMPLETED_LINE_RE = re.compile(r"^\s*-\s*\[[xX]\]\s*")
_CHECKBOX_RE = re.compile(r"\[[^\]]\]")
_CHECKED_RAW_RE = re.compile(r"\[[xX]\]")

_DATETIME_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})[T\s](\d{2}):(\d{2})(?::(\d{2}))?\b")
_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_HAS_TIME_RE = re.compile(r"[T\s]\d{2}:\d{2}")

_RAW_DUE_PATTERNS = (
    re.compile(DUE_EMOJI + r"\s*(\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}(?::\d{2})?)"),
    re.compile(DUE_EMOJI + r"\s*(\d{4}-\d{2}-\d{2})"),
    re.compile(r"\b(?:due|date)[:\s]*(\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}(?::\d{2})?)\b", re.IGNORECASE),
    re.compile(r"\b(?:due|date)[:\s]*(\d{4}-\d{2}-\d{2})\b", re.IGNORECASE),
)

_INPUT_DUE_RE = re.compile(
    r"(?:\b(?:due|date)\s*[:=]?\s*|" + DUE_EMOJI + r"\s*)"
    r"(\d{4}-\d{2}-\d{2})(?:[T\s](\d{2}:\d{2})(?::\d{2})?)?",
    re.IGNORECASE,
)
_INPUT_PRIORITY_RE = re.compile(
    r"\bpriority\s*[:=]?\s*(highest|urgent|top|high|medium|normal|default|low|lowest|none|p[0-4]|[0-4])\b",
    re.IGNORECASE,
)
_PRIORITY_KEYWORD_RE = re.compile(r"\bpriority[:\s]*([a-zA-Z]+)\b", re.IGNORECASE)
_P_SHORTHAND_RE = re.compile(r"\bp([0-4])\b", re.IGNORECASE)
_PRIORITY_DIGIT_RE = re.compile(r"\bpriority\s*[:=]?\s*([0-4])\b", re.IGNORECASE)
_PRIORITY_EMOJI_RE = re.compile("[\u23eb\u23ec\U0001f53c\U0001f53d]")
_LEADING_CHECKBOX_RE = re.compile(r"^\s*-\s*\[[ xX]\]\s*")


class DueInfo(NamedTuple):
    timestamp: int      # epoch milliseconds
    has_time: bool


@dataclass
class TaskRecord:
    """Canonical, ephemeral projection of one task line or query result."""
    id: str
    short_id: str
    text: str
    path: Optional[str]
    line: Optional[int]
    raw: Optional[str]
    priority: int = 0
    due_timestamp: Optional[int] = None
    due_has_time: bool = False
    reminders: list[ReminderSpec] = field(default_factory=list)

    @property
    def shared(self) -> bool:
        return has_shared_tag(self.raw) or has_shared_tag(self.text)


@dataclass
class TaskLineDraft:
    line_text: str
    cleaned_text: str
    due_date: Optional[str]
    priority: Optional[int]


# ── Upstream field access ────────────────────────────────────


def _get(task: Any, key: str) -> Any:
    if isinstance(task, dict):
        return task.get(key)
    return getattr(task, key, None)


def _first(task: Any, keys: Iterable[str]) -> Any:
    for key in keys:
        value = _get(task, key)
        if value:
            return value
    return None


def is_task_like(value: Any) -> bool:
    return value is not None and not isinstance(value, (str, bytes, int, float, bool, list, tuple))


def get_task_raw(task: Any) -> Optional[str]:
    return _first(task, ("originalMarkdown", "raw", "lineText"))


def get_task_text(task: Any) -> str:
    return _first(task, ("description", "text", "task", "content")) or get_task_raw(task) or UNNAMED_TASK


def get_task_path(task: Any) -> Optional[str]:
    path = _first(task, ("path", "filePath"))
    if path:
        return path
    file_obj = _get(task, "file")
    return _get(file_obj, "path") if file_obj is not None else None


def get_task_line(task: Any) -> Optional[int]:
    for key in ("line", "lineNumber"):
        value = _get(task, key)
        if value is not None:
            return _as_int(value)
    position = _get(task, "position")
    start = _get(position, "start") if position is not None else None
    return _as_int(_get(start, "line")) if start is not None else None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _normalize_external_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, dict):
        inner = value.get("id")
        return _normalize_external_id(inner if inner is not None else value.get("value"))
    return None


def get_task_external_id(task: Any) -> Optional[str]:
    for key in ("id", "uuid", "uid", "taskId", "blockId", "$id"):
        normalized = _normalize_external_id(_get(task, key))
        if normalized:
            return normalized
    return None


def is_task_completed(task: Any) -> bool:
    if _get(task, "completed") is True or _get(task, "isCompleted") is True:
        return True
    status = _get(task, "status")
    if status is not None and not isinstance(status, str):
        if _get(status, "isCompleted") is True:
            return True
        status_type = _get(status, "type")
        if isinstance(status_type, str) and status_type.lower() == "done":
            return True
    raw = get_task_raw(task)
    return bool(raw and _CHECKED_RAW_RE.search(raw))


# ── Priority ─────────────────────────────────────────────────


def normalize_priority(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        if value <= 0:
            return 0
        if value >= 4:
            return 4
        return int(math.floor(value + 0.5))
    if isinstance(value, str):
        return _PRIORITY_WORDS.get(value.strip().lower())
    if isinstance(value, dict):
        for key in ("value", "priority", "id", "name", "label"):
            normalized = normalize_priority(value.get(key))
            if normalized is not None:
                return normalized
    return None


def parse_priority_from_raw(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    for priority in (4, 3, 1, 0):
        if PRIORITY_EMOJI[priority] in raw:
            return priority
    match = _PRIORITY_KEYWORD_RE.search(raw)
    if match:
        return normalize_priority(match.group(1))
    return None


def get_task_priority(task: Any) -> int:
    for key in ("priority", "priorityNumber", "priorityValue", "urgency"):
        normalized = normalize_priority(_get(task, key))
        if normalized is not None:
            return normalized
    from_raw = parse_priority_from_raw(get_task_raw(task))
    return from_raw if from_raw is not None else 0


def priority_to_emoji(priority: Optional[int]) -> Optional[str]:
    if priority is None:
        return None
    if priority >= 4:
        return PRIORITY_EMOJI[4]
    if priority <= 0:
        return PRIORITY_EMOJI[0]
    # medium (2) has no marker
    return PRIORITY_EMOJI.get(priority)


# ── Due dates ────────────────────────────────────────────────


def _ms(moment: datetime) -> int:
    return int(round(moment.timestamp() * 1000))


def _utc_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    return _ms(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc))


def parse_date_string(value: str) -> Optional[DueInfo]:
    """Parse a date string.

    ``YYYY-MM-DD HH:MM[:SS]`` is local wall-clock time; a bare ``YYYY-MM-DD``
    is UTC midnight and carries no time-of-day.
    """
    match = _DATETIME_RE.search(value)
    if match:
        year, month, day, hour, minute = (int(match.group(i)) for i in range(1, 6))
        second = int(match.group(6) or 0)
        try:
            return DueInfo(_ms(datetime(year, month, day, hour, minute, second)), True)
        except ValueError:
            pass
    match = _DATE_RE.search(value)
    if match:
        try:
            return DueInfo(_utc_ms(int(match.group(1)), int(match.group(2)), int(match.group(3))), False)
        except ValueError:
            pass
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return DueInfo(_ms(parsed), _HAS_TIME_RE.search(value) is not None)


def normalize_due_info(value: Any) -> Optional[DueInfo]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return DueInfo(_ms(value), True)
    if isinstance(value, date):
        return DueInfo(_utc_ms(value.year, value.month, value.day), False)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        millis = value if value > 1_000_000_000_000 else value * 1000
        return DueInfo(int(millis), True)
    if isinstance(value, str):
        return parse_date_string(value)

    # Luxon / moment style objects
    for method in ("toMillis", "toJSDate", "toISO"):
        func = getattr(value, method, None)
        if not callable(func):
            continue
        result = func()
        if method == "toMillis":
            return DueInfo(int(result), True) if isinstance(result, (int, float)) and math.isfinite(result) else None
        if method == "toJSDate":
            return DueInfo(_ms(result), True) if isinstance(result, datetime) else None
        return parse_date_string(result) if isinstance(result, str) else None

    year, month, day = _get(value, "year"), _get(value, "month"), _get(value, "day")
    if all(isinstance(part, int) and not isinstance(part, bool) for part in (year, month, day)):
        hour, minute, second = _get(value, "hour"), _get(value, "minute"), _get(value, "second")
        try:
            timestamp = _utc_ms(
                year, month, day,
                hour if isinstance(hour, int) else 0,
                minute if isinstance(minute, int) else 0,
                second if isinstance(second, int) else 0,
            )
        except ValueError:
            return None
        return DueInfo(timestamp, isinstance(hour, int) or isinstance(minute, int))
    nested = _get(value, "date")
    if isinstance(nested, str):
        return parse_date_string(nested)
    return None


def parse_due_info_from_raw(raw: Optional[str]) -> Optional[DueInfo]:
    if not raw:
        return None
    for pattern in _RAW_DUE_PATTERNS:
        match = pattern.search(raw)
        if match:
            parsed = parse_date_string(match.group(1))
            if parsed is not None:
                return parsed
    return None


def get_task_due_info(task: Any) -> Optional[DueInfo]:
    """Structured due fields first (one carrying a time wins), then the raw line."""
    dates = _get(task, "dates")
    candidates = [
        _get(task, key)
        for key in ("dueDate", "due", "dueOn", "dueDateTime", "dueAt", "dueDateString")
    ]
    candidates.append(_get(dates, "due") if dates is not None else None)

    first_parsed: Optional[DueInfo] = None
    for candidate in candidates:
        parsed = normalize_due_info(candidate)
        if parsed is None:
            continue
        if parsed.has_time:
            return parsed
        if first_parsed is None:
            first_parsed = parsed
    if first_parsed is not None:
        return first_parsed
    return parse_due_info_from_raw(get_task_raw(task))


# ── Tags ─────────────────────────────────────────────────────


def task_matches_global_tag(
    task: Any,
    record: TaskRecord,
    global_tag: str,
    matcher: Optional[re.Pattern[str]] = None,
) -> bool:
    tag = normalize_tag(global_tag)
    if not tag:
        return True
    tags = _get(task, "tags")
    if isinstance(tags, (list, tuple)):
        lower_tag = tag.lower()
        for entry in tags:
            if isinstance(entry, str) and normalize_tag(entry).lower() == lower_tag:
                return True
    pattern = matcher if matcher is not None else tag_pattern(tag)
    if pattern is None:
        return True
    raw = record.raw or get_task_raw(task) or ""
    text = record.text or get_task_text(task)
    return pattern.search(raw) is not None or pattern.search(text) is not None


def format_task_text_for_message(
    text: str,
    matcher: Optional[re.Pattern[str]] = None,
    extra_matchers: Iterable[Optional[re.Pattern[str]]] = (),
) -> str:
    cleaned = strip_task_id_tag(text)
    patterns = [matcher, *extra_matchers]
    if not any(p is not None for p in patterns):
        return cleaned
    return strip_tags(cleaned, patterns)


def display_text(text: str, global_tag: str = "") -> str:
    """Task text as shown in chat: no id marker, filter tag or ``#shared``."""
    return format_task_text_for_message(text, tag_pattern(global_tag), [SHARED_TAG_RE])


# ── Records ──────────────────────────────────────────────────


def to_task_record(task: Any) -> TaskRecord:
    text = get_task_text(task)
    path = get_task_path(task)
    line = get_task_line(task)
    raw = get_task_raw(task)
    due = get_task_due_info(task)
    reminders = dedupe_specs([
        *parse_reminders(raw),
        *parse_reminders(text),
        *parse_reminders_from_tags(_get(task, "tags")),
    ])

    stored_id = get_stored_task_id(raw or text)
    external_id = get_task_external_id(task)
    pieces = [path or "", "" if line is None else str(line), raw or text]
    if external_id:
        pieces.append(f"external:{external_id}")
    task_id = stored_id or hash_task_id("::".join(pieces))

    return TaskRecord(
        id=task_id,
        short_id=task_id[:8],
        text=strip_task_id_tag(text),
        path=path,
        line=line,
        raw=raw,
        priority=get_task_priority(task),
        due_timestamp=due.timestamp if due else None,
        due_has_time=due.has_time if due else False,
        reminders=reminders,
    )


def sort_tasks(records: list[TaskRecord]) -> list[TaskRecord]:
    """Priority desc, then due asc (missing due last), then discovery order."""
    return sorted(
        records,
        key=lambda r: (-r.priority, r.due_timestamp if r.due_timestamp is not None else math.inf),
    )


# ── Line predicates / edits ──────────────────────────────────


def is_unchecked_task_line(line: str) -> bool:
    return _UNCHECKED_RE.match(line) is not None


def is_task_line(line: str) -> bool:
    return _TASK_LINE_RE.match(line) is not None


def is_completed_task_line(line: str) -> bool:
    return _COMPLETED_LINE_RE.match(line) is not None


def get_unchecked_task_text(line: str) -> Optional[str]:
    match = _UNCHECKED_RE.match(line)
    return match.group(1) if match else None


def matches_task_line(line: str, record: TaskRecord, require_unchecked: bool) -> bool:
    if require_unchecked:
        if not is_unchecked_task_line(line):
            return False
    elif not is_task_line(line):
        return False
    if record.raw and record.raw in line:
        return True
    return bool(record.text and record.text in line)


def replace_checkbox(line: str) -> Optional[str]:
    """Check the first checkbox. ``None`` when there is none or it is already checked."""
    if not _CHECKBOX_RE.search(line):
        return None
    updated = _CHECKBOX_RE.sub("[x]", line, count=1)
    return None if updated == line else updated


def uncheck_checkbox(line: str) -> Optional[str]:
    if not _CHECKBOX_RE.search(line):
        return None
    updated = _CHECKBOX_RE.sub("[ ]", line, count=1)
    return None if updated == line else updated


# ── Free-text input ──────────────────────────────────────────


def _extract_due_from_input(value: str) -> Optional[str]:
    match = _INPUT_DUE_RE.search(value)
    if not match:
        return None
    candidate = f"{match.group(1)} {match.group(2)}" if match.group(2) else match.group(1)
    return candidate if parse_date_string(candidate) is not None else None


def _extract_priority_from_input(value: str) -> Optional[int]:
    from_raw = parse_priority_from_raw(value)
    if from_raw is not None:
        return from_raw
    match = _P_SHORTHAND_RE.search(value) or _PRIORITY_DIGIT_RE.search(value)
    return int(match.group(1)) if match else None


def build_task_line_from_input(value: str) -> TaskLineDraft:
    """Render chat input as a checkbox line.

    ``Buy milk due:2024-12-31 priority: high`` becomes
    ``- [ ] Buy milk 🔼 📅 2024-12-31``.
    """
    cleaned = _LEADING_CHECKBOX_RE.sub("", value.strip())
    due_date = _extract_due_from_input(cleaned)
    priority = _extract_priority_from_input(cleaned)

    cleaned = _INPUT_DUE_RE.sub(" ", cleaned)
    cleaned = _INPUT_PRIORITY_RE.sub(" ", cleaned)
    cleaned = re.sub(r"\bp[0-4]\b", " ", cleaned, flags=re.IGNORECASE)
    cleaned = _PRIORITY_EMOJI_RE.sub(" ", cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip() or UNNAMED_TASK

    line_text = f"- [ ] {cleaned}"
    emoji = priority_to_emoji(priority)
    if emoji:
        line_text += f" {emoji}"
    if due_date:
        line_text += f" {DUE_EMOJI} {due_date}"
    return TaskLineDraft(line_text=line_text, cleaned_text=cleaned, due_date=due_date, priority=priority)


# ── Query plumbing ───────────────────────────────────────────


def normalize_tasks_query(value: str) -> str:
    """Accept a bare query, ``tasks <query>``, or a fenced ```tasks block."""
    trimmed = value.strip()
    if not trimmed:
        return ""
    if trimmed.startswith("```"):
        lines = re.split(r"\r?\n", trimmed)
        first = lines[0][3:].strip()
        content = lines[1:]
        if content and content[-1].strip().startswith("```"):
            content.pop()
        if re.match(r"^tasks\b", first, re.IGNORECASE):
            after = re.sub(r"^tasks\b", "", first, flags=re.IGNORECASE).strip()
            if after:
                content.insert(0, after)
        return "\n".join(content).strip()
    if re.match(r"^tasks\s+", trimmed, re.IGNORECASE):
        return re.sub(r"^tasks\s+", "", trimmed, flags=re.IGNORECASE).strip()
    return trimmed


def normalize_query_result(result: Any) -> list[Any]:
    if isinstance(result, (list, tuple)):
        return list(result)
    if isinstance(result, dict):
        for key in ("tasks", "items", "results"):
            value = result.get(key)
            if isinstance(value, (list, tuple)):
                return list(value)
    return []
