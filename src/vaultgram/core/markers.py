"""Inline markdown markers.

Every marker this project reads or writes inside a task line lives here:

    #taskid/<hex>          stable task identity
    #recur/<N><unit>       reopen N units after completion
    #recurdone/<epoch-ms>  when a recurring task was last completed
    #remind/<N><unit>      notify N units before the due time
    #shared                visible to guest chats

Tokens must be preceded by start-of-line or whitespace and followed by
whitespace, end-of-line or punctuation, so ``#taskid/abc1z`` is not a marker.
"""
from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable, Optional

TASK_ID_TAG_PREFIX = "#taskid/"
SHARED_TAG = "#shared"

_TAIL = r"(?=\s|$|[.,;:!?])"
_UNIT = r"(mo|months|month|[mhdw])"

_TASK_ID_RE = re.compile(r"(^|\s)#taskid/([0-9a-f]+)" + _TAIL, re.IGNORECASE)
_RECUR_RE = re.compile(r"(^|\s)#recur/(\d+)" + _UNIT + _TAIL, re.IGNORECASE)
_RECUR_DONE_RE = re.compile(r"(^|\s)#recurdone/(\d+)" + _TAIL, re.IGNORECASE)
_REMIND_RE = re.compile(r"(^|\s)#remind/(\d+)" + _UNIT + _TAIL, re.IGNORECASE)
_MULTISPACE_RE = re.compile(r"\s{2,}")

UNITS = ("m", "h", "d", "w", "mo")


@dataclass(frozen=True)
class IntervalSpec:
    """A ``<value><unit>`` offset. Used for both recurrence and reminders."""
    value: int
    unit: str  # m | h | d | w | mo


# Same shape, different meaning: when to reopen vs. how long before due.
RecurrenceSpec = IntervalSpec
ReminderSpec = IntervalSpec


def _collapse(text: str) -> str:
    return _MULTISPACE_RE.sub(" ", text)


# ── Identity ─────────────────────────────────────────────────


def hash_task_id(value: str) -> str:
    """DJB2-style (multiply by 33, xor) hash rendered as 8 hex digits plus the
    input length in hex."""
    h = 5381
    for ch in value:
        # JS strings are UTF-16; hash code units so ids match existing vault tags.
        for unit in _utf16_units(ch):
            h = ((h * 33) ^ unit) & 0xFFFFFFFF
    return f"{h:08x}{_utf16_len(value):x}"


def _utf16_units(ch: str) -> tuple[int, ...]:
    code = ord(ch)
    if code < 0x10000:
        return (code,)
    code -= 0x10000
    return (0xD800 + (code >> 10), 0xDC00 + (code & 0x3FF))


def _utf16_len(value: str) -> int:
    return sum(2 if ord(ch) >= 0x10000 else 1 for ch in value)


def task_id_tag_pattern(task_id: str) -> re.Pattern[str]:
    """Regex matching the marker for exactly ``task_id``."""
    return re.compile(r"(^|\s)#taskid/" + re.escape(task_id) + _TAIL, re.IGNORECASE)


def has_task_id_tag(line: str) -> bool:
    return _TASK_ID_RE.search(line) is not None


def get_stored_task_id(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = _TASK_ID_RE.search(text)
    return match.group(2).lower() if match else None


def strip_task_id_tag(text: str) -> str:
    cleaned = _collapse(_TASK_ID_RE.sub(" ", text)).strip()
    return cleaned or text


def ensure_task_id_tag(line: str, task_id: str) -> str:
    """Append ``#taskid/<id>`` unless the line already carries one."""
    if has_task_id_tag(line):
        return line
    suffix = "" if line.endswith(" ") else " "
    return f"{line}{suffix}{TASK_ID_TAG_PREFIX}{task_id.lower()}"


# ── Recurrence / reminders ───────────────────────────────────


def normalize_unit(unit: str) -> Optional[str]:
    normalized = unit.strip().lower()
    if normalized in ("m", "h", "d", "w"):
        return normalized
    if normalized in ("mo", "month", "months"):
        return "mo"
    return None


def _spec_from_match(match: re.Match[str]) -> Optional[IntervalSpec]:
    value = int(match.group(2))
    unit = normalize_unit(match.group(3))
    if value <= 0 or unit is None:
        return None
    return IntervalSpec(value=value, unit=unit)


def parse_recurrence(raw: Optional[str]) -> Optional[RecurrenceSpec]:
    if not raw:
        return None
    match = _RECUR_RE.search(raw)
    return _spec_from_match(match) if match else None


def parse_reminders(raw: Optional[str]) -> list[ReminderSpec]:
    if not raw:
        return []
    reminders: list[ReminderSpec] = []
    for match in _REMIND_RE.finditer(raw):
        spec = _spec_from_match(match)
        if spec is not None:
            reminders.append(spec)
    return reminders


def parse_reminders_from_tags(tags: object) -> list[ReminderSpec]:
    """Reminder markers carried in a structured ``tags`` array.

    Entries may be strings or objects exposing ``tag``/``value``/``name``/
    ``text``/``label``; the leading ``#`` is optional.
    """
    if not isinstance(tags, (list, tuple)):
        return []
    candidates: list[str] = []
    for tag in tags:
        if isinstance(tag, str):
            candidates.append(tag)
            continue
        if not isinstance(tag, dict):
            continue
        for key in ("tag", "value", "name", "text", "label"):
            token = tag.get(key)
            if isinstance(token, str) and token.strip():
                candidates.append(token)
                break
    reminders: list[ReminderSpec] = []
    for candidate in candidates:
        normalized = candidate if candidate.startswith("#") else f"#{candidate}"
        reminders.extend(parse_reminders(f" {normalized} "))
    return dedupe_specs(reminders)


def dedupe_specs(specs: Iterable[IntervalSpec]) -> list[IntervalSpec]:
    seen: set[tuple[int, str]] = set()
    unique: list[IntervalSpec] = []
    for spec in specs:
        key = (spec.value, spec.unit)
        if key in seen:
            continue
        seen.add(key)
        unique.append(spec)
    return unique


def get_recurring_completed_at(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    match = _RECUR_DONE_RE.search(raw)
    if not match:
        return None
    timestamp = int(match.group(2))
    return timestamp if timestamp > 0 else None


def upsert_recurring_completed_tag(line: str, completed_at: int) -> str:
    token = f"#recurdone/{max(1, int(completed_at))}"
    if _RECUR_DONE_RE.search(line):
        return _RECUR_DONE_RE.sub(lambda m: f"{m.group(1)}{token}", line, count=1)
    suffix = "" if line.endswith(" ") else " "
    return f"{line}{suffix}{token}"


def strip_recurring_completed_tag(line: str) -> str:
    stripped = _collapse(_RECUR_DONE_RE.sub(" ", line)).rstrip()
    return stripped or line


# ── Free-form tags ───────────────────────────────────────────


def normalize_tag(value: str) -> str:
    """``work`` -> ``#work``; blank stays blank."""
    trimmed = value.strip()
    if not trimmed:
        return ""
    return trimmed if trimmed.startswith("#") else f"#{trimmed}"


def tag_pattern(tag: str) -> Optional[re.Pattern[str]]:
    normalized = normalize_tag(tag)
    if not normalized:
        return None
    return re.compile(r"(^|\s)" + re.escape(normalized) + _TAIL, re.IGNORECASE)


SHARED_TAG_RE = tag_pattern(SHARED_TAG)


def has_shared_tag(text: Optional[str]) -> bool:
    return bool(text) and SHARED_TAG_RE.search(text) is not None  # type: ignore[union-attr]


def strip_tags(text: str, patterns: Iterable[Optional[re.Pattern[str]]]) -> str:
    cleaned = text
    for pattern in patterns:
        if pattern is None:
            continue
        cleaned = pattern.sub(" ", cleaned)
    normalized = _collapse(cleaned).strip()
    return normalized or text
