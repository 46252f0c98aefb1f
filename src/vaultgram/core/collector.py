"""Task collection and vault edits.

``TaskCollector`` is the only component that reads or rewrites notes. It
collects open tasks (through the task-query callable when one is configured,
otherwise by scanning every markdown file), persists ``#taskid/`` markers,
checks tasks off, reopens recurring tasks and appends tasks added from chat.
Every edit is whole-file: read, change lines, write back.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Any, Callable, Optional

from vaultgram.core.audit import log_event
from vaultgram.core.daily_notes import DailyNotes, resolve_daily_note_path
from vaultgram.core.markers import (
    SHARED_TAG,
    ensure_task_id_tag,
    has_shared_tag,
    has_task_id_tag,
    hash_task_id,
    normalize_tag,
    parse_recurrence,
    tag_pattern,
    task_id_tag_pattern,
    upsert_recurring_completed_tag,
)
from vaultgram.core.reminders import SweepResult, sweep_recurring_text
from vaultgram.core.state import BotState
from vaultgram.core.tasks import (
    TaskLineDraft,
    TaskRecord,
    get_unchecked_task_text,
    is_task_completed,
    is_task_like,
    is_task_line,
    matches_task_line,
    normalize_query_result,
    normalize_tasks_query,
    replace_checkbox,
    sort_tasks,
    task_matches_global_tag,
    to_task_record,
)
from vaultgram.core.vault import TaskQuery, Vault

logger = logging.getLogger("vaultgram.collector")

_LEADING_CHECKBOX_RE = re.compile(r"^(\s*-\s*\[[ xX]\])\s*")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AddedTask:
    path: str
    line: int
    line_text: str
    record: TaskRecord
    draft: TaskLineDraft

    @property
    def shared(self) -> bool:
        return has_shared_tag(self.line_text)


class TaskCollector:
    def __init__(
        self,
        vault: Vault,
        state: BotState,
        task_query: Optional[TaskQuery] = None,
        data_dir: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.vault = vault
        self.state = state
        self.task_query = task_query
        self.data_dir = data_dir
        self.clock = clock
        self._cache: dict[str, TaskRecord] = {}

    @property
    def should_persist_ids(self) -> bool:
        return self.state.task_id_tagging_mode == "always"

    # ── Collection ───────────────────────────────────────────

    def collect_tasks(self) -> list[TaskRecord]:
        """Open tasks matching the filter tag, sorted for display."""
        if self.task_query is None:
            return sort_tasks(self.collect_tasks_from_vault())

        tasks = self.query_tasks(self.task_query)
        if tasks is None:
            return sort_tasks(self.collect_tasks_from_vault())

        global_tag = self.state.global_filter_tag
        matcher = tag_pattern(global_tag)
        records = []
        for task in tasks:
            if is_task_completed(task):
                continue
            record = to_task_record(task)
            if task_matches_global_tag(task, record, global_tag, matcher):
                records.append(record)

        if self.should_persist_ids:
            self.persist_task_id_tags(records)
        return sort_tasks(records)

    def query_tasks(self, task_query: TaskQuery) -> Optional[list[Any]]:
        """Run the task query; ``None`` means fall back to scanning the vault."""
        query = normalize_tasks_query(self.state.tasks_query)
        try:
            result = task_query(query)
            tasks = [t for t in normalize_query_result(result) if is_task_like(t)]
            if tasks or not query:
                return tasks
        except Exception as exc:  # noqa: BLE001
            logger.warning("Task query with string failed: %s", exc)

        try:
            result = task_query({"query": query})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Task query with object failed, scanning vault: %s", exc)
            return None
        return [t for t in normalize_query_result(result) if is_task_like(t)]

    def collect_tasks_from_vault(self) -> list[TaskRecord]:
        records: list[TaskRecord] = []
        tag_re = tag_pattern(self.state.global_filter_tag)
        should_tag = self.should_persist_ids

        for path in self.vault.list_markdown_files():
            text = self._read_note(path)
            if text is None:
                continue
            lines = text.split("\n")
            changed = False
            for index, line_text in enumerate(lines):
                task_text = get_unchecked_task_text(line_text)
                if task_text is None:
                    continue
                if tag_re is not None and not tag_re.search(line_text):
                    continue
                record = to_task_record({
                    "path": path,
                    "line": index,
                    "raw": line_text,
                    "text": task_text.strip(),
                })
                if should_tag and not has_task_id_tag(line_text):
                    lines[index] = ensure_task_id_tag(line_text, record.id)
                    changed = True
                records.append(record)
            if changed:
                self.vault.write(path, "\n".join(lines))
                log_event(self.data_dir, "task_ids_tagged", {"path": path})
        return records

    def _read_note(self, path: str) -> Optional[str]:
        """Read one note during a vault-wide pass; ``None`` if it cannot be decoded."""
        try:
            return self.vault.read(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping unreadable note %s: %s", path, exc)
            return None

    def persist_task_id_tags(self, records: list[TaskRecord]) -> None:
        """Write ``#taskid/`` markers for query results that carry a location."""
        if not self.should_persist_ids:
            return
        by_path: dict[str, list[TaskRecord]] = {}
        for record in records:
            if record.path and record.id:
                by_path.setdefault(record.path, []).append(record)

        for path, file_records in by_path.items():
            if not self.vault.exists(path):
                continue
            lines = self.vault.read(path).split("\n")
            changed = False
            for record in file_records:
                index = self._locate(lines, record, require_unchecked=True)
                if index is None or has_task_id_tag(lines[index]):
                    continue
                lines[index] = ensure_task_id_tag(lines[index], record.id)
                changed = True
            if changed:
                self.vault.write(path, "\n".join(lines))
                log_event(self.data_dir, "task_ids_tagged", {"path": path})

    @staticmethod
    def _locate(lines: list[str], record: TaskRecord, require_unchecked: bool) -> Optional[int]:
        """``line``, then ``line - 1``, then the first matching line."""
        if record.line is not None:
            for index in (record.line, record.line - 1):
                if 0 <= index < len(lines) and matches_task_line(lines[index], record, require_unchecked):
                    return index
        for index, line in enumerate(lines):
            if matches_task_line(line, record, require_unchecked):
                return index
        return None

    # ── Lookup ───────────────────────────────────────────────

    def remember(self, records: list[TaskRecord]) -> None:
        """Cache the records behind the last rendered list."""
        self._cache = {record.id: record for record in records}

    def cached(self, task_id: str) -> Optional[TaskRecord]:
        key = task_id.lower()
        if key in self._cache:
            return self._cache[key]
        for record in self._cache.values():
            if record.short_id == key:
                return record
        return None

    def find_task_by_id(self, task_id: str) -> Optional[TaskRecord]:
        key = task_id.lower()
        for record in self.collect_tasks():
            if record.id == key or record.short_id == key:
                return record
        return None

    def resolve(self, task_id: str) -> Optional[TaskRecord]:
        return self.cached(task_id) or self.find_task_by_id(task_id)

    # ── Completion ───────────────────────────────────────────

    def mark_task_complete(self, record: TaskRecord) -> bool:
        if not record.path or not self.vault.exists(record.path):
            return False
        lines = self.vault.read(record.path).split("\n")
        should_tag = self.state.task_id_tagging_mode != "never"
        id_re = task_id_tag_pattern(record.id)

        candidates: list[int] = []
        if record.line is not None:
            candidates = [
                i for i in (record.line, record.line - 1)
                if 0 <= i < len(lines) and matches_task_line(lines[i], record, False)
            ]
        for index, line in enumerate(lines):
            if (id_re.search(line) and is_task_line(line)) or matches_task_line(line, record, False):
                candidates.append(index)

        for index in candidates:
            updated = replace_checkbox(lines[index])
            if updated is None:
                continue
            if should_tag:
                updated = ensure_task_id_tag(updated, record.id)
            if parse_recurrence(updated) is not None:
                updated = upsert_recurring_completed_tag(updated, self.clock())
            lines[index] = updated
            self.vault.write(record.path, "\n".join(lines))
            self._cache.pop(record.id, None)
            log_event(self.data_dir, "task_completed", {
                "id": record.id,
                "path": record.path,
                "line": index,
                "text": record.text,
            })
            return True
        return False

    # ── Recurrence ───────────────────────────────────────────

    def sweep_recurring_tasks(self, now: Optional[int] = None) -> SweepResult:
        """Stamp and reopen completed ``#recur/`` tasks across the vault."""
        moment = self.clock() if now is None else now
        total = SweepResult(text="")
        for path in self.vault.list_markdown_files():
            text = self._read_note(path)
            if text is None or "#recur" not in text.lower():
                continue
            result = sweep_recurring_text(text, moment)
            if not result.changed:
                continue
            self.vault.write(path, result.text)
            total.stamped += result.stamped
            total.reopened += result.reopened
            log_event(self.data_dir, "recurrence_swept", {
                "path": path,
                "stamped": result.stamped,
                "reopened": result.reopened,
            })
        if total.changed:
            logger.info("Recurrence sweep: stamped=%d reopened=%d", total.stamped, total.reopened)
        return total

    # ── Adding ───────────────────────────────────────────────

    def prepare_line(self, draft: TaskLineDraft, shared: bool = False) -> str:
        """Insert the filter tag after the checkbox and mark guest tasks shared."""
        line = draft.line_text
        tag = normalize_tag(self.state.global_filter_tag)
        tag_re = tag_pattern(tag)
        if tag and tag_re is not None and not tag_re.search(line):
            line = _LEADING_CHECKBOX_RE.sub(lambda m: f"{m.group(1)} {tag} ", line, count=1)
        if shared and not has_shared_tag(line):
            line = f"{line} {SHARED_TAG}"
        return line

    def add_task_line(
        self,
        draft: TaskLineDraft,
        daily_notes: Optional[DailyNotes] = None,
        shared: bool = False,
        chat_id: Optional[int | str] = None,
    ) -> AddedTask:
        line_text = self.prepare_line(draft, shared=shared)
        path = resolve_daily_note_path(self.vault, daily_notes, self.state.daily_note_path_template)
        contents = self.vault.read(path)

        if not contents:
            prefix = ""
        elif contents.endswith("\n"):
            prefix = contents
        else:
            prefix = contents + "\n"
        index = prefix.count("\n")

        task_id = hash_task_id(f"{path}::{index}::{line_text}")
        stored = ensure_task_id_tag(line_text, task_id) if self.should_persist_ids else line_text
        self.vault.write(path, prefix + stored)

        record = to_task_record({
            "path": path,
            "line": index,
            "raw": line_text,
            "text": (get_unchecked_task_text(line_text) or draft.cleaned_text).strip(),
        })
        log_event(self.data_dir, "task_added", {"id": record.id, "path": path, "line": index}, chat_id=chat_id)
        return AddedTask(path=path, line=index, line_text=stored, record=record, draft=draft)
