"""Chat message composition.

Task lists are split into several messages so each stays under
``SAFE_MESSAGE_LENGTH``; only the first message carries the inline keyboard.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from vaultgram.core.tasks import TaskRecord, display_text

SAFE_MESSAGE_LENGTH = 3900
MAX_LINE_LENGTH = 3500

LIST_HEADER = "Unfinished tasks: {count}"
REMINDER_HEADER = "Reminders: {count}"
CONTINUED_HEADER = "Unfinished tasks (continued):"
EMPTY_LIST_TEXT = "All tasks are done."
NO_REMINDERS_TEXT = "No reminders right now."

HELP_TEXT = "\n".join([
    "Commands:",
    "/list - show unfinished tasks",
    "/reminders - show overdue tasks and tasks with active reminders",
    "/start - register this chat with the bot",
    "/help - show this message",
    "done <id> - mark a task complete",
    "",
    "Any other message is added as a new task.",
    "Add due:YYYY-MM-DD [HH:MM] or priority: high to set a due date or priority.",
])


def truncate_line(line: str, limit: int = MAX_LINE_LENGTH) -> str:
    if len(line) <= limit:
        return line
    return f"{line[:limit - 3]}..."


def build_telegram_messages(
    header: str,
    lines: list[str],
    footer: str = "",
    continued_header: str = CONTINUED_HEADER,
    limit: int = SAFE_MESSAGE_LENGTH,
) -> list[str]:
    messages: list[str] = []
    buffer = [header, ""]
    length = len("\n".join(buffer))

    def flush() -> None:
        text = "\n".join(buffer).rstrip()
        if text:
            messages.append(text)

    for line in lines:
        line = truncate_line(line)
        if length + len(line) + 1 > limit:
            flush()
            buffer = [continued_header, ""]
            length = len("\n".join(buffer))
        buffer.append(line)
        length += len(line) + 1

    if footer:
        if length + len(footer) + 1 > limit:
            flush()
            buffer = [continued_header, ""]
        buffer.append(footer)

    flush()
    return messages


def format_location(task: TaskRecord, include_file_path: bool) -> str:
    if not include_file_path or not task.path:
        return ""
    if task.line is None:
        return f" ({task.path})"
    return f" ({task.path}:{task.line + 1})"


def format_due(task: TaskRecord) -> str:
    if task.due_timestamp is None:
        return ""
    if task.due_has_time:
        return datetime.fromtimestamp(task.due_timestamp / 1000).strftime("%Y-%m-%d %H:%M")
    return datetime.fromtimestamp(task.due_timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def render_task_line(task: TaskRecord, global_tag: str = "", include_file_path: bool = True, with_due: bool = False) -> str:
    text = display_text(task.text, global_tag)
    due = f" (due {format_due(task)})" if with_due and task.due_timestamp is not None else ""
    return f"- {text}{due}{format_location(task, include_file_path)} #{task.short_id}"


def build_keyboard(tasks: list[TaskRecord]) -> dict[str, Any]:
    rows: list[list[dict[str, str]]] = [
        [{"text": f"Done #{task.short_id}", "callback_data": f"done:{task.id}"}]
        for task in tasks
    ]
    rows.append([{"text": "List", "callback_data": "list"}])
    return {"inline_keyboard": rows}


def render_task_list(
    tasks: list[TaskRecord],
    max_tasks: int = 20,
    global_tag: str = "",
    include_file_path: bool = True,
    header: Optional[str] = None,
    with_due: bool = False,
) -> tuple[list[str], Optional[dict[str, Any]]]:
    """Return ``(messages, keyboard)``; the keyboard belongs to the first message."""
    if not tasks:
        return [], None
    shown = tasks[:max(1, max_tasks)]
    lines = [render_task_line(task, global_tag, include_file_path, with_due) for task in shown]
    footer = f"...and {len(tasks) - len(shown)} more" if len(tasks) > len(shown) else ""
    title = (header or LIST_HEADER).format(count=len(tasks))
    return build_telegram_messages(title, lines, footer), build_keyboard(shown)
