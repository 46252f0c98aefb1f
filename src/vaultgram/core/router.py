"""Telegram update dispatcher.

Classifies each inbound update (inline-button callback, slash command,
``done <id>``, free text), checks the sender's role and routes it:

    callback "list"         resend the list to that chat
    callback "done:<id>"    complete the task, resend the list
    /start                  remember the chat as a requestor, reply with its id
    /list /reminders /help  rendered replies
    done <id>               same completion path as the callback
    anything else           add a task to today's note

Chats resolve to ``host`` (every task) or ``guest`` (``#shared`` tasks only).
Messages from any other chat are dropped; callbacks from them are answered
"Unauthorized".
"""
from __future__ import annotations

import logging
import re
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from vaultgram.core.collector import AddedTask, TaskCollector
from vaultgram.core.daily_notes import DailyNotes
from vaultgram.core.logging_config import log_command
from vaultgram.core.reminders import is_reminder_active, is_reminder_eligible
from vaultgram.core.render import (
    EMPTY_LIST_TEXT,
    HELP_TEXT,
    NO_REMINDERS_TEXT,
    REMINDER_HEADER,
    SAFE_MESSAGE_LENGTH,
    render_task_list,
)
from vaultgram.core.state import BotState
from vaultgram.core.tasks import TaskRecord, build_task_line_from_input
from vaultgram.integrations.telegram import TelegramClient

logger = logging.getLogger("vaultgram.router")

T = TypeVar("T")

HOST = "host"
GUEST = "guest"
UNKNOWN = "unknown"

LIST_RE = re.compile(r"^\s*/list(?:@\S+)?\s*$", re.IGNORECASE)
REMINDERS_RE = re.compile(r"^\s*/reminders(?:@\S+)?\s*$", re.IGNORECASE)
HELP_RE = re.compile(r"^\s*/help(?:@\S+)?\s*$", re.IGNORECASE)
START_RE = re.compile(r"^\s*/start\b", re.IGNORECASE)
DONE_RE = re.compile(r"^\s*done\s+([a-f0-9]+)\s*$", re.IGNORECASE)
DONE_CALLBACK_PREFIX = "done:"

COMPLETED = "completed"
NOT_FOUND = "not_found"
UNAUTHORIZED = "unauthorized"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Inbound:
    """One update flattened to the fields the dispatcher uses."""
    update_id: int
    kind: str                  # "callback" | "message"
    chat_id: Optional[int]
    user_id: Optional[int]
    username: str = ""
    is_bot: bool = False
    text: str = ""             # message text, or callback data
    callback_id: Optional[str] = None


def parse_update(update: dict[str, Any]) -> Optional[Inbound]:
    update_id = int(update.get("update_id") or 0)
    callback = update.get("callback_query")
    if isinstance(callback, dict):
        sender = callback.get("from") or {}
        chat = (callback.get("message") or {}).get("chat") or {}
        return Inbound(
            update_id=update_id,
            kind="callback",
            chat_id=chat.get("id"),
            user_id=sender.get("id"),
            username=sender.get("username") or "",
            is_bot=bool(sender.get("is_bot")),
            text=callback.get("data") or "",
            callback_id=callback.get("id"),
        )
    message = update.get("message")
    if isinstance(message, dict):
        sender = message.get("from") or {}
        chat = message.get("chat") or {}
        return Inbound(
            update_id=update_id,
            kind="message",
            chat_id=chat.get("id"),
            user_id=sender.get("id"),
            username=sender.get("username") or chat.get("username") or "",
            is_bot=bool(sender.get("is_bot")),
            text=message.get("text") or "",
        )
    return None


def resolve_role(state: BotState, chat_id: Optional[int | str]) -> str:
    if chat_id is None:
        return UNKNOWN
    host = state.host_chat_id.strip()
    if host and str(chat_id) == host:
        return HOST
    if any(str(guest) == str(chat_id) for guest in state.guest_chat_ids):
        return GUEST
    return UNKNOWN


def is_allowed_user(state: BotState, user_id: Optional[int]) -> bool:
    if user_id is None:
        return False
    allowed = state.allowed_telegram_user_ids
    return not allowed or user_id in allowed


def tasks_for_role(tasks: list[TaskRecord], role: str) -> list[TaskRecord]:
    if role == HOST:
        return list(tasks)
    if role == GUEST:
        return [task for task in tasks if task.shared]
    return []


def safe_telegram_call(label: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Run a Telegram call, logging instead of raising. ``None`` means it failed."""
    try:
        result = func(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Telegram %s failed: %s", label, exc)
        return None
    return True if result is None else result  # type: ignore[return-value]


def error_location(exc: BaseException) -> str:
    """``file:line in function`` of the innermost frame, or ``""``."""
    frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    if not frames:
        return ""
    frame = frames[-1]
    filename = frame.filename.replace("\\", "/").rsplit("/", 1)[-1]
    return f"{filename}:{frame.lineno} in {frame.name}"


class Dispatcher:
    def __init__(
        self,
        client: TelegramClient,
        collector: TaskCollector,
        state: BotState,
        daily_notes: Optional[DailyNotes] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.client = client
        self.collector = collector
        self.state = state
        self.daily_notes = daily_notes
        self.clock = clock

    # ── Batch ────────────────────────────────────────────────

    def process_updates(self, updates: list[dict[str, Any]]) -> bool:
        """Handle a ``getUpdates`` batch in arrival order.

        Returns whether ``lastUpdateId`` advanced; the caller persists it.
        A failing update is logged and skipped so the batch is never replayed.
        """
        latest = self.state.last_update_id
        for update in updates:
            latest = max(latest, int(update.get("update_id") or 0))
            try:
                self.handle_update(update)
            except Exception as exc:  # noqa: BLE001
                logger.error("Update %s failed: %s", update.get("update_id"), exc, exc_info=True)
        if latest != self.state.last_update_id:
            self.state.last_update_id = latest
            return True
        return False

    def handle_update(self, update: dict[str, Any]) -> None:
        inbound = parse_update(update)
        if inbound is None:
            return
        if inbound.is_bot:
            logger.debug("Ignoring update %s from a bot", inbound.update_id)
            return
        if inbound.kind == "callback":
            self._handle_callback(inbound)
        else:
            self._handle_message(inbound)

    # ── Callbacks ────────────────────────────────────────────

    def _handle_callback(self, inbound: Inbound) -> None:
        role = resolve_role(self.state, inbound.chat_id)
        log_command(inbound.chat_id or "", inbound.user_id, inbound.text, "callback", role)
        callback_id = inbound.callback_id or ""
        if inbound.chat_id is None or role == UNKNOWN or not is_allowed_user(self.state, inbound.user_id):
            safe_telegram_call("answer callback query", self.client.answer_callback_query, callback_id, "Unauthorized")
            return

        if inbound.text == "list":
            self.send_task_list(inbound.chat_id, role)
            safe_telegram_call("answer callback query", self.client.answer_callback_query, callback_id, "Sent task list")
            return

        if inbound.text.startswith(DONE_CALLBACK_PREFIX):
            task_id = inbound.text[len(DONE_CALLBACK_PREFIX):].strip()
            outcome = self.complete_task(task_id, role)
            if outcome == UNAUTHORIZED:
                safe_telegram_call("answer callback query", self.client.answer_callback_query, callback_id, "Unauthorized")
                return
            answer = "Task marked complete" if outcome == COMPLETED else "Task not found"
            safe_telegram_call("answer callback query", self.client.answer_callback_query, callback_id, answer)
            self.send_task_list(inbound.chat_id, role)
            return

        safe_telegram_call("answer callback query", self.client.answer_callback_query, callback_id)

    # ── Messages ─────────────────────────────────────────────

    def _handle_message(self, inbound: Inbound) -> None:
        text = inbound.text
        role = resolve_role(self.state, inbound.chat_id)
        if text.strip():
            command_type = "slash" if text.strip().startswith("/") else "text"
            log_command(inbound.chat_id or "", inbound.user_id, text, command_type, role)

        if inbound.chat_id is None:
            return

        if START_RE.match(text):
            self._cmd_start(inbound.chat_id, inbound.username, role)
            return

        if role == UNKNOWN or not is_allowed_user(self.state, inbound.user_id):
            logger.debug("Dropping message from unauthorized chat %s", inbound.chat_id)
            return

        if LIST_RE.match(text):
            self.send_task_list(inbound.chat_id, role)
            return
        if REMINDERS_RE.match(text):
            self.send_reminders(inbound.chat_id, role)
            return
        if HELP_RE.match(text):
            safe_telegram_call("send message", self.client.send_message, inbound.chat_id, HELP_TEXT)
            return

        done = DONE_RE.match(text)
        if done:
            self._cmd_done(inbound.chat_id, done.group(1), role)
            return

        stripped = text.strip()
        if not stripped or stripped.startswith("/"):
            return
        self.add_task_from_telegram(stripped, inbound.chat_id, role)

    def _cmd_start(self, chat_id: int, username: str, role: str) -> None:
        if self.state.add_requestor(chat_id, username, self.clock()):
            logger.info("New requestor: chat %s (%s)", chat_id, username or "no username")
        if role == UNKNOWN:
            reply = f"Your chat id is {chat_id}. Ask the vault owner to add it."
        else:
            reply = f"Your chat id is {chat_id}. Send /help for commands."
        safe_telegram_call("send message", self.client.send_message, chat_id, reply)

    def _cmd_done(self, chat_id: int, task_id: str, role: str) -> None:
        outcome = self.complete_task(task_id, role)
        if outcome == COMPLETED:
            self.send_task_list(chat_id, role)
        elif outcome == UNAUTHORIZED:
            safe_telegram_call("send message", self.client.send_message, chat_id, "Unauthorized")
        else:
            safe_telegram_call("send message", self.client.send_message, chat_id, f"Task not found for ID {task_id}")

    # ── Actions ──────────────────────────────────────────────

    def complete_task(self, task_id: str, role: str) -> str:
        """Check off a task by full or short id, honoring guest scope."""
        if role not in (HOST, GUEST):
            return UNAUTHORIZED
        record = self.collector.resolve(task_id)
        if record is None:
            logger.warning("Task not found for ID %s", task_id)
            return NOT_FOUND
        if role == GUEST and not record.shared:
            logger.warning("Guest tried to complete non-shared task %s", record.short_id)
            return UNAUTHORIZED
        if not self.collector.mark_task_complete(record):
            logger.warning("Could not mark task %s complete (line moved or already done)", record.short_id)
            return NOT_FOUND
        logger.info("Task marked complete: %s", record.text)
        return COMPLETED

    def add_task_from_telegram(self, text: str, chat_id: int | str, role: str) -> Optional[AddedTask]:
        try:
            draft = build_task_line_from_input(text)
            added = self.collector.add_task_line(
                draft,
                self.daily_notes,
                shared=(role == GUEST),
                chat_id=chat_id,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to add task from chat %s: %s", chat_id, exc, exc_info=True)
            location = error_location(exc)
            message = f"Failed to add task: {exc}"
            if location:
                message += f" ({location})"
            safe_telegram_call("send message", self.client.send_message, chat_id, message[:SAFE_MESSAGE_LENGTH])
            return None

        logger.info("Added task %s to %s:%d", added.record.short_id, added.path, added.line + 1)
        ack = f"Added task: {draft.cleaned_text} #{added.record.short_id}"
        safe_telegram_call("send message", self.client.send_message, chat_id, ack)
        if added.shared:
            self.broadcast_task_list()
        return added

    # ── Sending ──────────────────────────────────────────────

    def send_messages(self, chat_id: int | str, messages: list[str], keyboard: Optional[dict[str, Any]] = None) -> bool:
        """Send in order; stop at the first failure. Only the first gets the keyboard."""
        for index, text in enumerate(messages):
            markup = keyboard if index == 0 else None
            if safe_telegram_call("send message", self.client.send_message, chat_id, text, markup) is None:
                if index > 0:
                    logger.warning("Partial delivery to %s: %d of %d messages sent", chat_id, index, len(messages))
                return False
        return True

    def send_task_list(
        self,
        chat_id: int | str,
        role: str,
        tasks: Optional[list[TaskRecord]] = None,
        allow_empty: bool = True,
    ) -> bool:
        all_tasks = self.collector.collect_tasks() if tasks is None else tasks
        self.collector.remember(all_tasks)
        scoped = tasks_for_role(all_tasks, role)
        if not scoped:
            if not allow_empty:
                return False
            return safe_telegram_call("send message", self.client.send_message, chat_id, EMPTY_LIST_TEXT) is not None
        messages, keyboard = render_task_list(
            scoped,
            max_tasks=self.state.max_tasks_per_notification,
            global_tag=self.state.global_filter_tag,
            include_file_path=self.state.include_file_path,
        )
        return self.send_messages(chat_id, messages, keyboard)

    def broadcast_task_list(self, tasks: Optional[list[TaskRecord]] = None, allow_empty: bool = True) -> bool:
        """Send the list to the host and every guest, each scoped by role."""
        all_tasks = self.collector.collect_tasks() if tasks is None else tasks
        sent = False
        for chat_id in self.state.all_chat_ids():
            role = resolve_role(self.state, chat_id)
            if self.send_task_list(chat_id, role, all_tasks, allow_empty=allow_empty):
                sent = True
        return sent

    def send_reminders(self, chat_id: int | str, role: str, now: Optional[int] = None) -> bool:
        moment = self.clock() if now is None else now
        all_tasks = self.collector.collect_tasks()
        self.collector.remember(all_tasks)
        active = [task for task in tasks_for_role(all_tasks, role) if is_reminder_active(task, moment)]
        if not active:
            return safe_telegram_call("send message", self.client.send_message, chat_id, NO_REMINDERS_TEXT) is not None
        messages, keyboard = render_task_list(
            active,
            max_tasks=self.state.max_tasks_per_notification,
            global_tag=self.state.global_filter_tag,
            include_file_path=self.state.include_file_path,
            header=REMINDER_HEADER,
            with_due=True,
        )
        return self.send_messages(chat_id, messages, keyboard)

    def send_digest(self, tasks: list[TaskRecord], now: int, last_checked: int) -> tuple[bool, bool]:
        """Periodic digest: newly due reminders, then the open-task list.

        Returns ``(ok, sent)``. ``ok`` is false if any send failed; ``sent``
        is true if at least one message went out.
        """
        self.collector.remember(tasks)
        ok = True
        sent = False
        for chat_id in self.state.all_chat_ids():
            scoped = tasks_for_role(tasks, resolve_role(self.state, chat_id))
            if not scoped:
                continue
            due = [task for task in scoped if is_reminder_eligible(task, last_checked, now)]
            if due:
                messages, keyboard = render_task_list(
                    due,
                    max_tasks=self.state.max_tasks_per_notification,
                    global_tag=self.state.global_filter_tag,
                    include_file_path=self.state.include_file_path,
                    header=REMINDER_HEADER,
                    with_due=True,
                )
                if not self.send_messages(chat_id, messages, keyboard):
                    ok = False
                    continue
                sent = True
            if self.send_task_list(chat_id, resolve_role(self.state, chat_id), tasks, allow_empty=False):
                sent = True
            else:
                ok = False
        return ok, sent
