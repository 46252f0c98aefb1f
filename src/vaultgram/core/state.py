"""Persisted bot settings.

One JSON blob under the data dir holds everything the bot changes at runtime
(chat ids, update offset, reminder timestamps) plus the user's preferences.
Keys are camelCase on disk. The runner owns the loaded :class:`BotState` and
saves it after every mutating action; every other component gets it passed in.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger("vaultgram.state")

TaskIdTaggingMode = Literal["always", "on-complete", "never"]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Blob(BaseModel):
    model_config = ConfigDict(
        alias_generator=_camel,
        populate_by_name=True,
        extra="ignore",
        validate_assignment=True,
    )


class Requestor(_Blob):
    chat_id: int
    username: str = ""
    first_seen_at: int = 0


class BotState(_Blob):
    bot_token: str = ""
    host_chat_id: str = ""
    guest_chat_ids: list[int] = Field(default_factory=list)
    requestors: list[Requestor] = Field(default_factory=list)
    tasks_query: str = "not done"
    global_filter_tag: str = ""
    daily_note_path_template: str = ""
    notify_on_startup: bool = True
    notification_interval_minutes: int = 60
    poll_interval_seconds: int = 10
    max_tasks_per_notification: int = 20
    include_file_path: bool = True
    enable_telegram_polling: bool = True
    last_update_id: int = 0
    allowed_telegram_user_ids: list[int] = Field(default_factory=list)
    task_id_tagging_mode: TaskIdTaggingMode = "always"
    last_interval_notification_sent_at: int = 0
    last_reminder_check_at: int = 0

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_chat_id(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if isinstance(data.get("hostChatId"), int):
            data = {**data, "hostChatId": str(data["hostChatId"])}
        legacy = data.get("chatId")
        if legacy and not str(data.get("hostChatId") or data.get("host_chat_id") or "").strip():
            data = dict(data)
            data["hostChatId"] = str(legacy).strip()
        return data

    @property
    def configured(self) -> bool:
        return bool(self.bot_token.strip() and self.host_chat_id.strip())

    def all_chat_ids(self) -> list[int | str]:
        """Host first, then guests, without duplicates."""
        chats: list[int | str] = []
        host = self.host_chat_id.strip()
        if host:
            chats.append(int(host) if re.fullmatch(r"-?\d+", host) else host)
        for guest in self.guest_chat_ids:
            if str(guest) != host and guest not in chats:
                chats.append(guest)
        return chats

    def add_requestor(self, chat_id: int, username: str = "", now_ms: Optional[int] = None) -> bool:
        """Record a ``/start`` sender once. Returns whether the list changed."""
        if any(r.chat_id == chat_id for r in self.requestors):
            return False
        seen_at = now_ms if now_ms is not None else int(time.time() * 1000)
        self.requestors = [*self.requestors, Requestor(chat_id=chat_id, username=username, first_seen_at=seen_at)]
        return True

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_id_list(value: str) -> list[int]:
    """``"123, 456 123"`` -> ``[123, 456]``; non-numeric entries are skipped."""
    if not value.strip():
        return []
    ids: list[int] = []
    for entry in re.split(r"[,\s]+", value):
        entry = entry.strip()
        if not re.fullmatch(r"-?\d+", entry):
            continue
        parsed = int(entry)
        if parsed not in ids:
            ids.append(parsed)
    return ids


def format_id_list(ids: list[int]) -> str:
    return ", ".join(str(i) for i in ids)


class SettingsStore:
    """Loads and saves the :class:`BotState` blob as JSON."""

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._store_path = store_path

    @property
    def path(self) -> Optional[str]:
        return self._store_path

    def load(self) -> BotState:
        if not self._store_path or not os.path.exists(self._store_path):
            return BotState()
        with open(self._store_path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed settings file %s", self._store_path)
            return BotState()
        return BotState.model_validate(raw)

    def save(self, state: BotState) -> None:
        if not self._store_path:
            return
        os.makedirs(os.path.dirname(self._store_path) or ".", exist_ok=True)
        tmp_path = f"{self._store_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(state.to_blob(), handle, indent=2)
        os.replace(tmp_path, self._store_path)
