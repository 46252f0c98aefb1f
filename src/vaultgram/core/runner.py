"""Service orchestration.

``BotRunner`` owns the loaded :class:`BotState` and wires everything else:

* a poll thread: ``getUpdates`` -> dispatcher -> save, with exponential
  backoff on consecutive failures,
* a reminder job that sends the periodic digest when the interval is due,
* a recurrence job that reopens completed ``#recur/`` tasks,
* a one-shot startup notification.

All vault and settings mutation happens under one ``RLock``. The send, poll
and sweep guards skip a run that would overlap a previous one.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from vaultgram.core.collector import TaskCollector
from vaultgram.core.config import Settings
from vaultgram.core.daily_notes import DailyNotes
from vaultgram.core.reminders import SweepResult, is_interval_due
from vaultgram.core.router import Dispatcher, START_RE
from vaultgram.core.scheduler import OverlapGuard, Scheduler, backoff_ms
from vaultgram.core.state import BotState, SettingsStore
from vaultgram.core.vault import TaskQuery, Vault
from vaultgram.integrations.telegram import TelegramClient

logger = logging.getLogger("vaultgram.runner")

STARTUP_ATTEMPTS = 4
STARTUP_RETRY_SECONDS = 1.5
IDLE_WAIT_SECONDS = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class BotRunner:
    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        vault: Vault,
        daily_notes: Optional[DailyNotes] = None,
        task_query: Optional[TaskQuery] = None,
        client: Optional[TelegramClient] = None,
        clock: Callable[[], int] = _now_ms,
        jitter: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.state: BotState = store.load()
        if not self.state.bot_token.strip() and settings.telegram_bot_token:
            self.state.bot_token = settings.telegram_bot_token
        self.clock = clock
        self.jitter = jitter
        self.client = client or TelegramClient(token=self.state.bot_token)
        self.collector = TaskCollector(vault, self.state, task_query, data_dir=settings.data_dir, clock=clock)
        self.dispatcher = Dispatcher(self.client, self.collector, self.state, daily_notes, clock=clock)
        self.scheduler = Scheduler()

        self.lock = threading.RLock()
        self._send_guard = OverlapGuard("send")
        self._poll_guard = OverlapGuard("poll")
        self._sweep_guard = OverlapGuard("sweep")
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._error_streak = 0
        self._last_sweep_at = 0

    def save(self) -> None:
        with self.lock:
            self.store.save(self.state)

    # ── Polling ──────────────────────────────────────────────

    def poll_once(self) -> bool:
        """One ``getUpdates`` round. Returns whether a batch was handled.

        Telegram and vault errors propagate so the loop can back off.
        """
        state = self.state
        if not state.enable_telegram_polling or not state.configured or state.poll_interval_seconds <= 0:
            return False
        with self._poll_guard as acquired:
            if not acquired:
                return False
            offset = state.last_update_id + 1
            updates = self.client.get_updates(offset, max(1, state.poll_interval_seconds))
            if not updates:
                return False
            with self.lock:
                if self.dispatcher.process_updates(updates):
                    self.save()
            return True

    def next_poll_delay(self, failed: bool) -> float:
        """Seconds to wait before the next poll; updates the failure streak."""
        if not failed:
            self._error_streak = 0
            return 0.0
        self._error_streak += 1
        return backoff_ms(self._error_streak - 1, self.jitter) / 1000

    def _poll_loop(self) -> None:
        logger.info("Telegram polling started")
        while not self._stop_event.is_set():
            state = self.state
            if not state.enable_telegram_polling or not state.configured:
                self._stop_event.wait(IDLE_WAIT_SECONDS)
                continue
            try:
                self.poll_once()
                delay = self.next_poll_delay(failed=False)
            except Exception as exc:  # noqa: BLE001
                delay = self.next_poll_delay(failed=True)
                logger.error("Telegram polling error (streak %d, retry in %.1fs): %s", self._error_streak, delay, exc)
            if delay:
                self._stop_event.wait(delay)
        logger.info("Telegram polling stopped")

    # ── Notifications ────────────────────────────────────────

    def send_digest_if_due(self, now: Optional[int] = None) -> bool:
        """Send the periodic digest when the notification interval has elapsed.

        The check timestamp advances whenever every send succeeded, even if
        nothing was due; the sent timestamp only when a message went out.
        """
        if not self.state.configured:
            return False
        moment = self.clock() if now is None else now
        with self._send_guard as acquired:
            if not acquired:
                return False
            with self.lock:
                state = self.state
                if not is_interval_due(
                    moment,
                    state.notification_interval_minutes,
                    state.last_reminder_check_at,
                    state.last_interval_notification_sent_at,
                ):
                    return False
                tasks = self.collector.collect_tasks()
                ok, sent = self.dispatcher.send_digest(tasks, moment, state.last_reminder_check_at)
                if not ok:
                    logger.warning("Digest send failed; will retry on the next tick")
                    return sent
                state.last_reminder_check_at = moment
                if sent:
                    state.last_interval_notification_sent_at = moment
                self.save()
                return sent

    def send_notification(self, allow_empty: bool = True) -> bool:
        """Send the current list to every configured chat now."""
        if not self.state.configured:
            logger.warning("Telegram bot token or host chat id is missing.")
            return False
        with self._send_guard as acquired:
            if not acquired:
                return False
            with self.lock:
                return self.dispatcher.broadcast_task_list(allow_empty=allow_empty)

    def send_startup_notification(self, sleep: Optional[Callable[[float], None]] = None) -> bool:
        """Send the list at startup, retrying while the task index is still empty."""
        if not self.state.configured:
            return False
        wait = sleep or self._stop_event.wait
        for attempt in range(STARTUP_ATTEMPTS):
            with self.lock:
                tasks = self.collector.collect_tasks()
                if tasks or attempt == STARTUP_ATTEMPTS - 1:
                    return self.dispatcher.broadcast_task_list(tasks, allow_empty=False)
            wait(STARTUP_RETRY_SECONDS)
        return False

    # ── Recurrence ───────────────────────────────────────────

    def sweep_recurring(self, now: Optional[int] = None, force: bool = False) -> Optional[SweepResult]:
        moment = self.clock() if now is None else now
        min_interval_ms = max(1000, self.settings.recurrence_sweep_seconds * 1000 // 2)
        if not force and self._last_sweep_at and moment - self._last_sweep_at < min_interval_ms:
            return None
        with self._sweep_guard as acquired:
            if not acquired:
                return None
            with self.lock:
                self._last_sweep_at = moment
                return self.collector.sweep_recurring_tasks(moment)

    # ── Chat id detection ────────────────────────────────────

    def detect_chat_id(self) -> Optional[int]:
        """Pick the host chat from pending updates, preferring the latest ``/start``."""
        if not self.state.bot_token.strip():
            logger.warning("Telegram bot token is missing.")
            return None
        updates = self.client.get_updates(0, 0)
        if not updates:
            logger.warning("No Telegram updates found. Send /start to the bot first.")
            return None

        with self.lock:
            state = self.state
            latest = state.last_update_id
            detected: Optional[int] = None
            start_chat: Optional[int] = None
            for update in sorted(updates, key=lambda u: int(u.get("update_id") or 0)):
                latest = max(latest, int(update.get("update_id") or 0))
                message: dict[str, Any] = update.get("message") or {}
                message_chat = (message.get("chat") or {}).get("id")
                callback_chat = (((update.get("callback_query") or {}).get("message") or {}).get("chat") or {}).get("id")
                if message.get("text") and START_RE.match(message["text"]) and message_chat is not None:
                    start_chat = message_chat
                    sender = message.get("from") or {}
                    state.add_requestor(message_chat, sender.get("username") or "", self.clock())
                if message_chat is not None:
                    detected = message_chat
                elif callback_chat is not None:
                    detected = callback_chat

            resolved = start_chat if start_chat is not None else detected
            state.last_update_id = latest
            if resolved is None:
                logger.warning("No chat id found in updates.")
                self.save()
                return None
            if start_chat is None:
                logger.warning("No /start message found. Using latest chat id from updates.")
            if not state.host_chat_id.strip():
                state.host_chat_id = str(resolved)
                logger.info("Telegram host chat id set to %s", resolved)
            self.save()
            return resolved

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        self._stop_event.clear()
        if self.state.bot_token.strip() and not self.state.host_chat_id.strip():
            try:
                self.detect_chat_id()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Chat id detection failed: %s", exc)

        self.scheduler.every(
            "recurrence-sweep",
            self.settings.recurrence_sweep_seconds,
            self.sweep_recurring,
            run_immediately=True,
        )
        self.scheduler.every("reminders", self.settings.reminder_tick_seconds, self.send_digest_if_due)
        self.scheduler.start()

        if self.state.notify_on_startup and self.state.configured:
            self.scheduler.run_once_after(0, self.send_startup_notification, name="startup-notification")

        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True, name="telegram-poller")
        self._poll_thread.start()
        logger.info("vaultgram started (vault=%s)", self.settings.vault_dir)

    def stop(self) -> None:
        self._stop_event.set()
        self.scheduler.stop()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=5)
        logger.info("vaultgram stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()
