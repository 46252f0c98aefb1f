from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    """Process configuration. The chat-facing settings live in ``core.state``."""
    log_level: str
    log_dir: str
    data_dir: str
    vault_dir: str
    telegram_bot_token: str | None
    daily_notes_folder: str
    daily_notes_format: str | None
    recurrence_sweep_seconds: int
    reminder_tick_seconds: int
    clear_logs_on_launch: bool

    @property
    def state_path(self) -> str:
        return os.path.join(self.data_dir, "state.json")

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".vaultgram")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        return Settings(
            log_level=os.getenv("VAULTGRAM_LOG_LEVEL", "info"),
            log_dir=os.getenv("VAULTGRAM_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("VAULTGRAM_DATA_DIR") or default_data_dir,
            vault_dir=os.getenv("VAULTGRAM_VAULT_DIR") or os.getcwd(),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            daily_notes_folder=os.getenv("VAULTGRAM_DAILY_NOTES_FOLDER", ""),
            daily_notes_format=os.getenv("VAULTGRAM_DAILY_NOTES_FORMAT") or None,
            recurrence_sweep_seconds=int(os.getenv("VAULTGRAM_RECURRENCE_SWEEP_SECONDS", "60")),
            reminder_tick_seconds=int(os.getenv("VAULTGRAM_REMINDER_TICK_SECONDS", "60")),
            clear_logs_on_launch=_env_bool("VAULTGRAM_CLEAR_LOGS_ON_LAUNCH"),
        )
