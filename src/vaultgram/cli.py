from __future__ import annotations

import json
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(add_completion=False, help="Telegram reminders for the tasks in a markdown vault.")

TAGGING_MODES = ("always", "on-complete", "never")


def _load_env() -> None:
    load_dotenv()


def _settings():
    from vaultgram.core.config import Settings

    _load_env()
    return Settings.from_env()


def _setup_logging(settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from vaultgram.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def _build_runner():
    from vaultgram.core.daily_notes import StaticDailyNotes
    from vaultgram.core.runner import BotRunner
    from vaultgram.core.state import SettingsStore
    from vaultgram.core.vault import FileSystemVault

    settings = _settings()
    _setup_logging(settings)
    vault = FileSystemVault(settings.vault_dir)
    daily_notes = None
    if settings.daily_notes_format:
        daily_notes = StaticDailyNotes(vault, settings.daily_notes_folder, settings.daily_notes_format)
    return BotRunner(settings, SettingsStore(settings.state_path), vault, daily_notes=daily_notes)


def _require_configured(runner) -> None:
    if not runner.state.configured:
        typer.secho(
            "Bot token or host chat id missing. Set TELEGRAM_BOT_TOKEN and run `vaultgram detect-chat`.",
            fg=typer.colors.YELLOW,
        )
        raise typer.Exit(code=1)


@app.command()
def run() -> None:
    """Start polling, reminders and the recurrence sweep."""
    runner = _build_runner()
    if not runner.state.bot_token.strip():
        typer.secho("TELEGRAM_BOT_TOKEN is not set.", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    runner.run_forever()


@app.command()
def send() -> None:
    """Send the unfinished-task list to every configured chat once."""
    runner = _build_runner()
    _require_configured(runner)
    if runner.send_notification():
        typer.echo("✅ Task list sent.")
    else:
        typer.echo("Nothing sent.")


@app.command()
def poll() -> None:
    """Fetch and handle one batch of Telegram updates."""
    runner = _build_runner()
    _require_configured(runner)
    handled = runner.poll_once()
    typer.echo("Handled updates." if handled else "No new updates.")


@app.command()
def sweep() -> None:
    """Reopen completed recurring tasks that are due again."""
    runner = _build_runner()
    result = runner.sweep_recurring(force=True)
    if result is None:
        typer.echo("Sweep skipped.")
        return
    typer.echo(f"Stamped {result.stamped}, reopened {result.reopened}.")


@app.command("detect-chat")
def detect_chat() -> None:
    """Use the latest /start message to set the host chat id."""
    runner = _build_runner()
    chat_id = runner.detect_chat_id()
    if chat_id is None:
        typer.echo("No chat found. Send /start to the bot first.")
        raise typer.Exit(code=1)
    typer.echo(f"Detected chat {chat_id}; host chat is {runner.state.host_chat_id}.")


@app.command()
def config(
    bot_token: Optional[str] = typer.Option(None, help="Telegram bot token"),
    host_chat_id: Optional[str] = typer.Option(None, help="Chat that sees every task"),
    guest_chat_ids: Optional[str] = typer.Option(None, help="Comma/space separated guest chat ids"),
    allowed_user_ids: Optional[str] = typer.Option(None, help="Comma/space separated Telegram user ids"),
    tasks_query: Optional[str] = typer.Option(None, help="Task query string"),
    tag: Optional[str] = typer.Option(None, help="Only include tasks carrying this tag"),
    daily_note_path: Optional[str] = typer.Option(None, help="Path template for new tasks, e.g. Inbox/{date}.md"),
    interval: Optional[int] = typer.Option(None, help="Digest interval in minutes (0 disables)"),
    poll_interval: Optional[int] = typer.Option(None, help="Long-poll timeout in seconds (0 disables)"),
    max_tasks: Optional[int] = typer.Option(None, help="Max tasks per message list"),
    tagging_mode: Optional[str] = typer.Option(None, help="always | on-complete | never"),
    include_file_path: Optional[bool] = typer.Option(None, "--include-file-path/--no-include-file-path"),
    notify_on_startup: Optional[bool] = typer.Option(None, "--notify-on-startup/--no-notify-on-startup"),
    polling: Optional[bool] = typer.Option(None, "--polling/--no-polling"),
) -> None:
    """Show or change the persisted bot settings."""
    from vaultgram.core.state import SettingsStore, format_id_list, parse_id_list

    settings = _settings()
    store = SettingsStore(settings.state_path)
    state = store.load()

    if tagging_mode is not None and tagging_mode not in TAGGING_MODES:
        typer.secho(f"--tagging-mode must be one of: {', '.join(TAGGING_MODES)}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    updates = {
        "bot_token": bot_token,
        "host_chat_id": host_chat_id.strip() if host_chat_id is not None else None,
        "guest_chat_ids": parse_id_list(guest_chat_ids) if guest_chat_ids is not None else None,
        "allowed_telegram_user_ids": parse_id_list(allowed_user_ids) if allowed_user_ids is not None else None,
        "tasks_query": tasks_query,
        "global_filter_tag": tag.strip() if tag is not None else None,
        "daily_note_path_template": daily_note_path,
        "notification_interval_minutes": interval,
        "poll_interval_seconds": poll_interval,
        "max_tasks_per_notification": max_tasks,
        "task_id_tagging_mode": tagging_mode,
        "include_file_path": include_file_path,
        "notify_on_startup": notify_on_startup,
        "enable_telegram_polling": polling,
    }
    changed = False
    for name, value in updates.items():
        if value is not None:
            setattr(state, name, value)
            changed = True
    if changed:
        store.save(state)
        typer.echo(f"✅ Saved {settings.state_path}")

    blob = state.to_blob()
    if blob.get("botToken"):
        blob["botToken"] = blob["botToken"][:6] + "…"
    blob["guestChatIds"] = format_id_list(state.guest_chat_ids)
    blob["allowedTelegramUserIds"] = format_id_list(state.allowed_telegram_user_ids)
    typer.echo(json.dumps(blob, indent=2, ensure_ascii=False))


@app.command()
def version() -> None:
    from vaultgram import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
