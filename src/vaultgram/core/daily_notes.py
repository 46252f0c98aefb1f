"""Where tasks added from chat are written.

Resolution order for a new task line:

1. the user's path template (``{date}`` is replaced by ``YYYY-MM-DD``),
2. today's note from the daily-note helper, created through it if missing,
3. ``YYYY-MM-DD.md`` at the vault root.

Any failure in step 2 falls through to step 3.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
import posixpath
import re
from typing import Mapping, Optional, Protocol

from vaultgram.core.vault import Vault, normalize_vault_path

logger = logging.getLogger("vaultgram.daily_notes")

DEFAULT_FORMAT = "YYYY-MM-DD"

_TOKEN_RE = re.compile(r"YYYY|MM|DD")


@dataclass
class DailyNoteSettings:
    folder: str = ""
    format: str = DEFAULT_FORMAT


class DailyNotes(Protocol):
    def get_settings(self) -> Optional[DailyNoteSettings]: ...

    def get_all_notes(self) -> Mapping[str, str]:
        """ISO date (``YYYY-MM-DD``) -> vault path."""
        ...

    def create_note(self, day: date, settings: DailyNoteSettings) -> str: ...


def format_date(day: date, fmt: str) -> str:
    """Render a moment-style ``YYYY``/``MM``/``DD`` pattern."""
    tokens = {"YYYY": f"{day.year:04d}", "MM": f"{day.month:02d}", "DD": f"{day.day:02d}"}
    return _TOKEN_RE.sub(lambda m: tokens[m.group(0)], fmt)


def _format_regex(fmt: str) -> re.Pattern[str]:
    parts = []
    last = 0
    for match in _TOKEN_RE.finditer(fmt):
        parts.append(re.escape(fmt[last:match.start()]))
        token = match.group(0)
        parts.append(f"(?P<{token}>\\d{{{len(token)}}})")
        last = match.end()
    parts.append(re.escape(fmt[last:]))
    return re.compile("^" + "".join(parts) + "$")


def parse_date(value: str, fmt: str) -> Optional[date]:
    match = _format_regex(fmt).match(value)
    if not match:
        return None
    groups = match.groupdict()
    if not {"YYYY", "MM", "DD"} <= groups.keys():
        return None
    try:
        return date(int(groups["YYYY"]), int(groups["MM"]), int(groups["DD"]))
    except ValueError:
        return None


def _with_md(path: str) -> str:
    return path if path.lower().endswith(".md") else f"{path}.md"


class StaticDailyNotes:
    """Daily-note helper backed by the vault with a fixed folder and format."""

    def __init__(self, vault: Vault, folder: str = "", fmt: Optional[str] = DEFAULT_FORMAT) -> None:
        self.vault = vault
        self.folder = normalize_vault_path(folder) if folder else ""
        self.format = fmt

    def get_settings(self) -> Optional[DailyNoteSettings]:
        if not self.format:
            return None
        return DailyNoteSettings(folder=self.folder, format=self.format)

    def get_all_notes(self) -> dict[str, str]:
        settings = self.get_settings()
        if settings is None:
            return {}
        prefix = f"{settings.folder}/" if settings.folder else ""
        notes: dict[str, str] = {}
        for path in self.vault.list_markdown_files():
            if not path.startswith(prefix):
                continue
            stem = path[len(prefix):-3]
            parsed = parse_date(stem, settings.format)
            if parsed is not None:
                notes[parsed.isoformat()] = path
        return notes

    def create_note(self, day: date, settings: DailyNoteSettings) -> str:
        name = _with_md(format_date(day, settings.format))
        path = posixpath.join(settings.folder, name) if settings.folder else name
        return ensure_file(self.vault, path)


def ensure_file(vault: Vault, path: str) -> str:
    path = normalize_vault_path(path)
    if vault.exists(path):
        return path
    folder = posixpath.dirname(path)
    if folder:
        vault.create_folder(folder)
    return vault.create(path, "")


def resolve_daily_note_path(
    vault: Vault,
    daily_notes: Optional[DailyNotes],
    template: str = "",
    today: Optional[date] = None,
) -> str:
    """Return the vault path of the note new tasks go to, creating it if needed."""
    day = today or date.today()
    iso = day.isoformat()

    if template.strip():
        return ensure_file(vault, _with_md(template.strip().replace("{date}", iso)))

    if daily_notes is not None:
        try:
            settings = daily_notes.get_settings()
            if settings is not None:
                existing = daily_notes.get_all_notes().get(iso)
                if existing and vault.exists(existing):
                    return existing
                return daily_notes.create_note(day, settings)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Daily note helper failed, using %s.md: %s", iso, exc)

    return ensure_file(vault, f"{iso}.md")
