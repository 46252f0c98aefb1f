"""Vault collaborators.

The bot never owns the notes: it reads whole markdown files, computes the new
text and writes the whole file back. Files are addressed by vault-relative
POSIX paths (``Daily/2024-01-01.md``).
"""
from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger("vaultgram.vault")


class Vault(Protocol):
    def list_markdown_files(self) -> list[str]: ...

    def read(self, path: str) -> str: ...

    def write(self, path: str, text: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def create(self, path: str, text: str = "") -> str: ...

    def create_folder(self, path: str) -> None: ...


# Accepts a query string or ``{"query": q}``; returns a list or a wrapped list.
TaskQuery = Callable[[Any], Any]


def normalize_vault_path(path: str) -> str:
    cleaned = str(PurePosixPath(path.replace("\\", "/")))
    return cleaned.lstrip("/") if cleaned != "." else ""


class FileSystemVault:
    """A directory of markdown files on local disk."""

    def __init__(self, root: str) -> None:
        self.root = Path(root).expanduser().resolve()

    def _abs(self, path: str) -> Path:
        target = (self.root / normalize_vault_path(path)).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes vault: {path}")
        return target

    def list_markdown_files(self) -> list[str]:
        if not self.root.is_dir():
            logger.warning("Vault directory does not exist: %s", self.root)
            return []
        files = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            # skip .obsidian, .trash, .git
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if name.lower().endswith(".md"):
                    full = Path(dirpath) / name
                    files.append(full.relative_to(self.root).as_posix())
        return files

    def read(self, path: str) -> str:
        """Read with universal newlines so callers only ever see ``\\n``."""
        with open(self._abs(path), "r", encoding="utf-8") as handle:
            return handle.read()

    def write(self, path: str, text: str) -> None:
        target = self._abs(path)
        # keep the line endings the note already uses
        newline = "\r\n" if target.is_file() and b"\r\n" in target.read_bytes() else ""
        tmp_path = target.with_name(target.name + ".vaultgram-tmp")
        with open(tmp_path, "w", encoding="utf-8", newline=newline) as handle:
            handle.write(text)
        os.replace(tmp_path, target)

    def exists(self, path: str) -> bool:
        return self._abs(path).is_file()

    def create(self, path: str, text: str = "") -> str:
        target = self._abs(path)
        if target.exists():
            raise FileExistsError(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        return normalize_vault_path(path)

    def create_folder(self, path: str) -> None:
        self._abs(path).mkdir(parents=True, exist_ok=True)


class MemoryVault:
    """Dict-backed vault for tests and dry runs."""

    def __init__(self, files: Optional[dict[str, str]] = None) -> None:
        self.files: dict[str, str] = dict(files or {})
        self.folders: set[str] = set()

    def list_markdown_files(self) -> list[str]:
        return [path for path in self.files if path.lower().endswith(".md")]

    def read(self, path: str) -> str:
        return self.files[normalize_vault_path(path)]

    def write(self, path: str, text: str) -> None:
        key = normalize_vault_path(path)
        if key not in self.files:
            raise FileNotFoundError(path)
        self.files[key] = text

    def exists(self, path: str) -> bool:
        return normalize_vault_path(path) in self.files

    def create(self, path: str, text: str = "") -> str:
        key = normalize_vault_path(path)
        if key in self.files:
            raise FileExistsError(path)
        self.files[key] = text
        return key

    def create_folder(self, path: str) -> None:
        self.folders.add(normalize_vault_path(path))
