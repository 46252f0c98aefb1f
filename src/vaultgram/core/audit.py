from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from typing import Any, Dict, Optional

from vaultgram.core.logging_config import append_to_file, get_audit_log_path


def log_event(
    data_dir: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    chat_id: Optional[int | str] = None,
) -> None:
    """Append one vault-mutation record to ``<data_dir>/audit.jsonl``.

    A ``None`` data dir disables the trail (tests, one-shot CLI runs).
    """
    if not data_dir:
        return
    os.makedirs(data_dir, exist_ok=True)
    path = os.path.join(data_dir, "audit.jsonl")
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "type": event_type,
        "payload": payload,
    }
    if chat_id is not None:
        record["chat_id"] = str(chat_id)
    line = json.dumps(record, ensure_ascii=False)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")
    # Mirror to centralized audit log
    try:
        central = get_audit_log_path()
        if os.path.abspath(central) != os.path.abspath(path):
            append_to_file(central, line)
    except Exception:  # noqa: BLE001
        pass


def read_events(data_dir: str) -> list[Dict[str, Any]]:
    path = os.path.join(data_dir, "audit.jsonl")
    if not os.path.exists(path):
        return []
    events = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events
