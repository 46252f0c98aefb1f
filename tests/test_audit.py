import json
import os
import tempfile

from vaultgram.core.audit import log_event, read_events


def test_log_event_creates_file(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("VAULTGRAM_LOG_DIR", os.path.join(tmpdir, "logs"))
        log_event(tmpdir, "task_completed", {"id": "abc"})
        path = os.path.join(tmpdir, "audit.jsonl")
        assert os.path.exists(path)
        with open(path, "r") as f:
            line = f.readline()
        record = json.loads(line)
        assert record["type"] == "task_completed"
        assert record["payload"]["id"] == "abc"
        assert "ts" in record
        assert "chat_id" not in record


def test_log_event_with_chat_id(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("VAULTGRAM_LOG_DIR", os.path.join(tmpdir, "logs"))
        log_event(tmpdir, "task_added", {"k": "v"}, chat_id=123)
        assert read_events(tmpdir)[0]["chat_id"] == "123"


def test_log_event_appends_and_mirrors(monkeypatch) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_dir = os.path.join(tmpdir, "logs")
        monkeypatch.setenv("VAULTGRAM_LOG_DIR", log_dir)
        log_event(tmpdir, "a", {})
        log_event(tmpdir, "b", {})
        assert [e["type"] for e in read_events(tmpdir)] == ["a", "b"]
        with open(os.path.join(log_dir, "audit.jsonl"), "r") as f:
            lines = [l.strip() for l in f if l.strip()]
        assert len(lines) == 2


def test_log_event_disabled_without_data_dir() -> None:
    log_event(None, "ignored", {})
    with tempfile.TemporaryDirectory() as tmpdir:
        assert read_events(tmpdir) == []
