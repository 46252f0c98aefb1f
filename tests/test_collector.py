from datetime import date

from vaultgram.core.collector import TaskCollector
from vaultgram.core.markers import hash_task_id
from vaultgram.core.state import BotState
from vaultgram.core.tasks import build_task_line_from_input, to_task_record
from vaultgram.core.vault import FileSystemVault, MemoryVault

NOW = 1_700_000_000_000


def _collector(files: dict[str, str], task_query=None, **state_fields) -> TaskCollector:
    vault = MemoryVault(files)
    return TaskCollector(vault, BotState(**state_fields), task_query=task_query, clock=lambda: NOW)


def test_collects_filtered_tasks_and_persists_ids() -> None:
    collector = _collector(
        {"Notes.md": "- [ ] Task one #work\n- [ ] Task two #home"},
        global_filter_tag="#work",
        task_id_tagging_mode="always",
    )
    tasks = collector.collect_tasks()

    assert [t.text for t in tasks] == ["Task one #work"]
    expected = hash_task_id("Notes.md::0::- [ ] Task one #work")
    assert tasks[0].id == expected
    assert collector.vault.read("Notes.md") == (
        f"- [ ] Task one #work #taskid/{expected}\n- [ ] Task two #home"
    )


def test_collection_is_stable_after_tagging() -> None:
    collector = _collector({"Notes.md": "- [ ] Task one\n- [x] Done already\n  - [ ] Nested ⏫"})
    first = collector.collect_tasks()
    second = collector.collect_tasks()
    assert [t.id for t in first] == [t.id for t in second]
    assert [t.text for t in second] == ["Nested ⏫", "Task one"]


def test_never_mode_leaves_files_untouched() -> None:
    collector = _collector({"Notes.md": "- [ ] Task one"}, task_id_tagging_mode="never")
    collector.collect_tasks()
    assert collector.vault.read("Notes.md") == "- [ ] Task one"


def test_query_api_results_are_filtered_and_tagged() -> None:
    calls: list[object] = []

    def query(q):
        calls.append(q)
        return {"tasks": [
            {"description": "Ship it #work", "path": "Notes.md", "line": 1, "originalMarkdown": "- [ ] Ship it #work"},
            {"description": "Done #work", "status": {"type": "DONE"}},
            {"description": "Home thing", "path": "Notes.md", "line": 2},
            "junk",
        ]}

    collector = _collector(
        {"Notes.md": "# Header\n- [ ] Ship it #work\n- [ ] Home thing"},
        task_query=query,
        global_filter_tag="work",
        tasks_query="```tasks\nnot done\n```",
    )
    tasks = collector.collect_tasks()

    assert calls == ["not done"]
    assert [t.text for t in tasks] == ["Ship it #work"]
    assert f"#taskid/{tasks[0].id}" in collector.vault.read("Notes.md").split("\n")[1]


def test_query_falls_back_to_object_then_vault() -> None:
    calls: list[object] = []

    def query(q):
        calls.append(q)
        raise RuntimeError("api down")

    collector = _collector({"Notes.md": "- [ ] From vault"}, task_query=query, task_id_tagging_mode="never")
    tasks = collector.collect_tasks()
    assert calls == ["not done", {"query": "not done"}]
    assert [t.text for t in tasks] == ["From vault"]


def test_query_retries_with_object_when_string_returns_nothing() -> None:
    def query(q):
        if isinstance(q, dict):
            return [{"description": "Object query", "id": 7}]
        return []

    collector = _collector({}, task_query=query)
    assert [t.text for t in collector.collect_tasks()] == ["Object query"]


def test_mark_complete_tags_on_complete() -> None:
    line = "- [ ] Ship release"
    collector = _collector({"Notes.md": line}, task_id_tagging_mode="on-complete")
    task_id = hash_task_id(f"Notes.md::0::{line}")
    record = to_task_record({"path": "Notes.md", "line": 0, "raw": line, "text": "Ship release"})
    assert record.id == task_id

    assert collector.mark_task_complete(record) is True
    assert collector.vault.read("Notes.md") == f"- [x] Ship release #taskid/{task_id}"
    assert collector.mark_task_complete(record) is False


def test_mark_complete_finds_moved_line_by_id_tag() -> None:
    collector = _collector({"Notes.md": "intro\nmore\n- [ ] Moved #taskid/abc123"})
    record = to_task_record({"path": "Notes.md", "line": 0, "raw": "- [ ] Moved #taskid/abc123", "text": "Moved"})
    assert record.id == "abc123"
    assert collector.mark_task_complete(record) is True
    assert collector.vault.read("Notes.md").endswith("- [x] Moved #taskid/abc123")


def test_mark_complete_stamps_recurring() -> None:
    line = "- [ ] Water plants #recur/1w"
    collector = _collector({"Plants.md": line}, task_id_tagging_mode="never")
    record = collector.collect_tasks()[0]
    assert collector.mark_task_complete(record) is True
    assert collector.vault.read("Plants.md") == f"- [x] Water plants #recur/1w #recurdone/{NOW}"


def test_find_task_by_short_id_and_cache() -> None:
    collector = _collector({"Notes.md": "- [ ] Alpha\n- [ ] Beta"})
    tasks = collector.collect_tasks()
    beta = next(t for t in tasks if t.text == "Beta")
    assert collector.find_task_by_id(beta.short_id).id == beta.id
    assert collector.find_task_by_id("ffffffff") is None

    collector.remember(tasks)
    assert collector.cached(beta.short_id) is beta
    assert collector.resolve(beta.id.upper()) is beta


def test_sweep_recurring_tasks_across_files() -> None:
    collector = _collector({
        "A.md": "- [x] Water #recur/1d",
        "B.md": "- [x] Plain",
        "C.md": f"- [x] Rent #recur/1d #recurdone/{NOW - 2 * 86_400_000}",
    })
    result = collector.sweep_recurring_tasks()
    assert (result.stamped, result.reopened) == (1, 1)
    assert collector.vault.read("A.md") == f"- [x] Water #recur/1d #recurdone/{NOW}"
    assert collector.vault.read("B.md") == "- [x] Plain"
    assert collector.vault.read("C.md") == "- [ ] Rent #recur/1d"


def test_undecodable_note_is_skipped(tmp_path) -> None:
    (tmp_path / "Good.md").write_text("- [ ] Water plants #recur/1d\n", encoding="utf-8")
    (tmp_path / "Legacy.md").write_bytes(b"caf\xe9 notes\n")
    collector = TaskCollector(FileSystemVault(str(tmp_path)), BotState(), clock=lambda: NOW)

    assert [t.text for t in collector.collect_tasks()] == ["Water plants #recur/1d"]
    assert not collector.sweep_recurring_tasks().changed
    assert (tmp_path / "Legacy.md").read_bytes() == b"caf\xe9 notes\n"


def test_add_task_line_to_existing_daily_note() -> None:
    today = date.today().isoformat()
    collector = _collector({f"{today}.md": ""}, global_filter_tag="#work", task_id_tagging_mode="always")
    added = collector.add_task_line(build_task_line_from_input("Buy milk"))

    line_text = "- [ ] #work Buy milk"
    task_id = hash_task_id(f"{today}.md::0::{line_text}")
    assert added.path == f"{today}.md"
    assert added.line == 0
    assert added.record.id == task_id
    assert collector.vault.read(f"{today}.md") == f"{line_text} #taskid/{task_id}"


def test_add_task_line_appends_after_content_and_marks_shared() -> None:
    collector = _collector({"Inbox.md": "# Inbox"}, daily_note_path_template="Inbox", task_id_tagging_mode="never")
    added = collector.add_task_line(build_task_line_from_input("Pick up kids"), shared=True)
    assert added.line == 1
    assert added.shared
    assert collector.vault.read("Inbox.md") == "# Inbox\n- [ ] Pick up kids #shared"
