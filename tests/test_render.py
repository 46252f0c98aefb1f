from vaultgram.core.render import (
    build_keyboard,
    build_telegram_messages,
    render_task_line,
    render_task_list,
    truncate_line,
)
from vaultgram.core.tasks import TaskRecord


def _task(text: str, path: str | None = "Notes.md", line: int | None = 0) -> TaskRecord:
    return TaskRecord(id="abcdef0123", short_id="abcdef01", text=text, path=path, line=line, raw=f"- [ ] {text}")


def test_truncate_line() -> None:
    assert truncate_line("short") == "short"
    long = truncate_line("x" * 4000)
    assert len(long) == 3500
    assert long.endswith("...")


def test_messages_split_under_limit() -> None:
    lines = [f"- line {i} " + "y" * 90 for i in range(10)]
    messages = build_telegram_messages("Header", lines, footer="...and 3 more", limit=400)
    assert len(messages) > 1
    assert messages[0].startswith("Header\n\n- line 0")
    assert all(m.startswith("Unfinished tasks (continued):") for m in messages[1:])
    assert all(len(m) <= 400 for m in messages)
    assert messages[-1].endswith("...and 3 more")
    assert sum(m.count("- line") for m in messages) == 10


def test_render_task_line_strips_markers() -> None:
    task = _task("Buy milk #work #shared #taskid/abcdef0123")
    assert render_task_line(task, global_tag="work") == "- Buy milk (Notes.md:1) #abcdef01"
    assert render_task_line(_task("Loose", path=None), include_file_path=True) == "- Loose #abcdef01"
    assert render_task_line(_task("No line", line=None)) == "- No line (Notes.md) #abcdef01"
    assert render_task_line(_task("Hidden"), include_file_path=False) == "- Hidden #abcdef01"


def test_keyboard_rows() -> None:
    keyboard = build_keyboard([_task("A")])
    assert keyboard == {"inline_keyboard": [
        [{"text": "Done #abcdef01", "callback_data": "done:abcdef0123"}],
        [{"text": "List", "callback_data": "list"}],
    ]}


def test_render_empty_list() -> None:
    assert render_task_list([]) == ([], None)
