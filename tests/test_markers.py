from vaultgram.core.markers import (
    IntervalSpec,
    ensure_task_id_tag,
    get_recurring_completed_at,
    get_stored_task_id,
    has_shared_tag,
    has_task_id_tag,
    hash_task_id,
    normalize_tag,
    parse_recurrence,
    parse_reminders,
    parse_reminders_from_tags,
    strip_recurring_completed_tag,
    strip_task_id_tag,
    tag_pattern,
    upsert_recurring_completed_tag,
)


def test_hash_is_deterministic_and_length_suffixed() -> None:
    value = "Notes.md::0::- [ ] Ship release"
    first = hash_task_id(value)
    assert first == hash_task_id(value)
    assert first[:8] == f"{int(first[:8], 16):08x}"
    assert first[8:] == f"{len(value):x}"


def test_hash_known_value() -> None:
    # 5381 * 33 = 177573; 177573 ^ ord("a") = 0x2b5c4
    assert hash_task_id("a") == "0002b5c41"


def test_hash_counts_utf16_code_units() -> None:
    # the calendar emoji is two UTF-16 code units
    assert hash_task_id("\U0001f4c5").endswith("2")


def test_ensure_task_id_tag_is_idempotent() -> None:
    line = "- [ ] Task one"
    tagged = ensure_task_id_tag(line, "ABC123")
    assert tagged == "- [ ] Task one #taskid/abc123"
    assert ensure_task_id_tag(tagged, "ffff") == tagged


def test_task_id_tag_needs_word_boundaries() -> None:
    assert has_task_id_tag("- [ ] x #taskid/abc123")
    assert has_task_id_tag("- [ ] x #taskid/abc123.")
    assert not has_task_id_tag("- [ ] x foo#taskid/abc123")
    assert not has_task_id_tag("- [ ] x #taskid/abc123z")


def test_get_and_strip_stored_id() -> None:
    line = "- [ ] Task #taskid/DEADBEEF9 more"
    assert get_stored_task_id(line) == "deadbeef9"
    assert strip_task_id_tag(line) == "- [ ] Task more"
    assert get_stored_task_id(None) is None


def test_parse_recurrence_units() -> None:
    assert parse_recurrence("- [x] Water plants #recur/3d") == IntervalSpec(3, "d")
    assert parse_recurrence("#recur/1month") == IntervalSpec(1, "mo")
    assert parse_recurrence("#recur/2MO") == IntervalSpec(2, "mo")
    assert parse_recurrence("#recur/0d") is None
    assert parse_recurrence("no marker") is None


def test_parse_reminders_multiple() -> None:
    reminders = parse_reminders("Call mom #remind/1d #remind/2h, #remind/30m")
    assert reminders == [IntervalSpec(1, "d"), IntervalSpec(2, "h"), IntervalSpec(30, "m")]


def test_parse_reminders_from_tags_dedupes() -> None:
    tags = ["#remind/1d", "remind/1d", {"tag": "#remind/2w"}, {"name": ""}, 42]
    assert parse_reminders_from_tags(tags) == [IntervalSpec(1, "d"), IntervalSpec(2, "w")]
    assert parse_reminders_from_tags("nope") == []


def test_recurring_completed_tag_roundtrip() -> None:
    line = "- [x] Water plants #recur/1w"
    stamped = upsert_recurring_completed_tag(line, 1700000000000)
    assert stamped == "- [x] Water plants #recur/1w #recurdone/1700000000000"
    assert get_recurring_completed_at(stamped) == 1700000000000

    restamped = upsert_recurring_completed_tag(stamped, 1800000000000)
    assert restamped.count("#recurdone/") == 1
    assert get_recurring_completed_at(restamped) == 1800000000000

    assert strip_recurring_completed_tag(restamped) == line


def test_tag_helpers() -> None:
    assert normalize_tag(" work ") == "#work"
    assert normalize_tag("#work") == "#work"
    assert normalize_tag("  ") == ""
    assert tag_pattern("") is None

    pattern = tag_pattern("work")
    assert pattern is not None
    assert pattern.search("- [ ] Task #WORK")
    assert not pattern.search("- [ ] Task #workshop")


def test_has_shared_tag() -> None:
    assert has_shared_tag("- [ ] Pick up kids #shared")
    assert not has_shared_tag("- [ ] Pick up kids #sharedcal")
    assert not has_shared_tag(None)
