"""Tests for merging local records into a remote collection."""

from recyclesync.merge import diff_ids, merge_collections


def test_additions_replacements_and_untouched(make_record):
    a_new = make_record("a", description="new")
    b_new = make_record("b", description="new")
    remote = {
        "a": {"id": "a", "description": "old"},
        "c": {"id": "c", "description": "old"},
    }

    merged = merge_collections(remote, [a_new, b_new])

    assert merged == {
        "a": a_new.to_remote(),
        "b": b_new.to_remote(),
        "c": {"id": "c", "description": "old"},
    }


def test_inputs_are_not_modified(make_record):
    remote = {"c": {"id": "c", "description": "old"}}

    merged = merge_collections(remote, [make_record("a")])
    merged["c"]["description"] = "changed"

    assert remote == {"c": {"id": "c", "description": "old"}}


def test_merging_same_records_twice_is_stable(make_record):
    records = [make_record("a"), make_record("b")]

    once = merge_collections({}, records)
    twice = merge_collections(once, records)

    assert once == twice


def test_diff_ids(make_record):
    before = {"a": {"id": "a", "v": 1}, "c": {"id": "c"}}
    after = {"a": {"id": "a", "v": 2}, "b": {"id": "b"}, "c": {"id": "c"}}

    added, replaced = diff_ids(before, after)

    assert added == ["b"]
    assert replaced == ["a"]
