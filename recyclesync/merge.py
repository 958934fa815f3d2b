"""Merge of local unsynced records into an owner's remote collection."""

from typing import Any, Iterable, Mapping

from recyclesync.models import DraftRecord


def merge_collections(
    remote: Mapping[str, dict[str, Any]],
    local: Iterable[DraftRecord],
) -> dict[str, dict[str, Any]]:
    """Apply local records on top of the remote collection.

    - ids only present locally are added
    - ids present on both sides take the local value (last writer wins,
      no field-level merge)
    - remote ids that were not pushed are left untouched

    Args:
        remote: Current remote collection keyed by record id
        local: Records being pushed

    Returns:
        New collection; neither input is modified
    """
    merged = {record_id: dict(item) for record_id, item in remote.items()}
    for record in local:
        merged[record.id] = record.to_remote()
    return merged


def diff_ids(
    before: Mapping[str, dict[str, Any]], after: Mapping[str, dict[str, Any]]
) -> tuple[list[str], list[str]]:
    """Return (added, replaced) ids between two collections."""
    added = [record_id for record_id in after if record_id not in before]
    replaced = [
        record_id
        for record_id in after
        if record_id in before and before[record_id] != after[record_id]
    ]
    return added, replaced
