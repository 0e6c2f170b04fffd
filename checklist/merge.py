"""
Merge policy for record collections.

Two decisions live here:

* ``resolve_pull`` decides what happens to a local collection when the cloud
  copy is fetched at session start (cloud wins whenever it has a row).
* ``merge_records`` is the record-level last-writer-wins merge used when both
  sides must be combined (backup restore, ``newest_wins`` remote apply).
"""

from dataclasses import dataclass
from typing import Iterable

from .models import RemoteSnapshot, parse_timestamp


@dataclass
class PullDecision:
    """Outcome of reconciling one collection at session start."""
    records: list
    push_local: bool
    cloud_applied: bool


def resolve_pull(local: list, remote: RemoteSnapshot) -> PullDecision:
    """Cloud wins on presence.

    Any remote row, even an empty one, replaces the local collection. Local
    data is pushed only when the cloud has no row at all.
    """
    if not remote.is_absent:
        return PullDecision(records=list(remote.records), push_local=False, cloud_applied=True)
    return PullDecision(records=list(local), push_local=bool(local), cloud_applied=False)


def merge_records(local: Iterable[dict], cloud: Iterable[dict]) -> list[dict]:
    """Merge two record sequences keyed by ``id``.

    Local records missing from the cloud are kept. When both sides have a
    record, the local one wins unless the cloud ``updatedAt`` is strictly
    newer; a missing timestamp counts as the epoch. Order of the result is
    not meaningful.
    """
    merged: dict[str, dict] = {}
    for record in cloud:
        if record and record.get("id"):
            merged[record["id"]] = record

    for record in local:
        if not record or not record.get("id"):
            continue
        cloud_record = merged.get(record["id"])
        if cloud_record is None:
            merged[record["id"]] = record
            continue
        local_time = parse_timestamp(record.get("updatedAt"))
        cloud_time = parse_timestamp(cloud_record.get("updatedAt"))
        if local_time >= cloud_time:
            merged[record["id"]] = record

    return list(merged.values())
