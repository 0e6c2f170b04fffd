"""
Merge Policy Tests

Record-level last-writer-wins merge and the cloud-wins-on-presence pull.
"""

from checklist.merge import merge_records, resolve_pull
from checklist.models import RemoteSnapshot, parse_timestamp, EPOCH

from conftest import task

T = "2024-05-01T10:00:00+00:00"
T_PLUS_1 = "2024-05-01T10:00:01+00:00"


class TestMergeRecords:
    """Tests for merge_records."""

    def test_tie_keeps_local_fields(self):
        """Equal ids and timestamps: local field values are kept."""
        local = [task("a", "local text", updated_at=T)]
        cloud = [task("a", "cloud text", updated_at=T)]

        merged = merge_records(local, cloud)

        assert merged == [task("a", "local text", updated_at=T)]

    def test_newer_record_wins_from_either_side(self):
        """T+1 beats T whether it is local or cloud."""
        newer_cloud = merge_records(
            [task("a", "old", updated_at=T)],
            [task("a", "new", updated_at=T_PLUS_1)],
        )
        newer_local = merge_records(
            [task("a", "new", updated_at=T_PLUS_1)],
            [task("a", "old", updated_at=T)],
        )

        assert newer_cloud[0]["text"] == "new"
        assert newer_local[0]["text"] == "new"

    def test_missing_timestamp_counts_as_epoch(self):
        merged = merge_records(
            [task("a", "undated")],
            [task("a", "dated", updated_at=T)],
        )
        assert merged[0]["text"] == "dated"

    def test_both_undated_local_wins(self):
        merged = merge_records([task("a", "local")], [task("a", "cloud")])
        assert merged[0]["text"] == "local"

    def test_union_of_disjoint_ids(self):
        merged = merge_records([task("a")], [task("b")])
        assert sorted(r["id"] for r in merged) == ["a", "b"]

    def test_records_without_id_are_dropped(self):
        merged = merge_records([{"text": "no id"}], [{"id": ""}, task("b")])
        assert [r["id"] for r in merged] == ["b"]

    def test_merge_is_idempotent(self):
        local = [task("a", "x", updated_at=T), task("c")]
        cloud = [task("a", "y", updated_at=T_PLUS_1), task("b")]

        once = merge_records(local, cloud)
        twice = merge_records(once, cloud)

        assert sorted(once, key=lambda r: r["id"]) == sorted(twice, key=lambda r: r["id"])


class TestResolvePull:
    """Tests for the session-start pull decision."""

    def test_present_cloud_replaces_local(self):
        local = [task("a"), task("b")]
        remote = RemoteSnapshot.from_payload([task("z")])

        decision = resolve_pull(local, remote)

        assert decision.records == [task("z")]
        assert decision.cloud_applied
        assert not decision.push_local

    def test_empty_cloud_still_wins(self):
        decision = resolve_pull([task("a"), task("b"), task("c")], RemoteSnapshot.from_payload([]))

        assert decision.records == []
        assert decision.cloud_applied
        assert not decision.push_local

    def test_absent_cloud_keeps_and_pushes_local(self):
        local = [task("a")]
        decision = resolve_pull(local, RemoteSnapshot.absent())

        assert decision.records == local
        assert decision.push_local
        assert not decision.cloud_applied

    def test_absent_cloud_with_empty_local_pushes_nothing(self):
        decision = resolve_pull([], RemoteSnapshot.absent())
        assert decision.records == []
        assert not decision.push_local


class TestTimestamps:
    """Tests for timestamp parsing used by the merge."""

    def test_z_suffix(self):
        assert parse_timestamp("2024-05-01T10:00:00Z") == parse_timestamp(T)

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-05-01T10:00:00") == parse_timestamp(T)

    def test_garbage_is_epoch(self):
        assert parse_timestamp("yesterday") == EPOCH
        assert parse_timestamp(None) == EPOCH
        assert parse_timestamp(12345) == EPOCH
