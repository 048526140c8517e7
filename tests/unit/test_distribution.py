"""
Unit tests for distribution.py - weighted bucket computation.
"""

import random

import pytest

from distribution import (
    Bucket,
    DistributionTable,
    KIND_REJECT,
    KIND_SINGLE,
    KIND_WEIGHTED,
    compute_distribution,
    effective_weight,
)


def assert_full_coverage(table: DistributionTable) -> None:
    """Non-empty buckets are contiguous, non-overlapping and cover [0, 99]."""
    covered = []
    expected_start = 0
    for bucket in table.buckets:
        if bucket.is_empty:
            continue
        assert bucket.start == expected_start
        covered.extend(range(bucket.start, bucket.end + 1))
        expected_start = bucket.end + 1
    assert covered == list(range(100))


class TestDegenerateCases:
    """Zero and one available interface."""

    def test_no_interfaces_gives_empty_table(self):
        table = compute_distribution([])
        assert table.buckets == ()
        assert table.kind == KIND_REJECT
        assert table.single_tag is None

    @pytest.mark.parametrize("weight", [-3, 0, 1, 7, 1000])
    def test_single_interface_covers_everything(self, weight):
        table = compute_distribution([("0x3e9", weight)])
        assert table.kind == KIND_SINGLE
        assert table.single_tag == "0x3e9"
        assert table.buckets == (Bucket(0, 99, "0x3e9"),)


class TestWeightedBuckets:
    """N >= 2 interfaces."""

    def test_two_equal_weights(self):
        table = compute_distribution([("A", 1), ("B", 1)])
        assert table.kind == KIND_WEIGHTED
        assert table.buckets == (Bucket(0, 50, "A"), Bucket(51, 99, "B"))

    def test_weights_two_one_one(self):
        table = compute_distribution([("A", 2), ("B", 1), ("C", 1)])
        assert table.buckets == (
            Bucket(0, 50, "A"),
            Bucket(51, 75, "B"),
            Bucket(76, 99, "C"),
        )

    def test_three_equal_weights_each_get_a_share(self):
        table = compute_distribution([("A", 1), ("B", 1), ("C", 1)])
        assert [b.width for b in table.buckets] == [34, 33, 33]
        assert_full_coverage(table)

    def test_non_positive_weights_count_as_one(self):
        assert compute_distribution([("A", 0), ("B", -5)]) == compute_distribution([("A", 1), ("B", 1)])
        assert effective_weight(0) == 1
        assert effective_weight(-1) == 1
        assert effective_weight(4) == 4

    def test_last_bucket_absorbs_remainder(self):
        table = compute_distribution([("A", 1), ("B", 2)])
        # floor(1/3 * 100) = 33
        assert table.buckets[0] == Bucket(0, 33, "A")
        assert table.buckets[-1].end == 99

    def test_tiny_weight_yields_zero_width_bucket(self):
        table = compute_distribution([("A", 200), ("B", 1), ("C", 199)])
        widths = {b.tag: b.width for b in table.buckets}
        assert widths["B"] == 0
        assert table.buckets[1].is_empty
        assert_full_coverage(table)

    def test_heavy_first_weight_leaves_last_bucket_empty(self):
        table = compute_distribution([("A", 1), ("B", 1000), ("C", 1)])
        assert table.buckets[-1].is_empty
        assert_full_coverage(table)

    def test_order_follows_input(self):
        forward = compute_distribution([("A", 3), ("B", 1)])
        backward = compute_distribution([("B", 1), ("A", 3)])
        assert [b.tag for b in forward.buckets] == ["A", "B"]
        assert [b.tag for b in backward.buckets] == ["B", "A"]

    def test_deterministic(self):
        entries = [("A", 3), ("B", 7), ("C", 11), ("D", 1)]
        first = compute_distribution(entries)
        for _ in range(20):
            assert compute_distribution(list(entries)) == first

    def test_random_weights_always_cover_range(self):
        rng = random.Random(1234)
        for _ in range(300):
            count = rng.randint(2, 8)
            entries = [(f"0x{i + 1:x}", rng.randint(-2, 500)) for i in range(count)]
            table = compute_distribution(entries)
            assert len(table.buckets) == count
            assert_full_coverage(table)

    def test_share_roughly_matches_weight(self):
        table = compute_distribution([("A", 3), ("B", 1)])
        widths = {b.tag: b.width for b in table.buckets}
        assert widths == {"A": 76, "B": 24}


class TestLookup:
    """DistributionTable.lookup and to_dict."""

    def test_lookup_boundaries(self):
        table = compute_distribution([("A", 1), ("B", 1)])
        assert table.lookup(0) == "A"
        assert table.lookup(50) == "A"
        assert table.lookup(51) == "B"
        assert table.lookup(99) == "B"
        assert table.lookup(100) is None

    def test_to_dict(self):
        table = compute_distribution([("A", 1), ("B", 1)])
        assert table.to_dict() == {
            "kind": "weighted",
            "buckets": [
                {"start": 0, "end": 50, "tag": "A"},
                {"start": 51, "end": 99, "tag": "B"},
            ],
        }
