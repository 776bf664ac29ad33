"""
Property-based tests for the Ranking Query Interface and the Deduplicator.

Uses Hypothesis for property-based testing.
"""

import io

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from range_finder.deduplicator import Deduplicator
from range_finder.event_logger import EventLogger
from range_finder.models import NormalizedRecord, RangeView, RawRecord
from range_finder.normalizer import RecordNormalizer
from range_finder.ranking import RankingService
from range_finder.store import InMemoryAggregationStore, sort_range_views


# Strategies for generating test data

@st.composite
def range_view_strategy(draw) -> RangeView:
    return RangeView(
        name=draw(st.text(alphabet="ABCDEFGH 0123", min_size=1, max_size=8)),
        source_key="Germany",
        calls=draw(st.integers(min_value=1, max_value=20)),
        cli_count=draw(st.integers(min_value=1, max_value=5)),
        last_seen_at_ms=draw(st.integers(min_value=0, max_value=10**12)),
    )


def seeded_store(rows: list[tuple[str, int, int]]) -> InMemoryAggregationStore:
    """
    Build a store where range `name` has `calls` calls spread over `clis` CLIs.
    """
    store = InMemoryAggregationStore()
    raws = []
    for name, calls, clis in rows:
        for i in range(calls):
            raws.append(RawRecord(name, f"{name}-{i}", str(i % clis), "1 sec", "Germany"))
    records = RecordNormalizer().normalize(raws, 1_700_000_000_000)
    store.apply_batch(records, records, 1_700_000_000_000)
    return store


class TestRankingOrderProperty:
    """
    Ranges are ordered by calls desc, then active CLI count desc, then name asc.
    """

    @given(views=st.lists(range_view_strategy(), max_size=30))
    @settings(max_examples=100)
    def test_sort_is_total_and_ordered(self, views: list[RangeView]) -> None:
        ordered = sort_range_views(views)
        assert len(ordered) == len(views)
        for a, b in zip(ordered, ordered[1:]):
            assert (-a.calls, -a.cli_count, a.name) <= (-b.calls, -b.cli_count, b.name)

    @given(
        rows=st.lists(
            st.tuples(
                st.sampled_from(["R1", "R2", "R3", "R4", "R5", "R6"]),
                st.integers(min_value=1, max_value=8),
                st.integers(min_value=1, max_value=4),
            ),
            min_size=1,
            max_size=6,
            unique_by=lambda t: t[0],
        ),
        limit=st.integers(min_value=1, max_value=10),
    )
    @settings(max_examples=50, deadline=None)
    def test_top_ranges_is_prefix_of_full_order(self, rows, limit: int) -> None:
        service = RankingService(seeded_store(rows))
        full = service.top_ranges(100)
        top = service.top_ranges(limit)
        assert [v.name for v in top] == [v.name for v in full[:limit]]
        assert all(v.calls > 0 for v in top)

    def test_nonpositive_limit(self) -> None:
        service = RankingService(seeded_store([("R1", 2, 1)]))
        assert service.top_ranges(0) == []
        assert service.top_ranges(-3) == []
        assert service.search("R", 0) == []


class TestSearch:
    """Keyword search over range name and source key."""

    def test_blank_keyword_matches_nothing(self) -> None:
        service = RankingService(seeded_store([("R1", 2, 1)]))
        assert service.search("") == []
        assert service.search("   ") == []

    def test_keyword_is_trimmed_and_case_insensitive(self) -> None:
        stream = io.StringIO()
        logger = EventLogger(output_stream=stream)
        service = RankingService(seeded_store([("ALPHA", 2, 1), ("BETA", 3, 1)]), logger)
        assert [v.name for v in service.search("  alp ")] == ["ALPHA"]
        assert [v.name for v in service.search("germ")] == ["BETA", "ALPHA"]


class CountingStore(InMemoryAggregationStore):
    def __init__(self) -> None:
        super().__init__()
        self.lookups: list[int] = []

    def existing_fingerprints(self, fingerprints):
        fingerprints = list(fingerprints)
        self.lookups.append(len(fingerprints))
        return super().existing_fingerprints(fingerprints)


class TestDeduplicator:
    """Filtering a batch against the fingerprint history."""

    def _records(self, count: int) -> list[NormalizedRecord]:
        raws = [RawRecord("R", str(i), "A", "1 sec", "Germany") for i in range(count)]
        return RecordNormalizer().normalize(raws, 1_700_000_000_000)

    @given(count=st.integers(min_value=0, max_value=40), chunk=st.integers(min_value=1, max_value=9))
    @settings(max_examples=50)
    def test_lookups_are_chunked(self, count: int, chunk: int) -> None:
        store = CountingStore()
        result = Deduplicator(store, chunk_size=chunk).filter_new(self._records(count))
        assert all(size <= chunk for size in store.lookups)
        assert sum(store.lookups) == count
        assert len(result.new_records) == count
        assert result.duplicate_count == 0

    def test_seen_fingerprints_are_filtered(self) -> None:
        store = InMemoryAggregationStore()
        records = self._records(5)
        store.apply_batch(records[:3], records[:3], 1_700_000_000_000)

        result = Deduplicator(store).filter_new(records + records[:1])
        assert [r.call for r in result.new_records] == ["3", "4"]
        assert len(result.all_records) == 5
        assert result.duplicate_count == 3

    def test_invalid_chunk_size(self) -> None:
        with pytest.raises(ValueError):
            Deduplicator(InMemoryAggregationStore(), chunk_size=0)
