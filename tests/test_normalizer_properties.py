"""
Property-based tests for the Record Normalizer module.

Uses Hypothesis for property-based testing of relative-age parsing,
fingerprint stability across polls, and staleness filtering.
"""

from hypothesis import given, settings, assume
from hypothesis import strategies as st

from range_finder.config import DedupConfig
from range_finder.models import RawRecord
from range_finder.normalizer import (
    UNPARSEABLE_AGE_SECONDS,
    RecordNormalizer,
    fingerprint,
    parse_relative_age,
    time_bucket,
)


# Strategies for generating test data

field_text = st.text(
    alphabet=st.sampled_from("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789 "),
    min_size=1,
    max_size=20,
).filter(lambda s: s.strip() and "|" not in s)


@st.composite
def raw_record_strategy(draw, age_seconds: int = 0) -> RawRecord:
    """Generate a raw row with the given age in seconds."""
    return RawRecord(
        range=draw(field_text),
        call=draw(st.from_regex(r"\A[0-9]{6,10}\Z")),
        cli=draw(st.from_regex(r"\A[0-9]{5,8}\Z")),
        relative_age=f"{age_seconds} sec",
        source_key=draw(st.sampled_from(["Germany", "France", "Nigeria"])),
    )


class TestRelativeAgeParsing:
    """Parsing of the portal's relative age column."""

    @given(amount=st.integers(min_value=0, max_value=100_000))
    @settings(max_examples=100)
    def test_seconds_minutes_hours(self, amount: int) -> None:
        assert parse_relative_age(f"{amount} sec") == amount
        assert parse_relative_age(f"{amount} secs ago") == amount
        assert parse_relative_age(f"{amount} min") == amount * 60
        assert parse_relative_age(f"{amount} minutes") == amount * 60
        assert parse_relative_age(f"{amount} hour ago") == amount * 3600
        assert parse_relative_age(f"{amount} hrs") == amount * 3600

    def test_now_is_zero(self) -> None:
        assert parse_relative_age("just now") == 0
        assert parse_relative_age("Now") == 0
        assert parse_relative_age("a moment ago") == 0

    def test_case_and_whitespace_insensitive(self) -> None:
        assert parse_relative_age("  5 SEC  ") == 5
        assert parse_relative_age("2 Min") == 120

    @given(text=st.sampled_from(["", "   ", "abc", "sec", "5 days", "3 weeks", "-5 sec", "yesterday"]))
    def test_unparseable_gets_sentinel(self, text: str) -> None:
        assert parse_relative_age(text) == UNPARSEABLE_AGE_SECONDS

    def test_sentinel_beyond_default_cutoff(self) -> None:
        assert UNPARSEABLE_AGE_SECONDS > DedupConfig().staleness_cutoff_seconds


class TestFingerprintProperty:
    """
    Identity of a sighting is (range, call, cli, time bucket of its origin).
    """

    @given(
        origin=st.integers(min_value=0, max_value=2_000_000_000),
        bucket=st.integers(min_value=1, max_value=600),
    )
    @settings(max_examples=100)
    def test_same_bucket_same_fingerprint(self, origin: int, bucket: int) -> None:
        start = time_bucket(origin, bucket) * bucket
        end = start + bucket - 1
        assert fingerprint("R", "1", "2", start, bucket) == fingerprint("R", "1", "2", end, bucket)
        assert fingerprint("R", "1", "2", start, bucket) != fingerprint("R", "1", "2", end + 1, bucket)

    @given(
        poll_s=st.integers(min_value=1_000_000, max_value=2_000_000_000),
        age=st.integers(min_value=0, max_value=100),
        elapsed=st.integers(min_value=1, max_value=100),
        record=raw_record_strategy(),
    )
    @settings(max_examples=100)
    def test_repeated_sighting_keeps_fingerprint(
        self,
        poll_s: int,
        age: int,
        elapsed: int,
        record: RawRecord,
    ) -> None:
        """
        A row seen at poll t with age a and again at t + d with age a + d
        resolves to the same origin and therefore the same fingerprint.
        """
        normalizer = RecordNormalizer(DedupConfig(staleness_cutoff_seconds=300))
        first = normalizer.normalize_one(
            RawRecord(record.range, record.call, record.cli, f"{age} sec", record.source_key),
            poll_s * 1000,
        )
        second = normalizer.normalize_one(
            RawRecord(record.range, record.call, record.cli, f"{age + elapsed} sec", record.source_key),
            (poll_s + elapsed) * 1000,
        )
        assert first is not None and second is not None
        assert first.fingerprint == second.fingerprint
        assert first.observed_at_ms == second.observed_at_ms

    def test_different_cli_different_fingerprint(self) -> None:
        assert fingerprint("R", "100", "1", 1000) != fingerprint("R", "100", "2", 1000)


class TestNormalizeBatch:
    """Batch-level behavior of RecordNormalizer."""

    @given(age=st.integers(min_value=0, max_value=1000), cutoff=st.integers(min_value=0, max_value=600))
    @settings(max_examples=100)
    def test_staleness_cutoff(self, age: int, cutoff: int) -> None:
        normalizer = RecordNormalizer(DedupConfig(staleness_cutoff_seconds=cutoff))
        raw = RawRecord("R 1", "100", "200", f"{age} sec", "Germany")
        result = normalizer.normalize_one(raw, 1_700_000_000_000)
        if age > cutoff:
            assert result is None
        else:
            assert result is not None
            assert result.age_seconds == age
            assert result.observed_at_ms == 1_700_000_000_000 - age * 1000

    def test_unparseable_age_is_dropped(self) -> None:
        normalizer = RecordNormalizer()
        assert normalizer.normalize_one(RawRecord("R", "1", "2", "later", "X"), 10_000_000) is None

    def test_blank_range_dropped_and_fields_stripped(self) -> None:
        normalizer = RecordNormalizer()
        assert normalizer.normalize_one(RawRecord("   ", "1", "2", "5 sec", "X"), 10_000_000) is None

        record = normalizer.normalize_one(RawRecord("  R 1 ", " 100 ", " 200 ", "5 sec", "X"), 10_000_000)
        assert record is not None
        assert (record.range, record.call, record.cli) == ("R 1", "100", "200")

    @given(records=st.lists(raw_record_strategy(age_seconds=5), min_size=1, max_size=20))
    @settings(max_examples=50)
    def test_batch_fingerprints_unique(self, records: list[RawRecord]) -> None:
        normalizer = RecordNormalizer()
        doubled = records + records
        result = normalizer.normalize(doubled, 1_700_000_000_000)

        fingerprints = [r.fingerprint for r in result]
        assert len(fingerprints) == len(set(fingerprints))
        assert len(result) <= len(records)

    def test_first_occurrence_wins(self) -> None:
        normalizer = RecordNormalizer()
        poll_ms = 1_200_010_000
        first = RawRecord("R", "1", "2", "5 sec", "Germany")
        # Same origin bucket, reported under a different key
        second = RawRecord("R", "1", "2", "6 sec", "Austria")
        result = normalizer.normalize([first, second], poll_ms)
        assert len(result) == 1
        assert result[0].source_key == "Germany"

    def test_empty_input(self) -> None:
        assert RecordNormalizer().normalize([], 0) == []
