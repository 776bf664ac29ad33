"""
Record Normalizer for the range finder system.

Converts raw table rows into identity-stable records: the relative age text is
resolved to an absolute observation time, stale rows are discarded, and each
record gets a fingerprint of (range, call, cli, time bucket).
"""

import re
from typing import Iterable, Optional

from .config import DedupConfig
from .event_logger import EventLogger
from .models import NormalizedRecord, RawRecord

# Age assigned to text that cannot be parsed; always beyond any staleness cutoff
UNPARSEABLE_AGE_SECONDS = 999_999

DEFAULT_BUCKET_SECONDS = 120

_LEADING_INT = re.compile(r"^(\d+)")


def parse_relative_age(text: str) -> int:
    """
    Parse a relative age such as "5 sec", "2 min" or "1 hour ago" into seconds.

    Args:
        text: Relative age text as shown by the portal

    Returns:
        Age in seconds, or UNPARSEABLE_AGE_SECONDS for anything unrecognised
    """
    value = (text or "").strip().lower()
    if not value:
        return UNPARSEABLE_AGE_SECONDS

    if "now" in value or "moment" in value:
        return 0

    match = _LEADING_INT.match(value)
    if match is None:
        return UNPARSEABLE_AGE_SECONDS
    amount = int(match.group(1))

    if "sec" in value:
        return amount
    if "min" in value:
        return amount * 60
    if "hour" in value or "hr" in value:
        return amount * 3600

    return UNPARSEABLE_AGE_SECONDS


def time_bucket(origin_seconds: int, bucket_seconds: int = DEFAULT_BUCKET_SECONDS) -> int:
    """Return the bucket index an origin time (epoch seconds) falls into."""
    return origin_seconds // bucket_seconds


def fingerprint(
    range_name: str,
    call: str,
    cli: str,
    origin_seconds: int,
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> str:
    """
    Build the identity string of a sighting.

    Two sightings of the same (range, call, cli) share a fingerprint exactly
    when their origin times fall into the same bucket.
    """
    bucket = time_bucket(origin_seconds, bucket_seconds)
    return f"{range_name}|{call}|{cli}|{bucket}"


class RecordNormalizer:
    """Turns raw rows into NormalizedRecords for one poll."""

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self._config = config or DedupConfig()
        self._logger = logger

    def normalize_one(self, raw: RawRecord, poll_time_ms: int) -> Optional[NormalizedRecord]:
        """
        Normalize a single raw row.

        Returns:
            The normalized record, or None when the row is stale or has no range
        """
        range_name = raw.range.strip()
        call = raw.call.strip()
        cli = raw.cli.strip()
        if not range_name:
            return None

        age_seconds = parse_relative_age(raw.relative_age)
        if age_seconds > self._config.staleness_cutoff_seconds:
            return None

        origin_seconds = poll_time_ms // 1000 - age_seconds
        return NormalizedRecord(
            range=range_name,
            call=call,
            cli=cli,
            source_key=raw.source_key,
            observed_at_ms=poll_time_ms - age_seconds * 1000,
            age_seconds=age_seconds,
            fingerprint=fingerprint(
                range_name, call, cli, origin_seconds, self._config.bucket_seconds
            ),
        )

    def normalize(
        self,
        raw_records: Iterable[RawRecord],
        poll_time_ms: int,
    ) -> list[NormalizedRecord]:
        """
        Normalize a batch of raw rows polled at the same instant.

        Duplicate fingerprints within the batch collapse to the first occurrence.
        """
        normalized: list[NormalizedRecord] = []
        seen: set[str] = set()
        dropped = 0

        for raw in raw_records:
            record = self.normalize_one(raw, poll_time_ms)
            if record is None:
                dropped += 1
                continue
            if record.fingerprint in seen:
                continue
            seen.add(record.fingerprint)
            normalized.append(record)

        if dropped and self._logger:
            self._logger.debug(
                "RecordNormalizer",
                f"Dropped {dropped} stale or malformed row(s)",
                {"dropped": dropped, "kept": len(normalized)},
            )

        return normalized
