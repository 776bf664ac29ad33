"""
Data models for the range finder system.

This module defines all data structures used for raw and normalized call
sightings, fetch results, session credentials, aggregates, and the views
served to consumers.
"""

from dataclasses import dataclass, field
from typing import Optional

from .enums import FetchOutcome


@dataclass(frozen=True)
class RawRecord:
    """A single table row returned by the source for one query key."""

    range: str
    call: str
    cli: str
    relative_age: str  # e.g. "5 sec", "2 min", "just now"
    source_key: str


@dataclass(frozen=True)
class NormalizedRecord:
    """A raw record resolved to an absolute observation time."""

    range: str
    call: str
    cli: str
    source_key: str
    observed_at_ms: int
    age_seconds: int
    fingerprint: str


@dataclass
class FetchResult:
    """Result of fetching one query key."""

    source_key: str
    records: list[RawRecord] = field(default_factory=list)
    auth_error: bool = False
    outcome: FetchOutcome = FetchOutcome.EMPTY

    @classmethod
    def empty(cls, source_key: str, outcome: FetchOutcome = FetchOutcome.EMPTY) -> "FetchResult":
        return cls(source_key=source_key, records=[], auth_error=False, outcome=outcome)

    @classmethod
    def auth_failure(cls, source_key: str) -> "FetchResult":
        return cls(
            source_key=source_key,
            records=[],
            auth_error=True,
            outcome=FetchOutcome.AUTH_ERROR,
        )


@dataclass(frozen=True)
class TokenPair:
    """Token pair captured by a login flow."""

    session_token: str
    csrf_token: str


@dataclass(frozen=True)
class AuthSession:
    """The single process-wide portal credential."""

    session_token: str
    csrf_token: str
    issued_at_ms: Optional[int]


@dataclass(frozen=True)
class RangeAggregate:
    """Aggregate counters for one range."""

    name: str
    source_key: str
    total_calls: int
    active_cli_count: int
    last_seen_at_ms: int


@dataclass(frozen=True)
class CliAggregate:
    """Aggregate counters for one (range, cli) pair."""

    range_name: str
    cli: str
    call_count: int
    last_seen_at_ms: int


@dataclass
class RangeView:
    """A ranked range as served to consumers."""

    name: str
    source_key: str
    calls: int
    cli_count: int
    last_seen_at_ms: int
    recent_clis: list[str] = field(default_factory=list)


@dataclass
class BlacklistEntry:
    """Per-key productivity tracking."""

    source_key: str
    consecutive_empty_polls: int = 0
    blacklisted: bool = False
    blacklisted_at_ms: Optional[int] = None


@dataclass
class BatchApplyResult:
    """Outcome of a single aggregation transaction."""

    counted: int
    touched_ranges: int


@dataclass
class BatchSummary:
    """Summary of one processed fetch batch."""

    keys: int
    fetched_records: int
    normalized_records: int
    new_records: int
    counted_records: int
    auth_errors: int
    timeouts: int
    storage_failed: bool = False


@dataclass
class SweepResult:
    """Deletion counts of one retention sweep."""

    cutoff_ms: int
    history_deleted: int = 0
    clis_deleted: int = 0
    ranges_deleted: int = 0

    @property
    def total_deleted(self) -> int:
        return self.history_deleted + self.clis_deleted + self.ranges_deleted


@dataclass
class MonitorStats:
    """Runtime counters of the monitor loop."""

    total_requests: int = 0
    total_records: int = 0
    total_keys: int = 0
    initial_progress: int = 0
    is_initial_phase: bool = True
    passes_completed: int = 0
    status_message: str = "Starting"
