"""
Aggregation Store interface and in-memory implementation.

The store owns the durable fingerprint history, the per-range and per-(range, cli)
aggregates, and the persisted blacklist. Every mutation is one transaction:
either all of a batch becomes visible to readers or none of it does.
"""

import threading
from abc import abstractmethod
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Protocol, runtime_checkable

from .enums import ErrorCode
from .exceptions import StorageError
from .models import (
    BatchApplyResult,
    BlacklistEntry,
    CliAggregate,
    NormalizedRecord,
    RangeAggregate,
    RangeView,
    SweepResult,
)

RECENT_CLI_LIMIT = 3


@runtime_checkable
class AggregationStore(Protocol):
    """Protocol defining the interface every aggregation backend implements."""

    @abstractmethod
    def initialize(self) -> None:
        """Create tables or other backing structures if they do not exist."""
        ...

    @abstractmethod
    def existing_fingerprints(self, fingerprints: Iterable[str]) -> set[str]:
        """Return the subset of fingerprints already present in history."""
        ...

    @abstractmethod
    def apply_batch(
        self,
        new_records: list[NormalizedRecord],
        all_records: list[NormalizedRecord],
        now_ms: int,
    ) -> BatchApplyResult:
        """
        Fold one batch into the aggregates in a single transaction.

        Args:
            new_records: Records whose fingerprints were absent from history
            all_records: Every normalized record of the batch (for recency)
            now_ms: Commit time, stored as first-seen time of new history rows

        Raises:
            StorageError: If the transaction failed and was rolled back
        """
        ...

    @abstractmethod
    def query_ranges(self, limit: int, keyword: Optional[str] = None) -> list[RangeView]:
        """Return ranges with calls > 0 ordered by calls, cli count, then name."""
        ...

    @abstractmethod
    def get_range(self, name: str) -> Optional[RangeAggregate]:
        ...

    @abstractmethod
    def list_clis(self, range_name: str) -> list[CliAggregate]:
        ...

    @abstractmethod
    def history_size(self) -> int:
        ...

    @abstractmethod
    def sweep(self, cutoff_ms: int) -> SweepResult:
        """Delete everything last seen before cutoff_ms in one transaction."""
        ...

    @abstractmethod
    def load_blacklist(self) -> dict[str, BlacklistEntry]:
        ...

    @abstractmethod
    def save_blacklist_entries(self, entries: Iterable[BlacklistEntry]) -> None:
        ...

    @abstractmethod
    def clear_blacklist(self, keys: Optional[Iterable[str]] = None) -> int:
        """Remove blacklist entries (all when keys is None). Returns count removed."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def sort_range_views(views: Iterable[RangeView]) -> list[RangeView]:
    """Order views by calls desc, cli count desc, name asc."""
    return sorted(views, key=lambda v: (-v.calls, -v.cli_count, v.name))


@dataclass
class _Snapshot:
    """Immutable-by-convention state swapped atomically on commit."""

    history: dict[str, int] = field(default_factory=dict)
    ranges: dict[str, RangeAggregate] = field(default_factory=dict)
    clis: dict[tuple[str, str], CliAggregate] = field(default_factory=dict)
    blacklist: dict[str, BlacklistEntry] = field(default_factory=dict)

    def copy(self) -> "_Snapshot":
        return _Snapshot(
            history=dict(self.history),
            ranges=dict(self.ranges),
            clis=dict(self.clis),
            blacklist={k: replace(v) for k, v in self.blacklist.items()},
        )


class InMemoryAggregationStore:
    """
    Aggregation store kept entirely in memory.

    Writers build a modified copy of the current snapshot and swap it in under
    a lock, so a failure part-way through a batch leaves nothing behind. Used
    for dry runs and tests.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = _Snapshot()

    def initialize(self) -> None:
        pass

    def existing_fingerprints(self, fingerprints: Iterable[str]) -> set[str]:
        history = self._state.history
        return {fp for fp in fingerprints if fp in history}

    def apply_batch(
        self,
        new_records: list[NormalizedRecord],
        all_records: list[NormalizedRecord],
        now_ms: int,
    ) -> BatchApplyResult:
        with self._lock:
            draft = self._state.copy()
            try:
                counted = self._insert_history(draft, new_records, now_ms)
                touched = self._count_records(draft, counted)
                touched |= self._raise_last_seen(draft, all_records)
                self._recompute_cli_counts(draft, touched)
            except Exception as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Batch apply failed: {e}",
                    details={"new_records": len(new_records)},
                ) from e
            self._state = draft
            return BatchApplyResult(counted=len(counted), touched_ranges=len(touched))

    def _insert_history(
        self,
        draft: _Snapshot,
        records: list[NormalizedRecord],
        now_ms: int,
    ) -> list[NormalizedRecord]:
        inserted: list[NormalizedRecord] = []
        for record in records:
            if record.fingerprint in draft.history:
                continue
            draft.history[record.fingerprint] = now_ms
            inserted.append(record)
        return inserted

    def _count_records(self, draft: _Snapshot, records: list[NormalizedRecord]) -> set[str]:
        touched: set[str] = set()
        for record in records:
            current = draft.ranges.get(record.range)
            if current is None:
                current = RangeAggregate(
                    name=record.range,
                    source_key=record.source_key,
                    total_calls=0,
                    active_cli_count=0,
                    last_seen_at_ms=record.observed_at_ms,
                )
            draft.ranges[record.range] = replace(
                current,
                total_calls=current.total_calls + 1,
                last_seen_at_ms=max(current.last_seen_at_ms, record.observed_at_ms),
            )

            key = (record.range, record.cli)
            cli = draft.clis.get(key)
            if cli is None:
                draft.clis[key] = CliAggregate(
                    range_name=record.range,
                    cli=record.cli,
                    call_count=1,
                    last_seen_at_ms=record.observed_at_ms,
                )
            else:
                draft.clis[key] = replace(
                    cli,
                    call_count=cli.call_count + 1,
                    last_seen_at_ms=max(cli.last_seen_at_ms, record.observed_at_ms),
                )
            touched.add(record.range)
        return touched

    def _raise_last_seen(self, draft: _Snapshot, records: list[NormalizedRecord]) -> set[str]:
        touched: set[str] = set()
        for record in records:
            current = draft.ranges.get(record.range)
            if current is None:
                continue
            if record.observed_at_ms > current.last_seen_at_ms:
                draft.ranges[record.range] = replace(
                    current, last_seen_at_ms=record.observed_at_ms
                )
            touched.add(record.range)
        return touched

    def _recompute_cli_counts(self, draft: _Snapshot, range_names: Iterable[str]) -> None:
        names = set(range_names)
        counts = dict.fromkeys(names, 0)
        for range_name, _ in draft.clis:
            if range_name in counts:
                counts[range_name] += 1
        for name in names:
            current = draft.ranges.get(name)
            if current is not None and current.active_cli_count != counts[name]:
                draft.ranges[name] = replace(current, active_cli_count=counts[name])

    def _view(self, state: _Snapshot, aggregate: RangeAggregate) -> RangeView:
        clis = sorted(
            (c for c in state.clis.values() if c.range_name == aggregate.name),
            key=lambda c: (-c.last_seen_at_ms, c.cli),
        )
        return RangeView(
            name=aggregate.name,
            source_key=aggregate.source_key,
            calls=aggregate.total_calls,
            cli_count=aggregate.active_cli_count,
            last_seen_at_ms=aggregate.last_seen_at_ms,
            recent_clis=[c.cli for c in clis[:RECENT_CLI_LIMIT]],
        )

    def query_ranges(self, limit: int, keyword: Optional[str] = None) -> list[RangeView]:
        state = self._state
        needle = keyword.lower() if keyword is not None else None
        candidates = []
        for aggregate in state.ranges.values():
            if aggregate.total_calls <= 0:
                continue
            if needle is not None and (
                needle not in aggregate.name.lower()
                and needle not in aggregate.source_key.lower()
            ):
                continue
            candidates.append(aggregate)

        candidates.sort(key=lambda a: (-a.total_calls, -a.active_cli_count, a.name))
        return [self._view(state, a) for a in candidates[:max(limit, 0)]]

    def get_range(self, name: str) -> Optional[RangeAggregate]:
        return self._state.ranges.get(name)

    def list_clis(self, range_name: str) -> list[CliAggregate]:
        clis = [c for c in self._state.clis.values() if c.range_name == range_name]
        return sorted(clis, key=lambda c: (-c.last_seen_at_ms, c.cli))

    def history_size(self) -> int:
        return len(self._state.history)

    def sweep(self, cutoff_ms: int) -> SweepResult:
        with self._lock:
            draft = self._state.copy()
            result = SweepResult(cutoff_ms=cutoff_ms)
            try:
                stale_history = [fp for fp, seen in draft.history.items() if seen < cutoff_ms]
                for fp in stale_history:
                    del draft.history[fp]
                result.history_deleted = len(stale_history)

                stale_ranges = [
                    name for name, agg in draft.ranges.items()
                    if agg.last_seen_at_ms < cutoff_ms
                ]
                for name in stale_ranges:
                    del draft.ranges[name]
                result.ranges_deleted = len(stale_ranges)

                stale_clis = [
                    key for key, cli in draft.clis.items()
                    if cli.last_seen_at_ms < cutoff_ms or cli.range_name not in draft.ranges
                ]
                for key in stale_clis:
                    del draft.clis[key]
                result.clis_deleted = len(stale_clis)

                self._recompute_cli_counts(draft, draft.ranges.keys())
            except Exception as e:
                raise StorageError(
                    code=ErrorCode.TRANSACTION_FAILED.value,
                    message=f"Sweep failed: {e}",
                    details={"cutoff_ms": cutoff_ms},
                ) from e
            self._state = draft
            return result

    def load_blacklist(self) -> dict[str, BlacklistEntry]:
        return {k: replace(v) for k, v in self._state.blacklist.items()}

    def save_blacklist_entries(self, entries: Iterable[BlacklistEntry]) -> None:
        with self._lock:
            draft = self._state.copy()
            for entry in entries:
                draft.blacklist[entry.source_key] = replace(entry)
            self._state = draft

    def clear_blacklist(self, keys: Optional[Iterable[str]] = None) -> int:
        with self._lock:
            draft = self._state.copy()
            if keys is None:
                removed = len(draft.blacklist)
                draft.blacklist.clear()
            else:
                removed = 0
                for key in keys:
                    if draft.blacklist.pop(key, None) is not None:
                        removed += 1
            self._state = draft
            return removed

    def close(self) -> None:
        pass
