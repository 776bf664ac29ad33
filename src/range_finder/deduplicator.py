"""
Deduplicator for the range finder system.

Reduces a normalized batch to the records whose fingerprints have not been
counted yet, using the aggregation store's durable fingerprint history.
"""

from dataclasses import dataclass
from typing import Optional

from .event_logger import EventLogger
from .models import NormalizedRecord
from .store import AggregationStore


@dataclass
class DedupResult:
    """Records of one batch split by whether they were seen before."""

    new_records: list[NormalizedRecord]
    all_records: list[NormalizedRecord]

    @property
    def duplicate_count(self) -> int:
        return len(self.all_records) - len(self.new_records)


class Deduplicator:
    """Filters records against the fingerprint history, chunk by chunk."""

    def __init__(
        self,
        store: AggregationStore,
        chunk_size: int = 500,
        logger: Optional[EventLogger] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._store = store
        self._chunk_size = chunk_size
        self._logger = logger

    def filter_new(self, records: list[NormalizedRecord]) -> DedupResult:
        """
        Split records into the unseen subset and the full batch.

        Within the batch only the first record of each fingerprint is kept.
        """
        unique: dict[str, NormalizedRecord] = {}
        for record in records:
            unique.setdefault(record.fingerprint, record)

        fingerprints = list(unique)
        existing: set[str] = set()
        for start in range(0, len(fingerprints), self._chunk_size):
            existing |= self._store.existing_fingerprints(
                fingerprints[start:start + self._chunk_size]
            )

        new_records = [r for fp, r in unique.items() if fp not in existing]

        if self._logger:
            self._logger.debug(
                "Deduplicator",
                "Batch deduplicated",
                {"records": len(unique), "new": len(new_records), "seen": len(existing)},
            )

        return DedupResult(new_records=new_records, all_records=list(unique.values()))
