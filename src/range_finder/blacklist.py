"""
Blacklist Controller.

Tracks consecutive empty polls per query key and durably removes keys that
keep returning nothing from the fetch rotation.

Counter rules:
- a poll with records resets the counter to 0
- an empty poll without an auth failure increments it
- an auth failure leaves it untouched and flags the key until the next
  successful session refresh; empty polls of a flagged key are not counted

The source provider refreshes the session inline when it sees an auth signal,
so that refresh finishes before the batch's results are recorded. Callers
read `refresh_count` before fetching and pass it to `record_outcomes`; when a
refresh completed in between, the batch's own auth flags are dropped.
"""

import time
from typing import Callable, Iterable, Optional

from .config import BlacklistConfig
from .event_logger import EventLogger
from .models import BlacklistEntry, FetchResult
from .store import AggregationStore


def now_ms() -> int:
    return int(time.time() * 1000)


class BlacklistController:
    """Per-key productivity tracking backed by the aggregation store."""

    def __init__(
        self,
        store: AggregationStore,
        config: Optional[BlacklistConfig] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._config = config or BlacklistConfig()
        self._logger = logger
        self._clock = clock
        self._entries: dict[str, BlacklistEntry] = {}
        self._auth_flagged: set[str] = set()
        self._dirty: set[str] = set()
        self._refresh_count = 0

    @property
    def threshold(self) -> int:
        return self._config.threshold

    @property
    def refresh_count(self) -> int:
        """Number of successful session refreshes seen so far."""
        return self._refresh_count

    def load(self) -> int:
        """Load persisted state. Returns the number of blacklisted keys."""
        self._entries = self._store.load_blacklist()
        self._dirty.clear()
        return len(self.blacklisted_keys())

    def entry(self, source_key: str) -> BlacklistEntry:
        existing = self._entries.get(source_key)
        if existing is None:
            existing = BlacklistEntry(source_key=source_key)
            self._entries[source_key] = existing
        return existing

    def is_blacklisted(self, source_key: str) -> bool:
        existing = self._entries.get(source_key)
        return existing is not None and existing.blacklisted

    def is_auth_flagged(self, source_key: str) -> bool:
        return source_key in self._auth_flagged

    def blacklisted_keys(self) -> list[str]:
        return sorted(k for k, e in self._entries.items() if e.blacklisted)

    def filter_active(self, universe: Iterable[str]) -> list[str]:
        """Return the keys of `universe` that are not blacklisted, in order."""
        return [key for key in universe if not self.is_blacklisted(key)]

    def record_outcome(self, result: FetchResult) -> bool:
        """
        Update the counter for one fetch result.

        Returns:
            True if this result caused the key to become blacklisted
        """
        key = result.source_key
        current = self.entry(key)
        if current.blacklisted:
            return False

        if result.auth_error:
            self._auth_flagged.add(key)
            return False

        if result.records:
            if current.consecutive_empty_polls:
                current.consecutive_empty_polls = 0
                self._dirty.add(key)
            return False

        if key in self._auth_flagged:
            return False

        current.consecutive_empty_polls += 1
        self._dirty.add(key)

        if current.consecutive_empty_polls >= self._config.threshold:
            current.blacklisted = True
            current.blacklisted_at_ms = self._clock()
            if self._logger:
                self._logger.info(
                    "BlacklistController",
                    f"Blacklisted '{key}' after {current.consecutive_empty_polls} empty polls",
                    {"source_key": key, "empty_polls": current.consecutive_empty_polls},
                )
            return True
        return False

    def record_outcomes(
        self,
        results: Iterable[FetchResult],
        refreshes_before: Optional[int] = None,
    ) -> list[str]:
        """
        Apply a batch of results.

        Args:
            results: Fetch results of one batch
            refreshes_before: `refresh_count` read before the batch was fetched

        Returns:
            Keys newly blacklisted by this batch
        """
        newly = [r.source_key for r in results if self.record_outcome(r)]
        if refreshes_before is not None and refreshes_before != self._refresh_count:
            self._auth_flagged.clear()
        return newly

    def record_batch(
        self,
        results: Iterable[FetchResult],
        refreshes_before: Optional[int] = None,
    ) -> list[str]:
        """Apply a batch of results and persist the changed entries."""
        newly = self.record_outcomes(results, refreshes_before)
        self.flush()
        return newly

    def flush(self) -> None:
        """Write changed entries to the store."""
        if not self._dirty:
            return
        changed = [self._entries[k] for k in sorted(self._dirty)]
        self._store.save_blacklist_entries(changed)
        self._dirty.clear()

    def clear_auth_failures(self) -> None:
        """Forget auth-failure flags; called after a successful session refresh."""
        if self._auth_flagged and self._logger:
            self._logger.debug(
                "BlacklistController",
                "Auth-failure window cleared",
                {"flagged": len(self._auth_flagged)},
            )
        self._auth_flagged.clear()
        self._refresh_count += 1

    def clear(self, keys: Optional[Iterable[str]] = None) -> int:
        """
        Remove keys from the blacklist (all when keys is None).

        Returns:
            Number of persisted entries removed
        """
        if keys is None:
            self._entries.clear()
            self._dirty.clear()
            return self._store.clear_blacklist()

        keys = list(keys)
        for key in keys:
            self._entries.pop(key, None)
            self._dirty.discard(key)
        return self._store.clear_blacklist(keys)
