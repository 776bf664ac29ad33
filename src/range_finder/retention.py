"""
Retention Sweeper.

Prunes fingerprint history and aggregates that fall outside the trailing
retention window. Runs as an interval task, independent of the poll cycle.
"""

import time
from typing import Callable, Optional

from .config import RetentionConfig
from .event_logger import EventLogger
from .exceptions import StorageError
from .models import SweepResult
from .store import AggregationStore


def now_ms() -> int:
    return int(time.time() * 1000)


class RetentionSweeper:
    """Deletes everything last seen before now minus the retention horizon."""

    def __init__(
        self,
        store: AggregationStore,
        config: Optional[RetentionConfig] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._config = config or RetentionConfig()
        self._logger = logger
        self._clock = clock
        self._last_result: Optional[SweepResult] = None

    @property
    def horizon_ms(self) -> int:
        return self._config.horizon_seconds * 1000

    @property
    def last_result(self) -> Optional[SweepResult]:
        return self._last_result

    def sweep(self, at_ms: Optional[int] = None) -> SweepResult:
        """
        Run one sweep.

        Args:
            at_ms: Reference time; defaults to the clock

        Raises:
            StorageError: If the sweep transaction was rolled back
        """
        reference = at_ms if at_ms is not None else self._clock()
        result = self._store.sweep(reference - self.horizon_ms)
        self._last_result = result

        if result.total_deleted and self._logger:
            self._logger.info(
                "RetentionSweeper",
                f"Swept {result.total_deleted} expired row(s)",
                {
                    "history": result.history_deleted,
                    "clis": result.clis_deleted,
                    "ranges": result.ranges_deleted,
                    "cutoff_ms": result.cutoff_ms,
                },
            )
        return result

    def safe_sweep(self) -> Optional[SweepResult]:
        """Run a sweep, logging a storage failure instead of raising it."""
        try:
            return self.sweep()
        except StorageError as e:
            if self._logger:
                self._logger.log_error("RetentionSweeper", "Sweep failed", error=e)
            return None
