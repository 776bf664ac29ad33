"""
Monitor Orchestrator for the range finder system.

This module wires the pipeline together into the single control loop:
- Fetch Scheduler pulls a batch of keys from the Source Provider
- Blacklist Controller observes per-key outcomes
- Record Normalizer and Deduplicator reduce the batch to unseen sightings
- Aggregation Store folds them in one transaction
- Retention Sweeper and the status line run as interval tasks
"""

import asyncio
import functools
import time
from typing import Callable, Optional, TypeVar

from .blacklist import BlacklistController
from .config import SystemConfig
from .deduplicator import Deduplicator
from .enums import FetchOutcome
from .event_logger import EventLogger
from .exceptions import StorageError
from .fetch_scheduler import FetchScheduler
from .models import BatchSummary, FetchResult, MonitorStats
from .normalizer import RecordNormalizer
from .ranking import RankingService
from .retention import RetentionSweeper
from .scheduler import Scheduler
from .session_manager import SessionLifecycleManager
from .source_provider import SourceProvider
from .store import AggregationStore

T = TypeVar("T")

SWEEP_TASK = "retention-sweep"
STATUS_TASK = "status"


def now_ms() -> int:
    return int(time.time() * 1000)


class MonitorOrchestrator:
    """
    Main control loop of the monitor.

    Store calls run in the default executor so SQLite I/O never blocks the
    event loop; each is its own transaction.
    """

    async def __aenter__(self) -> "MonitorOrchestrator":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.shutdown()

    def __init__(
        self,
        config: SystemConfig,
        store: AggregationStore,
        provider: SourceProvider,
        session_manager: Optional[SessionLifecycleManager] = None,
        scheduler: Optional[Scheduler] = None,
        logger: Optional[EventLogger] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: System configuration
            store: Aggregation store (SQL or in-memory)
            provider: Source provider fetched for each key
            session_manager: Optional session manager started with the loop
            scheduler: Scheduler for interval tasks (one is created when omitted)
            logger: Optional event logger
            clock: Wall clock in epoch milliseconds
        """
        self._config = config
        self._store = store
        self._session_manager = session_manager
        self._logger = logger
        self._clock = clock
        self._scheduler = scheduler or Scheduler(logger=logger)

        self._normalizer = RecordNormalizer(config.dedup, logger)
        self._deduplicator = Deduplicator(store, config.dedup.lookup_chunk_size, logger)
        self._blacklist = BlacklistController(store, config.blacklist, logger, clock)
        self._sweeper = RetentionSweeper(store, config.retention, logger, clock)
        self._ranking = RankingService(store, logger)
        self._fetcher = FetchScheduler(provider, config.scheduler, config.source.keys, logger)

        self._stats = MonitorStats()
        self._initialized = False

        if session_manager is not None:
            session_manager.add_refresh_listener(
                lambda _session: self._blacklist.clear_auth_failures()
            )

    @property
    def stats(self) -> MonitorStats:
        return self._stats

    @property
    def blacklist(self) -> BlacklistController:
        return self._blacklist

    @property
    def ranking(self) -> RankingService:
        return self._ranking

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    @property
    def fetcher(self) -> FetchScheduler:
        return self._fetcher

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    async def _in_executor(self, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def initialize(self) -> None:
        """Create store tables and load the persisted blacklist."""
        if self._initialized:
            return
        await self._in_executor(self._store.initialize)
        blacklisted = await self._in_executor(self._blacklist.load)
        self._initialized = True
        self._log_info("Store ready", {"blacklisted_keys": blacklisted})

    async def process_batch(self, keys: list[str]) -> BatchSummary:
        """
        Fetch, normalize, deduplicate and aggregate one batch of keys.

        A storage failure rolls the batch back and is logged; it never
        propagates.
        """
        refreshes_before = self._blacklist.refresh_count
        results = await self._fetcher.fetch_batch(keys)
        fetched = sum(len(r.records) for r in results)
        self._stats.total_requests += len(keys)
        self._stats.total_records += fetched

        await self._observe_outcomes(results, refreshes_before)

        poll_time_ms = self._clock()
        raw_records = [record for result in results for record in result.records]
        normalized = self._normalizer.normalize(raw_records, poll_time_ms)

        counted = 0
        new_count = 0
        storage_failed = False
        try:
            dedup = await self._in_executor(self._deduplicator.filter_new, normalized)
            new_count = len(dedup.new_records)
            if dedup.all_records:
                applied = await self._in_executor(
                    self._store.apply_batch,
                    dedup.new_records,
                    dedup.all_records,
                    poll_time_ms,
                )
                counted = applied.counted
        except StorageError as e:
            storage_failed = True
            self._log_error("Batch rolled back", e, {"keys": len(keys)})

        return BatchSummary(
            keys=len(keys),
            fetched_records=fetched,
            normalized_records=len(normalized),
            new_records=new_count,
            counted_records=counted,
            auth_errors=sum(1 for r in results if r.auth_error),
            timeouts=sum(1 for r in results if r.outcome == FetchOutcome.TIMEOUT),
            storage_failed=storage_failed,
        )

    async def _observe_outcomes(self, results: list[FetchResult], refreshes_before: int) -> None:
        newly = self._blacklist.record_outcomes(results, refreshes_before)
        try:
            await self._in_executor(self._blacklist.flush)
        except StorageError as e:
            self._log_error("Blacklist state not saved", e)
        if newly:
            self._log_info("Keys blacklisted", {"keys": newly})

    async def run_pass(self, stop_event: Optional[asyncio.Event] = None) -> list[BatchSummary]:
        """
        One traversal of the active universe, recomputed from the blacklist.

        The first pass is the initial sweep and reports progress.
        """
        batches = self._fetcher.plan_pass(self._blacklist.blacklisted_keys())
        initial = self._stats.is_initial_phase
        if initial:
            self._stats.total_keys = sum(len(batch) for batch in batches)
            self._stats.initial_progress = 0

        summaries: list[BatchSummary] = []
        for index, batch in enumerate(batches):
            summaries.append(await self.process_batch(batch))
            if initial:
                self._stats.initial_progress += len(batch)
                self._stats.status_message = (
                    f"Initializing {self._stats.initial_progress}/{self._stats.total_keys}"
                )
            if stop_event is not None and stop_event.is_set():
                break
            if index < len(batches) - 1:
                await self._fetcher.throttle()

        if stop_event is None or not stop_event.is_set():
            self._stats.passes_completed += 1
            if initial:
                self._stats.is_initial_phase = False
                self._log_info(
                    "Initial sweep complete",
                    {"keys": self._stats.total_keys, "records": self._stats.total_records},
                )
        return summaries

    async def run(
        self,
        stop_event: Optional[asyncio.Event] = None,
        max_passes: Optional[int] = None,
    ) -> MonitorStats:
        """
        Run the monitor until `stop_event` is set or `max_passes` passes finish.

        Args:
            stop_event: Optional event to signal the loop to stop
            max_passes: Optional number of passes after which to return

        Returns:
            Final runtime counters
        """
        stop_event = stop_event or asyncio.Event()
        await self.initialize()

        self._scheduler.schedule(
            SWEEP_TASK, self._config.retention.sweep_interval_seconds, self._sweep_task
        )
        self._scheduler.schedule(
            STATUS_TASK, self._config.logging.status_interval_seconds, self._status_task
        )
        scheduler_run = asyncio.ensure_future(self._scheduler.run(stop_event))

        try:
            if self._session_manager is not None:
                await self._session_manager.start()

            passes = 0
            while not stop_event.is_set():
                summaries = await self.run_pass(stop_event)
                passes += 1
                if max_passes is not None and passes >= max_passes:
                    break
                if not summaries:
                    await self._idle(stop_event)
                else:
                    await self._fetcher.throttle()
        finally:
            self._scheduler.stop()
            scheduler_run.cancel()
            await asyncio.gather(scheduler_run, return_exceptions=True)
            self._scheduler.unschedule(SWEEP_TASK)
            self._scheduler.unschedule(STATUS_TASK)
            await self.shutdown()

        return self._stats

    async def _idle(self, stop_event: asyncio.Event) -> None:
        # Every key is blacklisted; wait instead of spinning
        try:
            await asyncio.wait_for(
                stop_event.wait(), timeout=self._config.retention.sweep_interval_seconds
            )
        except asyncio.TimeoutError:
            pass

    async def sweep_now(self):
        """Run a retention sweep immediately."""
        return await self._in_executor(self._sweeper.safe_sweep)

    async def _sweep_task(self) -> None:
        await self.sweep_now()

    async def _status_task(self) -> None:
        if self._session_manager is not None and not self._stats.is_initial_phase:
            self._stats.status_message = self._session_manager.status_message
        top = await self._in_executor(self._ranking.top_ranges, 3)
        self._log_info(
            "Status",
            {
                "requests": self._stats.total_requests,
                "records": self._stats.total_records,
                "passes": self._stats.passes_completed,
                "initial_phase": self._stats.is_initial_phase,
                "progress": f"{self._stats.initial_progress}/{self._stats.total_keys}",
                "status": self._stats.status_message,
                "top": [f"{v.name} ({v.calls})" for v in top],
            },
        )

    async def shutdown(self) -> None:
        """Stop timers and background fetches. The store is closed by its owner."""
        if self._session_manager is not None:
            self._session_manager.stop()
        await self._scheduler.shutdown()
        await self._fetcher.drain()

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info("MonitorOrchestrator", message, data)

    def _log_error(self, message: str, error: Exception, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log_error("MonitorOrchestrator", message, error=error, additional_data=data)
