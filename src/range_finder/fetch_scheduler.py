"""
Fetch Scheduler for the range finder system.

Splits the active query-key universe into fixed-size batches and fetches each
batch concurrently. Every fetch is bounded by a hard deadline; one that
misses it resolves to an empty TIMEOUT result and is left to finish in the
background instead of being cancelled mid-transport.
"""

import asyncio
from typing import Iterable, Optional

import pycountry

from .config import SchedulerConfig
from .enums import FetchOutcome
from .event_logger import EventLogger
from .models import FetchResult
from .source_provider import SourceProvider


def default_universe() -> list[str]:
    """All ISO 3166 country names, sorted."""
    return sorted(country.name for country in pycountry.countries)


def plan_batches(keys: list[str], batch_size: int) -> list[list[str]]:
    """Split keys into consecutive batches of at most batch_size."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [keys[i:i + batch_size] for i in range(0, len(keys), batch_size)]


class FetchScheduler:
    """Batched concurrent fetching with per-fetch deadlines."""

    def __init__(
        self,
        provider: SourceProvider,
        config: Optional[SchedulerConfig] = None,
        keys: Optional[Iterable[str]] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            provider: Source fetched for each key
            config: Batch size, timeouts and inter-batch delay
            keys: Query-key universe (all country names when omitted or empty)
            logger: Optional event logger
        """
        self._provider = provider
        self._config = config or SchedulerConfig()
        universe = list(dict.fromkeys(keys or []))
        self._universe = universe or default_universe()
        self._logger = logger
        self._abandoned: set[asyncio.Task] = set()

    @property
    def universe(self) -> list[str]:
        return list(self._universe)

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def abandoned_count(self) -> int:
        """Timed-out fetches still running in the background."""
        return len(self._abandoned)

    def plan_pass(self, blacklisted: Iterable[str] = ()) -> list[list[str]]:
        """Batches of one pass over the universe minus blacklisted keys."""
        excluded = set(blacklisted)
        active = [key for key in self._universe if key not in excluded]
        return plan_batches(active, self._config.batch_size)

    async def fetch_one(self, key: str) -> FetchResult:
        """Fetch one key; always resolves within the hard deadline."""
        task = asyncio.ensure_future(self._provider.fetch(key))
        try:
            return await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self._config.deadline_seconds,
            )
        except asyncio.TimeoutError:
            self._abandoned.add(task)
            task.add_done_callback(self._discard_abandoned)
            if self._logger:
                self._logger.debug(
                    "FetchScheduler",
                    f"Fetch for '{key}' missed its deadline",
                    {"deadline_seconds": self._config.deadline_seconds},
                )
            return FetchResult.empty(key, FetchOutcome.TIMEOUT)
        except Exception as e:
            if self._logger:
                self._logger.log_error("FetchScheduler", f"Fetch for '{key}' failed", error=e)
            return FetchResult.empty(key, FetchOutcome.TRANSPORT_ERROR)

    def _discard_abandoned(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if not task.cancelled():
            task.exception()

    async def fetch_batch(self, keys: list[str]) -> list[FetchResult]:
        """Fetch all keys concurrently; results are in key order."""
        return list(await asyncio.gather(*(self.fetch_one(key) for key in keys)))

    async def throttle(self) -> None:
        """Wait the inter-batch delay."""
        if self._config.batch_delay_seconds > 0:
            await asyncio.sleep(self._config.batch_delay_seconds)

    async def drain(self) -> None:
        """Cancel fetches that were abandoned after their deadline."""
        pending = list(self._abandoned)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
