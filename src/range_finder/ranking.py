"""
Ranking Query Interface.

Read-only views over committed aggregates: the top ranges and a keyword
search, both ordered by calls, then active CLI count, then name.
"""

from typing import Optional

from .event_logger import EventLogger
from .models import RangeView
from .store import AggregationStore, sort_range_views

DEFAULT_LIMIT = 10


class RankingService:
    """Serves ranked RangeViews to the CLI and external consumers."""

    def __init__(self, store: AggregationStore, logger: Optional[EventLogger] = None) -> None:
        self._store = store
        self._logger = logger

    def top_ranges(self, limit: int = DEFAULT_LIMIT) -> list[RangeView]:
        """
        Return the `limit` most active ranges.

        Ranges with zero calls are never listed.
        """
        if limit <= 0:
            return []
        return sort_range_views(self._store.query_ranges(limit))

    def search(self, keyword: str, limit: int = DEFAULT_LIMIT) -> list[RangeView]:
        """
        Return ranges whose name or country contains `keyword` (case-insensitive).

        An empty keyword matches nothing.
        """
        needle = (keyword or "").strip()
        if not needle or limit <= 0:
            return []
        views = sort_range_views(self._store.query_ranges(limit, keyword=needle))
        if self._logger:
            self._logger.debug(
                "RankingService",
                "Search served",
                {"keyword": needle, "matches": len(views)},
            )
        return views
