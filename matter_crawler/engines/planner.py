from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import CrawlConfig
from ..errors import CrawlError
from ..storage import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrawlRange:
    """Inclusive range of site page numbers (1 = newest page)."""

    start_page: int
    end_page: int

    def page_numbers(self) -> List[int]:
        return list(range(self.start_page, self.end_page + 1))

    def __len__(self) -> int:
        return max(0, self.end_page - self.start_page + 1)

    def to_dict(self) -> Dict[str, int]:
        return {"start_page": self.start_page, "end_page": self.end_page}


def compute_crawl_range(
    total_site_pages: int,
    persisted_count: int,
    products_per_page: int,
    page_range_limit: int = 0,
) -> CrawlRange:
    """
    Pages still to crawl, newest first. Every full page already persisted drops
    one page from the end of the range; the newest page is always crawled.

    >>> compute_crawl_range(50, 0, 12)
    CrawlRange(start_page=1, end_page=50)
    >>> compute_crawl_range(50, 120, 12)
    CrawlRange(start_page=1, end_page=40)
    """
    if total_site_pages < 1:
        raise CrawlError(f"Site reported {total_site_pages} pages")
    if products_per_page < 1:
        raise CrawlError("products_per_page must be positive")

    end = max(1, total_site_pages - max(0, persisted_count) // products_per_page)
    if page_range_limit > 0:
        end = min(end, page_range_limit)
    return CrawlRange(start_page=1, end_page=end)


class TotalPagesCache:
    """
    Caches the site page count for ``ttl`` seconds. Concurrent refreshes are
    serialized so only one request reaches the site.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[int]],
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._value: Optional[int] = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def value(self) -> Optional[int]:
        return self._value

    def _fresh(self) -> bool:
        return self._value is not None and (self._clock() - self._fetched_at) < self._ttl

    async def get(self, force: bool = False) -> int:
        if not force and self._fresh():
            return self._value  # type: ignore[return-value]
        async with self._lock:
            # Another caller may have refreshed while we waited.
            if not force and self._fresh():
                return self._value  # type: ignore[return-value]
            total = await self._loader()
            self._value = int(total)
            self._fetched_at = self._clock()
            logger.info("Site reports %d list pages", self._value)
            return self._value

    def invalidate(self) -> None:
        self._value = None


class PagePlanner:
    """Decides which list pages a run should fetch."""

    def __init__(self, fetcher: Any, store: RecordStore, config: CrawlConfig) -> None:
        self.store = store
        self.config = config
        self.cache = TotalPagesCache(fetcher.fetch_total_pages, ttl=config.cache_ttl)

    async def total_pages(self, force: bool = False) -> int:
        return await self.cache.get(force=force)

    async def plan(self, force: bool = False) -> Tuple[CrawlRange, int]:
        total = await self.total_pages(force=force)
        summary = self.store.summary()
        crawl_range = compute_crawl_range(
            total,
            summary.count,
            self.config.products_per_page,
            self.config.page_range_limit,
        )
        logger.info(
            "Planned pages %d-%d of %d (%d records stored)",
            crawl_range.start_page, crawl_range.end_page, total, summary.count,
        )
        return crawl_range, total

    async def status(self, force: bool = True) -> Dict[str, Any]:
        """Compare what is stored with what the site currently lists."""
        summary = self.store.summary()
        total = await self.total_pages(force=force)
        site_estimate = total * self.config.products_per_page
        crawl_range = compute_crawl_range(
            total, summary.count, self.config.products_per_page, self.config.page_range_limit
        )
        diff = site_estimate - summary.count
        return {
            "db_product_count": summary.count,
            "db_last_updated": summary.last_updated,
            "site_total_pages": total,
            "site_product_count": site_estimate,
            "diff": diff,
            "need_crawling": diff > 0,
            "crawl_range": crawl_range.to_dict(),
        }
