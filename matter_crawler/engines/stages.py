"""
List and detail collection stages.

Both stages push their items through the worker pool and the retry coordinator.
Every fetch waits a randomized delay and then runs inside the deadline race, so
a cancel request interrupts either the delay or the fetch itself.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..adapters.base import CatalogFetcher, RecordDetail, RecordKey, RecordStub, page_id_for
from ..config import CrawlConfig
from ..errors import CrawlCancelled, FetchFailure, TransportError, ZeroResultError
from ..utils.parsing import build_detail
from ..utils.records import dedupe_details, dedupe_stubs
from .events import EventSink, FAILED_PAGES, FAILED_PRODUCTS, PRODUCT_TASK_STATUS, TASK_STATUS
from .pool import CancelToken, run_with_deadline
from .progress import DETAIL_STAGE, LIST_STAGE, ProgressReporter, TaskBoard, TaskStatus
from .retry import RetryCoordinator, RetryOutcome

logger = logging.getLogger(__name__)

RetryHook = Callable[[str, int], None]
StageHook = Callable[[str], None]


@dataclass
class ListStageResult:
    stubs: List[RecordStub]
    outcome: RetryOutcome[int]
    skipped: List[int] = field(default_factory=list)

    @property
    def failed_pages(self) -> List[int]:
        return self.outcome.failed

    @property
    def collected_pages(self) -> List[int]:
        return [p for p in self.outcome.keys if p in self.outcome.succeeded]

    def failure_report(self) -> List[Dict[str, object]]:
        return self.outcome.failure_report()


@dataclass
class DetailStageResult:
    details: List[RecordDetail]
    outcome: RetryOutcome[RecordKey]
    urls: Dict[RecordKey, str] = field(default_factory=dict)

    @property
    def failed_urls(self) -> List[str]:
        return [self.urls[k] for k in self.outcome.failed]

    def failure_report(self) -> List[Dict[str, object]]:
        return self.outcome.failure_report(lambda k: self.urls[k])


class StageRunner:
    """
    Runs one stage at a time for a single crawl run. The runner is bound to the
    run's cancel token, progress reporter and event sink.
    """

    def __init__(
        self,
        fetcher: CatalogFetcher,
        config: CrawlConfig,
        sink: EventSink,
        progress: ProgressReporter,
        cancel: CancelToken,
        *,
        on_stage: Optional[StageHook] = None,
        on_retry: Optional[RetryHook] = None,
        delay: Optional[Callable[[], float]] = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.sink = sink
        self.progress = progress
        self.cancel = cancel
        self.on_stage = on_stage
        self.on_retry = on_retry
        self._delay = delay or (
            lambda: random.uniform(config.min_request_delay, config.max_request_delay)
        )
        self.page_board = TaskBoard(sink, TASK_STATUS, "page_number")
        self.product_board = TaskBoard(sink, PRODUCT_TASK_STATUS, "url")
        self.current_stage: Optional[str] = None

    # ---------- Shared ----------

    def _coordinator(self, stage: str) -> RetryCoordinator:
        def _round(attempt: int, _keys: List[Any]) -> None:
            self.progress.retry_round(attempt)
            if self.on_retry:
                self.on_retry(stage, attempt)

        return RetryCoordinator(
            retry_start=self.config.retry_start,
            retry_max=self.config.retry_max,
            retry_concurrency=self.config.retry_concurrency,
            cancel=self.cancel,
            on_round=_round,
        )

    async def _fetch(self, call: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        async def _delayed() -> Any:
            await asyncio.sleep(self._delay())
            return await call()

        try:
            return await run_with_deadline(_delayed(), timeout, self.cancel)
        except (CrawlCancelled, FetchFailure):
            raise
        except Exception as exc:
            raise TransportError(str(exc) or exc.__class__.__name__, cause=exc) from exc

    def _enter(self, stage: str) -> None:
        self.current_stage = stage
        if self.on_stage:
            self.on_stage(stage)

    def _batches(self, pages: List[int]) -> List[List[int]]:
        size = self.config.batch_size
        if not self.config.enable_batch_processing or len(pages) <= size:
            return [pages]
        return [pages[i:i + size] for i in range(0, len(pages), size)]

    async def _pause(self, seconds: float) -> None:
        """Sleep between batches; returns early when the run is cancelled."""
        if seconds <= 0:
            return
        waiter = asyncio.ensure_future(self.cancel.wait())
        done, _ = await asyncio.wait({waiter}, timeout=seconds)
        if not done:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)

    def _empty_page_allowed(self, page_id: int) -> bool:
        policy = self.config.zero_result_policy
        return policy == "allow" or (policy == "allow_last_page" and page_id == 0)

    # ---------- Phase 1 ----------

    async def collect_list(
        self,
        page_numbers: Sequence[int],
        total_site_pages: int,
    ) -> ListStageResult:
        """Fetch every list page once, retry the failures, then dedupe and sort."""
        collected: Dict[int, List[RecordStub]] = {}
        skipped: List[int] = []
        pages = list(page_numbers)

        self._enter(LIST_STAGE)
        self.page_board.initialize(pages)
        self.progress.start_stage(LIST_STAGE, len(pages))

        async def _attempt(page_number: int, attempt: int, cancel: CancelToken) -> None:
            page_id = page_id_for(page_number, total_site_pages)
            if page_id in collected:
                logger.debug("Page %d (id %d) already collected; skipping", page_number, page_id)
                skipped.append(page_number)
                self.page_board.update(page_number, TaskStatus.SUCCESS)
                return

            self.page_board.update(page_number, TaskStatus.RUNNING)
            try:
                listings = await self._fetch(
                    lambda: self.fetcher.fetch_page(page_number), self.config.page_timeout
                )
                if not listings and not self._empty_page_allowed(page_id):
                    raise ZeroResultError(f"No products found on page {page_number}", key=page_number)
            except CrawlCancelled:
                self.page_board.update(page_number, TaskStatus.STOPPED)
                raise
            except FetchFailure as exc:
                self.page_board.update(page_number, TaskStatus.ERROR, str(exc))
                logger.debug("Page %d attempt %d failed: %s", page_number, attempt, exc)
                raise

            collected[page_id] = RecordStub.from_listings(list(listings), page_id)
            self.page_board.update(page_number, TaskStatus.SUCCESS)
            self.progress.advance()

        batches = self._batches(pages)
        outcome: RetryOutcome[int] = RetryOutcome(keys=[])
        for number, batch in enumerate(batches, start=1):
            if self.cancel.cancelled:
                logger.info("Cancelled before list batch %d/%d", number, len(batches))
                break
            if len(batches) > 1:
                logger.info("List batch %d/%d: pages %d-%d", number, len(batches), batch[0], batch[-1])
                self._enter(LIST_STAGE)
                self.progress.batch(number, len(batches))
            outcome.merge(await self._coordinator(LIST_STAGE).run(
                batch, lambda p: p, _attempt, self.config.initial_concurrency
            ))
            if number < len(batches):
                await self._pause(self.config.batch_delay)
        # Pages of batches that never ran count as stopped, not failed.
        started = set(outcome.keys)
        outcome.keys.extend([p for p in pages if p not in started])
        if not self.cancel.cancelled:
            self.progress.complete_stage()

        stubs = dedupe_stubs(s for page in collected.values() for s in page)
        result = ListStageResult(stubs=stubs, outcome=outcome, skipped=skipped)
        if result.failed_pages:
            self.sink.emit(FAILED_PAGES, {"failures": result.failure_report()})
        logger.info(
            "List stage: %d/%d pages, %d records, %d failed",
            len(result.collected_pages), len(pages), len(stubs), len(result.failed_pages),
        )
        return result

    # ---------- Phase 2 ----------

    async def collect_details(self, stubs: Sequence[RecordStub]) -> DetailStageResult:
        """Fetch one detail page per stub, retry the failures, then dedupe and sort."""
        details: Dict[RecordKey, RecordDetail] = {}
        items = list(stubs)
        urls = {s.key: s.url for s in items}

        self._enter(DETAIL_STAGE)
        self.product_board.initialize(s.url for s in items)
        self.progress.start_stage(DETAIL_STAGE, len(items))

        async def _attempt(stub: RecordStub, attempt: int, cancel: CancelToken) -> None:
            self.product_board.update(stub.url, TaskStatus.RUNNING)
            try:
                raw = await self._fetch(
                    lambda: self.fetcher.fetch_detail(stub.url), self.config.detail_timeout
                )
            except CrawlCancelled:
                self.product_board.update(stub.url, TaskStatus.STOPPED)
                raise
            except FetchFailure as exc:
                self.product_board.update(stub.url, TaskStatus.ERROR, str(exc))
                logger.debug("Detail %s attempt %d failed: %s", stub.url, attempt, exc)
                raise

            details[stub.key] = build_detail(stub, raw or {})
            self.product_board.update(stub.url, TaskStatus.SUCCESS)
            self.progress.advance()

        outcome = await self._coordinator(DETAIL_STAGE).run(
            items, lambda s: s.key, _attempt, self.config.detail_concurrency
        )
        if not self.cancel.cancelled:
            self.progress.complete_stage()

        result = DetailStageResult(
            details=dedupe_details(details.values()), outcome=outcome, urls=urls
        )
        if result.failed_urls:
            self.sink.emit(FAILED_PRODUCTS, {"failures": result.failure_report()})
        logger.info(
            "Detail stage: %d/%d records, %d failed",
            len(result.details), len(items), len(result.failed_urls),
        )
        return result
