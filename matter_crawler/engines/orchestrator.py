"""
Crawl orchestrator: plans the page range, runs the list and detail stages,
validates, exports and persists. One active run per instance.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from ..adapters.base import CatalogFetcher, RecordDetail, RecordStub
from ..config import CrawlConfig
from ..errors import CrawlAlreadyRunning, CrawlCancelled, CrawlError
from ..export.base import DETAIL_DUMP_PREFIX, LIST_DUMP_PREFIX, Exporter, timestamped_path
from ..storage import RecordStore, SQLiteRecordStore
from ..utils.loader import load_symbol
from ..utils.records import validate_consistency
from .base import CrawlEngine, CrawlReport
from .events import (
    COMPLETE, ERROR, EventSink, LoggingEventSink, PHASE1_COMPLETE, STATE_CHANGED, STOPPED, WARNING,
)
from .gaps import GapCollectionResult, GapCollector, GapDetector, GapReport
from .planner import PagePlanner
from .pool import CancelToken
from .progress import DETAIL_STAGE, LIST_STAGE, ProgressReporter
from .stages import StageRunner

logger = logging.getLogger(__name__)


class CrawlState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LIST_COLLECTING = "list_collecting"
    LIST_RETRY = "list_retry"
    DETAILING = "detailing"
    DETAIL_RETRY = "detail_retry"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


_STAGE_STATES = {LIST_STAGE: CrawlState.LIST_COLLECTING, DETAIL_STAGE: CrawlState.DETAILING}
_RETRY_STATES = {LIST_STAGE: CrawlState.LIST_RETRY, DETAIL_STAGE: CrawlState.DETAIL_RETRY}


class CrawlOrchestrator(CrawlEngine):
    """
    Drives one crawl at a time.

    - crawl(): plan, list stage, detail stage, validate, export, persist.
    - collect_gaps(): re-collect pages the store is missing records for.
    - request_cancel(): cooperative stop; in-flight fetches lose their race.

    A second start while a run is active raises CrawlAlreadyRunning.
    """

    def __init__(
        self,
        config: CrawlConfig,
        fetcher: Optional[CatalogFetcher] = None,
        store: Optional[RecordStore] = None,
        sink: Optional[EventSink] = None,
        exporter: Optional[Exporter] = None,
    ) -> None:
        self.config = config
        # Dotted paths allow swapping the fetcher/exporter without code changes.
        self.fetcher: CatalogFetcher = fetcher or load_symbol(config.fetcher)(config)
        self.store: RecordStore = store or SQLiteRecordStore(config.database_path)
        self.sink: EventSink = sink or LoggingEventSink()
        self.exporter: Exporter = exporter or load_symbol(config.exporter)()
        self.planner = PagePlanner(self.fetcher, self.store, config)
        self.progress: Optional[ProgressReporter] = None
        self.last_report: Optional[CrawlReport] = None
        self.last_gap_result: Optional[GapCollectionResult] = None
        self._state = CrawlState.IDLE
        self._active = False
        self._cancel: Optional[CancelToken] = None

    # ---------- Lifecycle ----------

    @property
    def state(self) -> CrawlState:
        return self._state

    @property
    def is_crawling(self) -> bool:
        return self._active

    def request_cancel(self) -> bool:
        """Ask the active run to stop. Returns False when nothing is running."""
        if not self._active or self._cancel is None:
            return False
        if not self._cancel.cancelled:
            logger.info("Cancel requested in state %s", self._state.value)
            self._cancel.cancel()
        return True

    def reset(self) -> None:
        if self._active:
            raise CrawlAlreadyRunning("Cannot reset while a run is active")
        self.planner.cache.invalidate()
        self.progress = None
        self.last_report = None
        self.last_gap_result = None
        self._set_state(CrawlState.IDLE)

    async def close(self) -> None:
        await self.fetcher.close()
        self.store.close()

    def _set_state(self, state: CrawlState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.debug("State %s -> %s", previous.value, state.value)
        self.sink.emit(STATE_CHANGED, {"state": state.value, "previous": previous.value})

    @asynccontextmanager
    async def _run(self, what: str) -> AsyncIterator[CancelToken]:
        if self._active:
            raise CrawlAlreadyRunning(f"Cannot start {what}: a run is already active ({self._state.value})")
        self._active = True
        self._cancel = cancel = CancelToken()
        try:
            self._set_state(CrawlState.INITIALIZING)
            yield cancel
        except CrawlCancelled:
            self._set_state(CrawlState.CANCELLED)
            self.sink.emit(STOPPED, {"stage": None, "tasks": []})
        except Exception as exc:
            logger.exception("%s failed", what.capitalize())
            self._set_state(CrawlState.ERROR)
            self.sink.emit(ERROR, {"message": str(exc) or exc.__class__.__name__, "details": repr(exc)})
            if isinstance(exc, CrawlError):
                raise
            raise CrawlError(f"{what.capitalize()} failed: {exc}") from exc
        finally:
            self._active = False

    def _on_stage(self, stage: str) -> None:
        self._set_state(_STAGE_STATES[stage])

    def _on_retry(self, stage: str, attempt: int) -> None:
        self._set_state(_RETRY_STATES[stage])

    def _runner(self, cancel: CancelToken) -> StageRunner:
        self.progress = ProgressReporter(self.sink)
        return StageRunner(
            self.fetcher, self.config, self.sink, self.progress, cancel,
            on_stage=self._on_stage, on_retry=self._on_retry,
        )

    # ---------- Crawl ----------

    async def crawl(self) -> CrawlReport:
        report = CrawlReport()
        self.last_report = report
        async with self._run("crawl") as cancel:
            crawl_range, total = await self.planner.plan()
            report.total_site_pages = total
            report.planned_pages = crawl_range.page_numbers()
            runner = self._runner(cancel)

            listed = await runner.collect_list(report.planned_pages, total)
            report.stubs = listed.stubs
            report.failed_pages = listed.failure_report()
            if listed.failed_pages:
                self._warn(f"{len(listed.failed_pages)} page(s) failed after all retries", listed.failed_pages)
            if cancel.cancelled:
                return self._stopped(report, runner, LIST_STAGE)

            self.sink.emit(PHASE1_COMPLETE, {
                "records": [s.to_dict() for s in report.stubs],
                "count": len(report.stubs),
                "failures": report.failed_pages,
            })
            self._export(report.stubs, LIST_DUMP_PREFIX)
            if not report.stubs:
                self._warn("No records collected from the list pages", [])

            detailed = await runner.collect_details(report.stubs)
            report.details = detailed.details
            report.failed_products = detailed.failure_report()
            if cancel.cancelled:
                return self._stopped(report, runner, DETAIL_STAGE)

            report.consistency = validate_consistency(report.stubs, report.details)
            self._export(report.details, DETAIL_DUMP_PREFIX)
            if self.config.auto_save and report.details:
                report.saved_records = self.store.save_details(report.details)

            self._set_state(CrawlState.COMPLETED)
            self.sink.emit(COMPLETE, {
                "records": [d.to_dict() for d in report.details],
                "count": len(report.details),
                "failures": report.failed_products,
                "failed_pages": report.failed_pages,
                "consistent": report.consistency.consistent,
            })
            logger.info(
                "Crawl complete: %d stubs, %d details, %d failed pages, %d failed products",
                len(report.stubs), len(report.details),
                len(report.failed_pages), len(report.failed_products),
            )
        return report

    def _stopped(self, report: CrawlReport, runner: StageRunner, stage: str) -> CrawlReport:
        report.stopped = True
        self._stopped_snapshot(runner, stage)
        return report

    def _stopped_snapshot(self, runner: StageRunner, stage: str) -> None:
        self._set_state(CrawlState.CANCELLED)
        board = runner.page_board if stage == LIST_STAGE else runner.product_board
        self.sink.emit(STOPPED, {"stage": stage, "tasks": board.snapshot()})
        logger.info("Run stopped during %s stage: %s", stage, board.counts())

    def _warn(self, message: str, keys: List[Any]) -> None:
        logger.warning(message)
        self.sink.emit(WARNING, {"message": message, "keys": list(keys)})

    def _export(self, records: List[RecordStub] | List[RecordDetail], prefix: str) -> Optional[str]:
        path = timestamped_path(self.config.output_dir, prefix)
        try:
            self.exporter.export([r.to_dict() for r in records], path)
        except Exception as exc:
            logger.warning("Export to %s failed: %r", path, exc)
            return None
        logger.info("Exported %d records to %s", len(records), path)
        return path

    # ---------- Status & gaps ----------

    async def check_status(self) -> Dict[str, Any]:
        status = await self.planner.status()
        status["state"] = self._state.value
        status["is_crawling"] = self._active
        return status

    async def detect_gaps(self, force: bool = False) -> GapReport:
        total = await self.planner.total_pages(force=force)
        return GapDetector(self.config).detect(self.store, total)

    async def collect_gaps(self, extended: bool = False, with_details: bool = True) -> GapCollectionResult:
        result = GapCollectionResult(target_pages=[], extended=extended)
        async with self._run("gap collection") as cancel:
            report = await self.detect_gaps()
            stages = (LIST_STAGE, DETAIL_STAGE) if with_details else (LIST_STAGE,)
            self.progress = ProgressReporter(self.sink, stages=stages)
            collector = GapCollector(
                self.fetcher, self.store, self.config, self.sink, cancel,
                progress=self.progress, on_stage=self._on_stage, on_retry=self._on_retry,
            )
            result = await collector.collect(report, extended=extended, with_details=with_details)
            if result.failed_pages:
                self._warn(f"{len(result.failed_pages)} gap page(s) failed after all retries", result.failed_pages)
            if result.stopped:
                self._stopped_snapshot(collector.runner, collector.runner.current_stage or LIST_STAGE)
            else:
                self._set_state(CrawlState.COMPLETED)
        self.last_gap_result = result
        return result
