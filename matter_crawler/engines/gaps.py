"""
Gap detection against persisted records, and targeted re-collection of the gaps.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..adapters.base import CatalogFetcher, page_number_for
from ..config import CrawlConfig
from ..storage import RecordStore
from .events import EventSink, GAP_COMPLETE
from .pool import CancelToken
from .progress import ProgressReporter
from .stages import StageRunner

logger = logging.getLogger(__name__)

HIGH_PRIORITY = 1
NORMAL_PRIORITY = 2
LOW_PRIORITY = 3

# A range touching this many missing pages is high priority even without a fully empty page.
_MANY_MISSING_PAGES = 5


@dataclass
class PageGap:
    page_id: int
    missing_indices: List[int]
    expected_count: int
    actual_count: int

    @property
    def completely_missing(self) -> bool:
        return self.actual_count == 0

    @property
    def missing_count(self) -> int:
        return len(self.missing_indices)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_id": self.page_id,
            "missing_indices": list(self.missing_indices),
            "expected_count": self.expected_count,
            "actual_count": self.actual_count,
        }


@dataclass
class CrawlingPageRange:
    """Contiguous run of site pages (1 = newest) covering one or more gaps."""

    start_page: int
    end_page: int
    missing_page_ids: List[int]
    estimated_records: int
    priority: int

    def page_numbers(self, margin: int = 0, total_site_pages: Optional[int] = None) -> List[int]:
        start = max(1, self.start_page - margin)
        end = self.end_page + margin
        if total_site_pages is not None:
            end = min(end, total_site_pages)
        return list(range(start, end + 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_page": self.start_page,
            "end_page": self.end_page,
            "missing_page_ids": list(self.missing_page_ids),
            "estimated_records": self.estimated_records,
            "priority": self.priority,
        }


@dataclass
class GapReport:
    total_site_pages: int
    missing_pages: List[PageGap] = field(default_factory=list)
    completely_missing_page_ids: List[int] = field(default_factory=list)
    partially_missing_page_ids: List[int] = field(default_factory=list)
    total_missing_records: int = 0
    total_expected: int = 0
    recommended_crawling_ranges: List[CrawlingPageRange] = field(default_factory=list)

    @property
    def total_actual(self) -> int:
        return self.total_expected - self.total_missing_records

    @property
    def completion_percentage(self) -> float:
        if not self.total_expected:
            return 100.0
        return self.total_actual / self.total_expected * 100.0

    @property
    def has_gaps(self) -> bool:
        return bool(self.missing_pages)

    def missing_keys(self) -> Set[tuple]:
        return {(g.page_id, i) for g in self.missing_pages for i in g.missing_indices}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_site_pages": self.total_site_pages,
            "missing_pages": [g.to_dict() for g in self.missing_pages],
            "completely_missing_page_ids": list(self.completely_missing_page_ids),
            "partially_missing_page_ids": list(self.partially_missing_page_ids),
            "total_missing_records": self.total_missing_records,
            "recommended_crawling_ranges": [r.to_dict() for r in self.recommended_crawling_ranges],
            "summary": {
                "total_expected": self.total_expected,
                "total_actual": self.total_actual,
                "completion_percentage": round(self.completion_percentage, 2),
            },
        }

    def format(self) -> str:
        lines = [
            "==================== Gap report ====================",
            f"Missing records:       {self.total_missing_records}",
            f"Completion:            {self.completion_percentage:.2f}%",
            f"Expected records:      {self.total_expected}",
            f"Stored records:        {self.total_actual}",
        ]
        if self.completely_missing_page_ids:
            lines.append(f"\nCompletely missing pages ({len(self.completely_missing_page_ids)}):")
            lines.append("  page ids: " + ", ".join(str(p) for p in self.completely_missing_page_ids))
        if self.partially_missing_page_ids:
            lines.append(f"\nPartially missing pages ({len(self.partially_missing_page_ids)}):")
            for gap in self.missing_pages:
                if not gap.completely_missing:
                    indices = ", ".join(str(i) for i in gap.missing_indices)
                    lines.append(
                        f"  page id {gap.page_id}: {gap.actual_count}/{gap.expected_count} stored,"
                        f" missing indices [{indices}]"
                    )
        if self.recommended_crawling_ranges:
            lines.append("\nRecommended ranges:")
            for n, r in enumerate(self.recommended_crawling_ranges, 1):
                ids = ", ".join(str(p) for p in r.missing_page_ids)
                lines.append(
                    f"  {n}. site pages {r.start_page}-{r.end_page} (priority {r.priority},"
                    f" ~{r.estimated_records} records) page ids [{ids}]"
                )
        lines.append("====================================================")
        return "\n".join(lines)


class GapDetector:
    """Compares stored per-page index sets with what each page should hold."""

    def __init__(self, config: CrawlConfig) -> None:
        self.config = config

    def detect(self, store: RecordStore, total_site_pages: int) -> GapReport:
        per_page = self.config.products_per_page
        pages = store.page_indices()
        report = GapReport(total_site_pages=total_site_pages)
        if not pages:
            logger.info("No stored records; nothing to compare")
            return report

        max_page_id = max(pages)
        for page_id in range(0, max_page_id + 1):
            stored = pages.get(page_id, set())
            if page_id == max_page_id:
                # The newest stored page can legitimately be short.
                expected = min(per_page, max(stored) + 1)
            else:
                expected = per_page
            report.total_expected += expected

            missing = [i for i in range(expected) if i not in stored]
            if not missing:
                continue
            actual = expected - len(missing)
            report.missing_pages.append(PageGap(page_id, missing, expected, actual))
            report.total_missing_records += len(missing)
            if actual == 0:
                report.completely_missing_page_ids.append(page_id)
            else:
                report.partially_missing_page_ids.append(page_id)

        report.recommended_crawling_ranges = self.recommend_ranges(report.missing_pages, total_site_pages)
        logger.info(
            "Gap detection: %d missing records, %d empty pages, %d partial pages, %.2f%% complete",
            report.total_missing_records,
            len(report.completely_missing_page_ids),
            len(report.partially_missing_page_ids),
            report.completion_percentage,
        )
        return report

    def recommend_ranges(self, gaps: List[PageGap], total_site_pages: int) -> List[CrawlingPageRange]:
        by_site_page: Dict[int, PageGap] = {}
        for gap in gaps:
            site_page = page_number_for(gap.page_id, total_site_pages)
            if 1 <= site_page <= total_site_pages:
                by_site_page[site_page] = gap
            else:
                logger.warning("Page id %d is outside the %d site pages", gap.page_id, total_site_pages)

        runs: List[List[int]] = []
        for site_page in sorted(by_site_page):
            if runs and site_page - runs[-1][-1] <= self.config.gap_merge_distance + 1:
                runs[-1].append(site_page)
            else:
                runs.append([site_page])

        ranges = [self._range(run, by_site_page) for run in runs]
        ranges.sort(key=lambda r: (r.priority, r.start_page))
        return ranges

    def _range(self, run: List[int], by_site_page: Dict[int, PageGap]) -> CrawlingPageRange:
        members = [by_site_page[p] for p in run]
        missing_records = sum(g.missing_count for g in members)
        empty_pages = sum(1 for g in members if g.completely_missing)
        if empty_pages or len(members) >= _MANY_MISSING_PAGES:
            priority = HIGH_PRIORITY
        elif missing_records * 2 >= self.config.products_per_page:
            priority = NORMAL_PRIORITY
        else:
            priority = LOW_PRIORITY
        return CrawlingPageRange(
            start_page=run[0],
            end_page=run[-1],
            missing_page_ids=sorted(g.page_id for g in members),
            estimated_records=missing_records,
            priority=priority,
        )


@dataclass
class GapCollectionResult:
    target_pages: List[int]
    collected_pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)
    collected_records: int = 0
    detail_records: int = 0
    new_records: int = 0
    missing_records: int = 0
    extended: bool = False
    stopped: bool = False

    @property
    def success(self) -> bool:
        return not self.failed_pages and not self.stopped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_pages": list(self.target_pages),
            "collected_pages": list(self.collected_pages),
            "failed_pages": list(self.failed_pages),
            "collected_records": self.collected_records,
            "detail_records": self.detail_records,
            "missing_records": self.missing_records,
            "new_records": self.new_records,
            "extended": self.extended,
            "stopped": self.stopped,
            "success": self.success,
        }


class GapCollector:
    """
    Re-runs the list stage (and optionally the detail stage) over the pages a
    GapReport recommends, keeping only records whose keys are missing.
    """

    def __init__(
        self,
        fetcher: CatalogFetcher,
        store: RecordStore,
        config: CrawlConfig,
        sink: EventSink,
        cancel: CancelToken,
        progress: Optional[ProgressReporter] = None,
        **hooks: Any,
    ) -> None:
        self.store = store
        self.config = config
        self.sink = sink
        self.cancel = cancel
        self.runner = StageRunner(
            fetcher, config, sink, progress or ProgressReporter(sink), cancel, **hooks
        )

    def target_pages(self, report: GapReport, extended: bool = False) -> List[int]:
        margin = self.config.extended_margin if extended else 0
        pages: Set[int] = set()
        for r in report.recommended_crawling_ranges:
            pages.update(r.page_numbers(margin, report.total_site_pages))
        return sorted(pages)

    async def collect(
        self,
        report: GapReport,
        *,
        extended: bool = False,
        with_details: bool = True,
    ) -> GapCollectionResult:
        pages = self.target_pages(report, extended)
        result = GapCollectionResult(
            target_pages=pages, missing_records=report.total_missing_records, extended=extended
        )
        if not pages:
            logger.info("No gaps to collect")
            self.sink.emit(GAP_COMPLETE, result.to_dict())
            return result

        logger.info(
            "Collecting %d site pages for %d missing records%s",
            len(pages), report.total_missing_records, " (extended)" if extended else "",
        )
        listed = await self.runner.collect_list(pages, report.total_site_pages)
        result.collected_pages = listed.collected_pages
        result.failed_pages = listed.failed_pages

        wanted = report.missing_keys()
        stubs = [s for s in listed.stubs if s.key in wanted]
        result.collected_records = len(stubs)
        dropped = len(listed.stubs) - len(stubs)
        if dropped:
            logger.debug("Dropped %d records already stored or outside the gaps", dropped)

        if with_details and stubs and not self.cancel.cancelled:
            detailed = await self.runner.collect_details(stubs)
            result.detail_records = len(detailed.details)
            if detailed.details and self.config.auto_save:
                result.new_records = self.store.save_details(detailed.details)

        result.stopped = self.cancel.cancelled
        self.sink.emit(GAP_COMPLETE, result.to_dict())
        logger.info(
            "Gap collection: %d/%d pages, %d records kept, %d new",
            len(result.collected_pages), len(pages), result.collected_records, result.new_records,
        )
        return result
