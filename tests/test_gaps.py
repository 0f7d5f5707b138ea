"""Tests for gap detection and gap collection."""

import pytest

from matter_crawler.adapters.base import RecordDetail
from matter_crawler.engines.events import GAP_COMPLETE
from matter_crawler.engines.gaps import GapCollector, GapDetector, PageGap
from matter_crawler.engines.pool import CancelToken
from matter_crawler.storage import MemoryRecordStore

from conftest import FakeFetcher


def _store(keys):
    return MemoryRecordStore(
        RecordDetail(url=f"https://catalog.test/{p}-{i}", page_id=p, index_in_page=i) for p, i in keys
    )


def _full(page_ids, per_page=3, skip=()):
    return [(p, i) for p in page_ids for i in range(per_page) if (p, i) not in skip]


class TestGapDetector:
    """Test cases for GapDetector."""

    def test_classifies_missing_pages(self, config):
        keys = _full([0]) + _full([2], skip={(2, 1)}) + [(3, 0)]
        report = GapDetector(config).detect(_store(keys), total_site_pages=5)

        assert report.completely_missing_page_ids == [1]
        assert report.partially_missing_page_ids == [2]
        gaps = {g.page_id: g for g in report.missing_pages}
        assert gaps[1].missing_indices == [0, 1, 2]
        assert gaps[2].missing_indices == [1]
        assert gaps[2].actual_count == 2
        assert report.total_missing_records == 4

    def test_short_newest_page_is_not_a_gap(self, config):
        keys = _full([0, 1]) + [(2, 0), (2, 1)]
        report = GapDetector(config).detect(_store(keys), total_site_pages=3)

        assert not report.has_gaps
        assert report.total_expected == 8
        assert report.completion_percentage == 100.0

    def test_hole_in_newest_page_is_a_gap(self, config):
        keys = _full([0]) + [(1, 0), (1, 2)]
        report = GapDetector(config).detect(_store(keys), total_site_pages=2)

        assert report.partially_missing_page_ids == [1]
        assert report.missing_pages[0].missing_indices == [1]

    def test_empty_store(self, config):
        report = GapDetector(config).detect(MemoryRecordStore(), total_site_pages=10)
        assert report.missing_pages == []
        assert report.recommended_crawling_ranges == []

    def test_contiguous_pages_merge_into_one_range(self, config):
        keys = _full([0]) + _full([2], skip={(2, 1)}) + [(3, 0)]
        report = GapDetector(config).detect(_store(keys), total_site_pages=5)

        assert len(report.recommended_crawling_ranges) == 1
        r = report.recommended_crawling_ranges[0]
        assert (r.start_page, r.end_page) == (3, 4)
        assert r.missing_page_ids == [1, 2]
        assert r.estimated_records == 4
        assert r.priority == 1

    def test_ranges_sorted_by_priority(self, config):
        keys = _full([0], skip={(0, 2)}) + _full([1, 2, 3, 4]) + _full([6, 7, 8])
        report = GapDetector(config).detect(_store(keys), total_site_pages=10)

        ranges = [(r.start_page, r.end_page, r.priority) for r in report.recommended_crawling_ranges]
        assert ranges == [(5, 5, 1), (10, 10, 3)]

    def test_merge_distance(self, config):
        gaps = [PageGap(7, [0, 1, 2], 3, 0), PageGap(5, [0], 3, 2)]
        detector = GapDetector(config.with_overrides(gap_merge_distance=1))

        ranges = detector.recommend_ranges(gaps, total_site_pages=10)

        assert [(r.start_page, r.end_page) for r in ranges] == [(3, 5)]

    def test_report_format_and_dict(self, config):
        keys = _full([0]) + _full([2], skip={(2, 1)}) + [(3, 0)]
        report = GapDetector(config).detect(_store(keys), total_site_pages=5)

        text = report.format()
        assert "Completely missing pages (1)" in text
        assert "page id 2: 2/3 stored, missing indices [1]" in text
        data = report.to_dict()
        assert data["summary"]["total_expected"] == 10
        assert data["summary"]["completion_percentage"] == 60.0
        assert report.missing_keys() == {(1, 0), (1, 1), (1, 2), (2, 1)}


class TestGapCollector:
    """Test cases for GapCollector."""

    def _report(self, config, store):
        return GapDetector(config).detect(store, total_site_pages=5)

    @pytest.mark.asyncio
    async def test_collects_only_missing_pages(self, config, sink):
        store = _store(_full([0, 3, 4]) + _full([2], skip={(2, 1)}))
        fetcher = FakeFetcher(total_pages=5, per_page=3)
        report = self._report(config, store)

        collector = GapCollector(fetcher, store, config, sink, CancelToken())
        result = await collector.collect(report)

        assert sorted(fetcher.page_calls) == [3, 4]
        assert result.collected_pages == [3, 4]
        assert result.collected_records == 4
        assert result.new_records == 4
        # Records already stored on a partially missing page are not fetched again.
        assert sorted(fetcher.detail_calls) == sorted(
            [FakeFetcher.url(3, 1)] + [FakeFetcher.url(4, k) for k in range(3)]
        )
        assert result.success
        assert sink.of_type(GAP_COMPLETE)[-1]["new_records"] == 4

        after = GapDetector(config).detect(store, total_site_pages=5)
        assert not after.has_gaps

    @pytest.mark.asyncio
    async def test_extended_collection_widens_pages(self, config, sink):
        store = _store(_full([0, 2, 3, 4]))
        fetcher = FakeFetcher(total_pages=5, per_page=3)
        report = self._report(config, store)

        collector = GapCollector(fetcher, store, config, sink, CancelToken())
        assert collector.target_pages(report) == [4]
        result = await collector.collect(report, extended=True, with_details=False)

        assert result.target_pages == [3, 4, 5]
        assert sorted(fetcher.page_calls) == [3, 4, 5]
        assert result.collected_records == 3
        assert fetcher.detail_calls == []
        assert result.extended

    @pytest.mark.asyncio
    async def test_failed_pages_are_reported(self, config, sink):
        store = _store(_full([0, 2, 3, 4]))
        fetcher = FakeFetcher(total_pages=5, per_page=3, page_failures={4: -1})
        report = self._report(config, store)

        result = await GapCollector(fetcher, store, config, sink, CancelToken()).collect(report)

        assert result.failed_pages == [4]
        assert not result.success
        assert result.new_records == 0

    @pytest.mark.asyncio
    async def test_no_gaps(self, config, sink):
        store = _store(_full([0, 1]))
        report = GapDetector(config).detect(store, total_site_pages=2)
        fetcher = FakeFetcher(total_pages=2)

        result = await GapCollector(fetcher, store, config, sink, CancelToken()).collect(report)

        assert result.target_pages == []
        assert fetcher.page_calls == []
