"""Shared fakes: an in-memory catalog fetcher and a recording exporter."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Set

import pytest

from matter_crawler.adapters.base import RawListing
from matter_crawler.config import CrawlConfig
from matter_crawler.engines.events import BufferedEventSink
from matter_crawler.errors import TransportError
from matter_crawler.storage import MemoryRecordStore


class FakeFetcher:
    """
    Catalog with ``total_pages`` pages of ``per_page`` listings each.

    ``page_failures`` / ``detail_failures`` map a page number or url to how many
    calls fail before one succeeds (-1 fails forever). ``empty_pages`` always
    come back with no listings.
    """

    def __init__(
        self,
        total_pages: int = 5,
        per_page: int = 3,
        *,
        last_page_size: Optional[int] = None,
        page_failures: Optional[Dict[int, int]] = None,
        detail_failures: Optional[Dict[str, int]] = None,
        empty_pages: Optional[Set[int]] = None,
        latency: float = 0.0,
        total_latency: float = 0.0,
    ) -> None:
        self.total_pages = total_pages
        self.per_page = per_page
        self.last_page_size = last_page_size
        self.page_failures = dict(page_failures or {})
        self.detail_failures = dict(detail_failures or {})
        self.empty_pages = set(empty_pages or ())
        self.latency = latency
        self.total_latency = total_latency
        self.page_calls: List[int] = []
        self.detail_calls: List[str] = []
        self.total_calls = 0
        self.active = 0
        self.peak_active = 0
        self.closed = False

    @staticmethod
    def url(page_number: int, position: int) -> str:
        return f"https://catalog.test/product/{page_number}-{position}"

    def listings(self, page_number: int) -> List[RawListing]:
        size = self.per_page
        if page_number == self.total_pages and self.last_page_size is not None:
            size = self.last_page_size
        return [
            RawListing(
                url=self.url(page_number, k),
                manufacturer="Acme",
                model=f"Model {page_number}-{k}",
                certificate_id=f"CSA{page_number:03d}{k:02d}",
            )
            for k in range(size)
        ]

    def _should_fail(self, table: Dict[Any, int], key: Any) -> bool:
        remaining = table.get(key, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            table[key] = remaining - 1
        return True

    async def fetch_total_pages(self) -> int:
        self.total_calls += 1
        if self.total_latency:
            await asyncio.sleep(self.total_latency)
        return self.total_pages

    async def fetch_page(self, page_number: int) -> List[RawListing]:
        self.page_calls.append(page_number)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            if self._should_fail(self.page_failures, page_number):
                raise TransportError(f"HTTP 503 for page {page_number}")
            if page_number in self.empty_pages:
                return []
            return self.listings(page_number)
        finally:
            self.active -= 1

    async def fetch_detail(self, url: str) -> Mapping[str, Any]:
        self.detail_calls.append(url)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._should_fail(self.detail_failures, url):
            raise TransportError(f"HTTP 503 for {url}")
        suffix = url.rsplit("/", 1)[-1]
        return {
            "manufacturer": "Acme",
            "model": f"Model {suffix}",
            "vid": "0xFFF1",
            "pid": "8000",
            "device_type": "Extended Color Light",
            "application_categories": "Lighting, Smart Home",
            "certification_date": "2024-05-01",
        }

    async def close(self) -> None:
        self.closed = True


class RecordingExporter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.exports: List[Dict[str, Any]] = []

    def export(self, records: List[Dict[str, Any]], path: str) -> None:
        if self.fail:
            raise OSError("disk full")
        self.exports.append({"path": path, "records": records})


@pytest.fixture
def config(tmp_path) -> CrawlConfig:
    return CrawlConfig(
        products_per_page=3,
        min_request_delay=0.0,
        max_request_delay=0.0,
        page_timeout=1.0,
        detail_timeout=1.0,
        initial_concurrency=3,
        detail_concurrency=3,
        retry_concurrency=2,
        retry_start=2,
        retry_max=4,
        batch_delay=0.0,
        output_dir=str(tmp_path / "out"),
        database_path=str(tmp_path / "db.sqlite"),
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def sink() -> BufferedEventSink:
    return BufferedEventSink(maxlen=10_000)


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def exporter() -> RecordingExporter:
    return RecordingExporter()
