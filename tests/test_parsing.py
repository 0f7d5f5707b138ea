"""Tests for value normalization and catalog HTML extraction."""

import pytest

from matter_crawler.adapters.base import RecordStub
from matter_crawler.adapters.catalog import CatalogPageFetcher, parse_detail, parse_listings, parse_total_pages
from matter_crawler.config import CrawlConfig
from matter_crawler.utils.parsing import build_detail, normalize_url, parse_hex_id, split_categories

LIST_HTML = """
<div class="post-feed">
  <article>
    <a href="https://csa-iot.org/csa_product/bulb-a/#top">Bulb A</a>
    <h3 class="entry-title">Bulb A</h3>
    <p class="entry-company">Acme</p>
    <p class="entry-certificate-id">Certificate ID: CSA22001MAT40001-24</p>
  </article>
  <article>
    <a href="https://csa-iot.org/csa_product/plug-b/">Plug B</a>
    <h3 class="entry-title">Plug   B</h3>
  </article>
  <article><span>no link</span></article>
</div>
<div class="pagination-wrapper"><nav><div>
  <a><span>1</span></a><a><span>2</span></a><a><span>148</span></a><a><span>Next</span></a>
</div></nav></div>
"""

DETAIL_HTML = """
<h1 class="entry-title">Govee Smart Bulb</h1>
<div class="entry-product-details"><div><ul>
  <li><span class="label">Vendor ID:</span><span class="value">0x1387</span></li>
  <li><span class="label">Product ID</span><span class="value">6011</span></li>
  <li><span class="label">Certification Date</span><span class="value">2024-05-01</span></li>
  <li><span class="label">Colour</span><span class="value">red</span></li>
</ul></div></div>
<table class="product-certificates-table">
  <tr><td>Certificate ID</td><td>CSA24001MAT42001-24</td></tr>
  <tr><td>Software Version</td><td>1.2.3</td></tr>
</table>
<div class="device-type">Device Type: Extended Color Light</div>
<ul class="categories"><li>Lighting</li><li>Smart Home</li></ul>
"""


class TestValueParsing:
    """Test cases for the scalar normalizers."""

    @pytest.mark.parametrize("value,expected", [
        ("0xFFF1", 0xFFF1),
        ("fff1", 0xFFF1),
        ("8000", 0x8000),
        (4660, 4660),
        ("n/a", None),
        ("", None),
        (None, None),
        ("not-hex", None),
    ])
    def test_parse_hex_id(self, value, expected):
        assert parse_hex_id(value) == expected

    def test_split_categories(self):
        assert split_categories("Lighting, Smart Home;Lighting") == ["Lighting", "Smart Home"]
        assert split_categories(["A", " ", "B"]) == ["A", "B"]

    def test_normalize_url_strips_fragment(self):
        assert normalize_url(" https://x.test/p/#frag ") == "https://x.test/p/"


class TestBuildDetail:
    """Test cases for build_detail."""

    def test_identity_comes_from_stub(self):
        stub = RecordStub(url="https://x.test/p", page_id=7, index_in_page=2, manufacturer="Acme", model="M1")
        detail = build_detail(stub, {"model": "M1 Pro", "vid": "0x1387"})

        assert detail.key == (7, 2)
        assert detail.id == "csa-matter-7-2"
        assert detail.model == "M1 Pro"
        assert detail.manufacturer == "Acme"
        assert detail.vid == 0x1387

    def test_fallbacks(self):
        stub = RecordStub(url="https://x.test/p", page_id=0, index_in_page=0)
        detail = build_detail(stub, {"title": "Govee Smart Bulb"})

        assert detail.model == "Govee Smart Bulb"
        assert detail.manufacturer == "Govee"
        assert detail.device_type == "Matter Device"
        assert detail.application_categories == ["Matter Device"]


class TestCatalogParsing:
    """Test cases for the catalog page extractors."""

    def test_total_pages(self):
        assert parse_total_pages(LIST_HTML) == 148

    def test_single_page_without_pagination(self):
        html = '<div class="post-feed"><article><a href="/p">P</a></article></div>'
        assert parse_total_pages(html) == 1
        assert parse_total_pages("<html></html>") == 0

    def test_listings(self):
        listings = parse_listings(LIST_HTML)

        assert [l.url for l in listings] == [
            "https://csa-iot.org/csa_product/bulb-a/",
            "https://csa-iot.org/csa_product/plug-b/",
        ]
        assert listings[0].manufacturer == "Acme"
        assert listings[0].certificate_id == "CSA22001MAT40001-24"
        assert listings[1].model == "Plug B"
        assert listings[1].certificate_id is None

    def test_detail(self):
        raw = parse_detail(DETAIL_HTML)

        assert raw["title"] == "Govee Smart Bulb"
        assert raw["vid"] == "0x1387"
        assert raw["pid"] == "6011"
        assert raw["certificate_id"] == "CSA24001MAT42001-24"
        assert raw["software_version"] == "1.2.3"
        assert raw["device_type"] == "Extended Color Light"
        assert raw["application_categories"] == ["Lighting", "Smart Home"]
        assert "colour" not in raw

    def test_page_url(self):
        fetcher = CatalogPageFetcher(CrawlConfig(filter_url="https://x.test/?a=1"))
        assert fetcher.page_url(3) == "https://x.test/?a=1&paged=3"
