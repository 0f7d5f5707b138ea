from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from aiohttp import ClientSession
from bs4 import BeautifulSoup

from .base import RawListing
from ..config import CrawlConfig
from ..utils.http import create_session, fetch_text
from ..utils.parsing import clean_text, normalize_url

logger = logging.getLogger(__name__)

_ARTICLE = "div.post-feed article"
_PAGINATION = "div.pagination-wrapper > nav > div > a > span"
_CERT_PREFIX = re.compile(r"^Certificate ID:\s*", re.IGNORECASE)
_DEVICE_TYPE = re.compile(r"Device Type:\s*(.+)", re.IGNORECASE)

# Detail-page labels (lowercased) mapped to RecordDetail field names.
LABEL_FIELDS = {
    "manufacturer": "manufacturer",
    "model": "model",
    "certificate id": "certificate_id",
    "certification id": "certificate_id",
    "certification date": "certification_date",
    "software version": "software_version",
    "hardware version": "hardware_version",
    "firmware version": "firmware_version",
    "vid": "vid",
    "vendor id": "vid",
    "pid": "pid",
    "product id": "pid",
    "family sku": "family_sku",
    "family variant sku": "family_variant_sku",
    "family id": "family_id",
    "tis/trp tested": "tis_trp_tested",
    "specification version": "specification_version",
    "transport interface": "transport_interface",
    "primary device type id": "primary_device_type_id",
    "device type": "device_type",
}


def parse_total_pages(html: str) -> int:
    """Highest page number in the pagination bar; 1 when the only page has products."""
    soup = BeautifulSoup(html, "html.parser")
    numbers = []
    for span in soup.select(_PAGINATION):
        text = span.get_text(strip=True)
        if text.isdigit():
            numbers.append(int(text))
    if numbers:
        return max(numbers)
    return 1 if soup.select(_ARTICLE) else 0


def parse_listings(html: str) -> List[RawListing]:
    """List entries in page (newest-first) order."""
    soup = BeautifulSoup(html, "html.parser")
    out: List[RawListing] = []
    for article in soup.select(_ARTICLE):
        link = article.find("a", href=True)
        if not link:
            continue
        cert_el = article.select_one("p.entry-certificate-id") or article.select_one("span.entry-cert-id")
        certificate_id = None
        if cert_el:
            certificate_id = clean_text(_CERT_PREFIX.sub("", cert_el.get_text(strip=True)))
        out.append(
            RawListing(
                url=normalize_url(link["href"]),
                manufacturer=_text(article.select_one("p.entry-company")),
                model=_text(article.select_one("h3.entry-title")),
                certificate_id=certificate_id,
            )
        )
    return out


def parse_detail(html: str) -> Dict[str, Any]:
    """Raw detail attributes keyed by RecordDetail field name."""
    soup = BeautifulSoup(html, "html.parser")
    raw: Dict[str, Any] = {}
    title = soup.select_one("h1.entry-title") or soup.find("h1")
    if title:
        raw["title"] = title.get_text(strip=True)

    for item in soup.select(".entry-product-details div ul li"):
        label = item.select_one("span.label")
        value = item.select_one("span.value")
        if label and value:
            _assign(raw, label.get_text(strip=True), value.get_text(strip=True))

    for row in soup.select(".product-certificates-table tr"):
        cells = row.find_all("td")
        if len(cells) >= 2:
            _assign(raw, cells[0].get_text(strip=True), cells[1].get_text(strip=True))

    if "device_type" not in raw:
        for selector in (".device-type", ".product-type"):
            el = soup.select_one(selector)
            if el:
                match = _DEVICE_TYPE.search(el.get_text(" ", strip=True))
                raw["device_type"] = match.group(1) if match else el.get_text(strip=True)
                break

    categories = [
        li.get_text(strip=True)
        for li in soup.select(".categories li, .application-categories li")
        if li.get_text(strip=True)
    ]
    if categories:
        raw["application_categories"] = categories
    return raw


def _text(el: Any) -> Optional[str]:
    return clean_text(el.get_text(strip=True)) if el else None


def _assign(raw: Dict[str, Any], label: str, value: str) -> None:
    field = LABEL_FIELDS.get(label.rstrip(":").strip().lower())
    if field and value and field not in raw:
        raw[field] = value


class CatalogPageFetcher:
    """
    Reference fetcher for the CSA-IoT catalog: aiohttp for transport,
    BeautifulSoup for extraction. Retries and deadlines belong to the engine.
    """

    def __init__(self, config: CrawlConfig) -> None:
        self.config = config
        self._session: Optional[ClientSession] = None

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = create_session()
        return self._session

    def page_url(self, page_number: int) -> str:
        return f"{self.config.filter_url}&paged={page_number}"

    async def _get(self, url: str, timeout: float) -> str:
        return await fetch_text(
            self._get_session(), url, timeout=timeout, user_agent=self.config.user_agent
        )

    async def fetch_total_pages(self) -> int:
        html = await self._get(self.config.filter_url, self.config.page_timeout)
        return parse_total_pages(html)

    async def fetch_page(self, page_number: int) -> List[RawListing]:
        html = await self._get(self.page_url(page_number), self.config.page_timeout)
        listings = parse_listings(html)
        logger.debug("Page %d: %d listings", page_number, len(listings))
        return listings

    async def fetch_detail(self, url: str) -> Mapping[str, Any]:
        html = await self._get(url, self.config.detail_timeout)
        return parse_detail(html)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
