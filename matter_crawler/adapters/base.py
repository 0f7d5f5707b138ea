from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

RecordKey = Tuple[int, int]


@dataclass
class RawListing:
    """Fields a fetcher extracts from one list-page entry, before indexing."""

    url: str
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None


class CatalogFetcher(Protocol):
    """
    Interface for the transport/extraction side of the crawler.
    Keep this small and stable: the engine owns scheduling, indexing and retries.
    """

    async def fetch_total_pages(self) -> int:
        """Return the number of list pages the catalog currently reports."""
        ...

    async def fetch_page(self, page_number: int) -> List[RawListing]:
        """
        Return the entries of one list page in source (top-to-bottom) order.
        Raise on transport failure; an empty list is a valid answer.
        """
        ...

    async def fetch_detail(self, url: str) -> Mapping[str, Any]:
        """Return raw detail attributes keyed by RecordDetail field name."""
        ...

    async def close(self) -> None:
        ...


def page_id_for(page_number: int, total_site_pages: int) -> int:
    """Newest-first pagination: site page 1 maps to the highest page id."""
    return total_site_pages - page_number


def page_number_for(page_id: int, total_site_pages: int) -> int:
    return total_site_pages - page_id


@dataclass
class RecordStub:
    """Lightweight record collected from a list page."""

    url: str
    page_id: int
    index_in_page: int
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None

    @property
    def key(self) -> RecordKey:
        return (self.page_id, self.index_in_page)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Drop unset keys for a cleaner export.
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_listings(cls, listings: List[RawListing], page_id: int) -> List["RecordStub"]:
        """
        Index one page's listings. Sources render newest first, so the entries are
        reversed: index 0 is the oldest record on the page.
        """
        return [
            cls(
                url=item.url,
                page_id=page_id,
                index_in_page=idx,
                manufacturer=item.manufacturer,
                model=item.model,
                certificate_id=item.certificate_id,
            )
            for idx, item in enumerate(reversed(listings))
        ]


@dataclass
class RecordDetail:
    """Normalized detail record; a superset of RecordStub."""

    url: str
    page_id: int
    index_in_page: int
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    certificate_id: Optional[str] = None
    id: Optional[str] = None
    device_type: Optional[str] = None
    certification_date: Optional[str] = None
    software_version: Optional[str] = None
    hardware_version: Optional[str] = None
    firmware_version: Optional[str] = None
    vid: Optional[int] = None
    pid: Optional[int] = None
    family_sku: Optional[str] = None
    family_variant_sku: Optional[str] = None
    family_id: Optional[str] = None
    tis_trp_tested: Optional[str] = None
    specification_version: Optional[str] = None
    transport_interface: Optional[str] = None
    primary_device_type_id: Optional[str] = None
    application_categories: List[str] = field(default_factory=list)

    @property
    def key(self) -> RecordKey:
        return (self.page_id, self.index_in_page)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        clean = {k: v for k, v in data.items() if v is not None}
        clean["application_categories"] = list(self.application_categories)
        return clean

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecordDetail":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
