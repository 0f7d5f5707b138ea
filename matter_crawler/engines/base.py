from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod

from ..adapters.base import RecordDetail, RecordStub
from ..utils.records import ConsistencyReport


@dataclass
class CrawlReport:
    stubs: List[RecordStub] = field(default_factory=list)
    details: List[RecordDetail] = field(default_factory=list)
    total_site_pages: int = 0
    planned_pages: List[int] = field(default_factory=list)
    failed_pages: List[Dict[str, Any]] = field(default_factory=list)  # {key, errors}
    failed_products: List[Dict[str, Any]] = field(default_factory=list)
    consistency: Optional[ConsistencyReport] = None
    saved_records: int = 0
    stopped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_site_pages": self.total_site_pages,
            "planned_pages": list(self.planned_pages),
            "stub_count": len(self.stubs),
            "detail_count": len(self.details),
            "failed_pages": self.failed_pages,
            "failed_products": self.failed_products,
            "consistency": self.consistency.to_dict() if self.consistency else None,
            "saved_records": self.saved_records,
            "stopped": self.stopped,
        }


class CrawlEngine(ABC):
    """
    Abstract engine interface. Implementations own the crawl lifecycle.
    """
    @abstractmethod
    async def crawl(self) -> CrawlReport:  # pragma: no cover - interface
        ...

    @abstractmethod
    def request_cancel(self) -> bool:  # pragma: no cover - interface
        ...
