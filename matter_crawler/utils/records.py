from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple, TypeVar, Union

from ..adapters.base import RecordDetail, RecordKey, RecordStub

logger = logging.getLogger(__name__)

R = TypeVar("R", RecordStub, RecordDetail)

COMPARED_FIELDS = ("model", "manufacturer", "certificate_id", "page_id", "index_in_page")

# Only this many urls are listed per class in the log output.
_LOG_SAMPLE = 10


def _merge(records: Iterable[R]) -> Dict[RecordKey, R]:
    merged: Dict[RecordKey, R] = {}
    for record in records:
        # Later entries overwrite earlier ones.
        merged[record.key] = record
    return merged


def dedupe_stubs(records: Iterable[RecordStub]) -> List[RecordStub]:
    """List-phase order: newest page first, natural order within a page."""
    unique = list(_merge(records).values())
    unique.sort(key=lambda r: (-r.page_id, r.index_in_page))
    return unique


def dedupe_details(records: Iterable[RecordDetail]) -> List[RecordDetail]:
    """Detail-phase order: oldest page first. Opposite page order to dedupe_stubs."""
    unique = list(_merge(records).values())
    unique.sort(key=lambda r: (r.page_id, r.index_in_page))
    return unique


@dataclass
class FieldDifference:
    field: str
    list_value: Any
    detail_value: Any


@dataclass
class ConsistencyReport:
    """Outcome of comparing the two collection stages of one run."""

    missing_in_list: List[RecordDetail] = field(default_factory=list)
    discrepancies: List[Tuple[str, List[FieldDifference]]] = field(default_factory=list)
    missing_in_detail: List[RecordStub] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not (self.missing_in_list or self.discrepancies or self.missing_in_detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_in_list": [d.url for d in self.missing_in_list],
            "discrepancies": [
                {
                    "url": url,
                    "differences": [
                        {"field": d.field, "list": d.list_value, "detail": d.detail_value}
                        for d in diffs
                    ],
                }
                for url, diffs in self.discrepancies
            ],
            "missing_in_detail": [s.url for s in self.missing_in_detail],
        }


def find_differences(stub: RecordStub, detail: RecordDetail) -> List[FieldDifference]:
    diffs: List[FieldDifference] = []
    for name in COMPARED_FIELDS:
        list_value = getattr(stub, name)
        detail_value = getattr(detail, name)
        if list_value is not None and detail_value is not None and list_value != detail_value:
            diffs.append(FieldDifference(name, list_value, detail_value))
    return diffs


def validate_consistency(
    stubs: Iterable[RecordStub],
    details: Iterable[RecordDetail],
) -> ConsistencyReport:
    """
    Cross-check the list and detail outputs of one run by url. Never raises;
    every finding is logged as a diagnostic and returned.
    """
    by_url: Dict[str, RecordStub] = {s.url: s for s in stubs if s.url}
    details = list(details)
    report = ConsistencyReport()

    for detail in details:
        stub = by_url.get(detail.url)
        if stub is None:
            report.missing_in_list.append(detail)
            continue
        diffs = find_differences(stub, detail)
        if diffs:
            report.discrepancies.append((detail.url, diffs))

    detail_urls = {d.url for d in details}
    report.missing_in_detail = [s for s in by_url.values() if s.url not in detail_urls]

    _log_report(report)
    return report


def _log_report(report: ConsistencyReport) -> None:
    logger.info(
        "Consistency check: %d detail-only, %d mismatched, %d list-only",
        len(report.missing_in_list),
        len(report.discrepancies),
        len(report.missing_in_detail),
    )
    for detail in report.missing_in_list[:_LOG_SAMPLE]:
        logger.debug("  detail-only %s (id=%s)", detail.url, detail.id)
    for url, diffs in report.discrepancies[:_LOG_SAMPLE]:
        for d in diffs:
            logger.debug("  %s %s: list=%r detail=%r", url, d.field, d.list_value, d.detail_value)
    for stub in report.missing_in_detail[:_LOG_SAMPLE]:
        logger.debug("  list-only %s (page_id=%s, index=%s)", stub.url, stub.page_id, stub.index_in_page)


def page_index_sets(records: Iterable[Union[RecordStub, RecordDetail]]) -> Dict[int, set]:
    """Group stored indices by page id."""
    pages: Dict[int, set] = {}
    for record in records:
        pages.setdefault(record.page_id, set()).add(record.index_in_page)
    return pages
