"""Record persistence: the summary and per-page index sets the planner and gap detector read."""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .adapters.base import RecordDetail, RecordKey
from .utils.records import page_index_sets

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS products (
    url TEXT NOT NULL,
    page_id INTEGER NOT NULL,
    index_in_page INTEGER NOT NULL,
    id TEXT,
    manufacturer TEXT,
    model TEXT,
    certificate_id TEXT,
    device_type TEXT,
    certification_date TEXT,
    software_version TEXT,
    hardware_version TEXT,
    firmware_version TEXT,
    vid INTEGER,
    pid INTEGER,
    family_sku TEXT,
    family_variant_sku TEXT,
    family_id TEXT,
    tis_trp_tested TEXT,
    specification_version TEXT,
    transport_interface TEXT,
    primary_device_type_id TEXT,
    application_categories TEXT,
    updated_at TIMESTAMP NOT NULL,

    PRIMARY KEY (page_id, index_in_page)
);
"""

_DETAIL_COLUMNS = [f.name for f in fields(RecordDetail)]


@dataclass
class PersistenceSummary:
    count: int
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "last_updated": self.last_updated}


class RecordStore(Protocol):
    def summary(self) -> PersistenceSummary:
        ...

    def page_indices(self) -> Dict[int, Set[int]]:
        """Stored index_in_page values grouped by page id."""
        ...

    def save_details(self, details: Iterable[RecordDetail]) -> int:
        """Upsert by (page_id, index_in_page); return how many keys were new."""
        ...

    def close(self) -> None:
        ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class MemoryRecordStore:
    """In-process store, used by tests and dry runs."""

    def __init__(self, details: Iterable[RecordDetail] = ()) -> None:
        self._records: Dict[RecordKey, RecordDetail] = {}
        self._last_updated: Optional[str] = None
        if details:
            self.save_details(details)

    def summary(self) -> PersistenceSummary:
        return PersistenceSummary(count=len(self._records), last_updated=self._last_updated)

    def page_indices(self) -> Dict[int, Set[int]]:
        return page_index_sets(self._records.values())

    def save_details(self, details: Iterable[RecordDetail]) -> int:
        new = 0
        for detail in details:
            if detail.key not in self._records:
                new += 1
            self._records[detail.key] = detail
        self._last_updated = _now()
        return new

    def records(self) -> List[RecordDetail]:
        return [self._records[k] for k in sorted(self._records)]

    def close(self) -> None:
        return None


class SQLiteRecordStore:
    """SQLite store keyed by (page_id, index_in_page)."""

    def __init__(self, db_path: str = "data/matter-products.sqlite"):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        logger.debug("Connected to SQLite database: %s", self.db_path)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite connection")

    def create_schema(self) -> None:
        with self.conn:
            self.conn.execute(CREATE_TABLE_SQL)

    def summary(self) -> PersistenceSummary:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n, MAX(updated_at) AS last_updated FROM products"
        ).fetchone()
        return PersistenceSummary(count=row["n"], last_updated=row["last_updated"])

    def page_indices(self) -> Dict[int, Set[int]]:
        pages: Dict[int, Set[int]] = {}
        for row in self.conn.execute("SELECT page_id, index_in_page FROM products"):
            pages.setdefault(row["page_id"], set()).add(row["index_in_page"])
        return pages

    def save_details(self, details: Iterable[RecordDetail]) -> int:
        details = list(details)
        if not details:
            return 0
        existing = {
            (row["page_id"], row["index_in_page"])
            for row in self.conn.execute("SELECT page_id, index_in_page FROM products")
        }
        columns = _DETAIL_COLUMNS + ["updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        insert_sql = (
            f"INSERT OR REPLACE INTO products ({', '.join(columns)}) VALUES ({placeholders})"
        )
        stamp = _now()
        rows = [self._row(d, stamp) for d in details]
        with self.conn:
            self.conn.executemany(insert_sql, rows)
        new = len({d.key for d in details} - existing)
        logger.info("Saved %d records (%d new) to %s", len(details), new, self.db_path)
        return new

    def records(self) -> List[RecordDetail]:
        out: List[RecordDetail] = []
        for row in self.conn.execute("SELECT * FROM products ORDER BY page_id, index_in_page"):
            data = dict(row)
            data["application_categories"] = json.loads(data["application_categories"] or "[]")
            out.append(RecordDetail.from_dict(data))
        return out

    @staticmethod
    def _row(detail: RecordDetail, stamp: str) -> tuple:
        values = []
        for name in _DETAIL_COLUMNS:
            value = getattr(detail, name)
            if name == "application_categories":
                value = json.dumps(value, ensure_ascii=False)
            values.append(value)
        values.append(stamp)
        return tuple(values)
