from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

LIST_DUMP_PREFIX = "products"
DETAIL_DUMP_PREFIX = "matter-products"


class Exporter(Protocol):
    def export(self, records: List[Dict[str, Any]], path: str) -> None:
        ...


def timestamped_path(output_dir: str, prefix: str, now: Optional[datetime] = None) -> str:
    """``<output_dir>/<prefix>_YYYYMMDD_HHMMSS.json``"""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return str(Path(output_dir) / f"{prefix}_{stamp}.json")
