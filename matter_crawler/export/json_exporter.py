from __future__ import annotations

import json
from typing import Any, Dict, List
from pathlib import Path


class JSONExporter:
    def export(self, records: List[Dict[str, Any]], path: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2, ensure_ascii=False)
