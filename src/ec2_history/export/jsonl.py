from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ..normalize.schema import LifecycleRecord
from ..normalize.transform import canonicalize_record, record_sort_key, record_to_dict, stable_json_dumps


def write_jsonl(records: Iterable[LifecycleRecord], path: Path) -> int:
    """
    Write lifecycle records to a JSONL file with stable key ordering and
    deterministic line order (region, then instance id).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as f:
        for rec in sorted(records, key=record_sort_key):
            f.write(stable_json_dumps(canonicalize_record(record_to_dict(rec))))
            f.write("\n")
            count += 1
    return count
