from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List

from ..normalize.schema import CSV_REPORT_FIELDS, ORPHAN_CSV_FIELDS, STILL_RUNNING, LifecycleRecord, OrphanTermination
from ..normalize.transform import record_sort_key
from ..util.time import format_utc


def write_csv(records: Iterable[LifecycleRecord], path: Path, *, already_sorted: bool = False) -> int:
    """
    Write the instance history CSV. Deterministic row order by region, then instance id.
    Open lifecycles render as 'Still Running'; a missing instance type as 'unknown'.
    Returns the number of rows written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    iter_records: Iterable[LifecycleRecord] = records if already_sorted else sorted(records, key=record_sort_key)
    count = 0
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_REPORT_FIELDS)
        for rec in iter_records:
            if rec.termination_time is STILL_RUNNING:
                termination = STILL_RUNNING.value
            else:
                termination = format_utc(rec.termination_time)  # type: ignore[arg-type]
            row: List[str] = [
                rec.key.region,
                rec.key.instance_id,
                rec.instance_type or "unknown",
                format_utc(rec.launch_time),
                termination,
            ]
            writer.writerow(row)
            count += 1
    return count


def write_orphans_csv(orphans: Iterable[OrphanTermination], path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(ORPHAN_CSV_FIELDS)
        for orphan in orphans:
            writer.writerow([orphan.key.region, orphan.key.instance_id, format_utc(orphan.termination_time)])
            count += 1
    return count
