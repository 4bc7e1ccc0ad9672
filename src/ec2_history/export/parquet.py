from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..logging import get_logger
from ..normalize.schema import LifecycleRecord
from ..normalize.transform import record_sort_key

LOG = get_logger(__name__)


class ParquetNotAvailable(RuntimeError):
    pass


def _require_pyarrow():
    try:
        import pyarrow as pa  # type: ignore
        import pyarrow.parquet as pq  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ParquetNotAvailable(
            "pyarrow is required for Parquet export. Install with: pip install .[parquet]"
        ) from e
    return pa, pq


def _history_schema(pa) -> Any:
    ts = pa.timestamp("s", tz="UTC")
    return pa.schema(
        [
            pa.field("region", pa.string(), nullable=False),
            pa.field("instanceId", pa.string(), nullable=False),
            pa.field("instanceType", pa.string(), nullable=True),
            pa.field("launchTime", ts, nullable=False),
            pa.field("terminationTime", ts, nullable=True),
            pa.field("stillRunning", pa.bool_(), nullable=False),
            pa.field("launchOrigin", pa.string(), nullable=False),
        ]
    )


def _parquet_row(record: LifecycleRecord) -> Dict[str, Any]:
    # Typed timestamps rather than strings; null terminationTime while running.
    return {
        "region": record.key.region,
        "instanceId": record.key.instance_id,
        "instanceType": record.instance_type,
        "launchTime": record.launch_time,
        "terminationTime": None if record.still_running else record.termination_time,
        "stillRunning": record.still_running,
        "launchOrigin": record.origin.value,
    }


def write_parquet(
    records: Iterable[LifecycleRecord],
    path: Path,
    *,
    already_sorted: bool = False,
    batch_size: int = 5000,
) -> int:
    """
    Write the instance history as Parquet with a fixed schema. Rows are written
    in (region, instance id) order, in batches of batch_size.
    """
    pa, pq = _require_pyarrow()
    path.parent.mkdir(parents=True, exist_ok=True)
    schema = _history_schema(pa)
    if batch_size < 1:
        batch_size = 5000

    iter_records: Iterable[LifecycleRecord] = records if already_sorted else sorted(records, key=record_sort_key)

    writer: Optional[Any] = None
    rows: List[Dict[str, Any]] = []
    count = 0

    def _flush_rows() -> None:
        nonlocal writer, rows
        if not rows:
            return
        try:
            table = pa.Table.from_pylist(rows, schema=schema)
        except Exception as exc:
            LOG.error(
                "Parquet batch write failed",
                extra={"step": "export", "phase": "error", "artifact": "parquet", "error": str(exc)},
            )
            raise
        if writer is None:
            writer = pq.ParquetWriter(path, schema)
        writer.write_table(table)
        rows = []

    for rec in iter_records:
        rows.append(_parquet_row(rec))
        count += 1
        if len(rows) >= batch_size:
            _flush_rows()

    if rows:
        _flush_rows()
    elif writer is None:
        pq.write_table(pa.Table.from_pylist([], schema=schema), path)

    if writer is not None:
        writer.close()
    return count
