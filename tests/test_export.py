from __future__ import annotations

import csv
import json
from datetime import datetime, timezone

import pytest

from ec2_history.export import parquet as parquet_mod
from ec2_history.export.csv import write_csv, write_orphans_csv
from ec2_history.export.jsonl import write_jsonl
from ec2_history.export.parquet import ParquetNotAvailable, write_parquet
from ec2_history.normalize.schema import (
    STILL_RUNNING,
    InstanceKey,
    LaunchOrigin,
    LifecycleRecord,
    OrphanTermination,
)

LAUNCH = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
TERMINATED = datetime(2025, 1, 5, 8, 30, tzinfo=timezone.utc)


def _records():
    return [
        LifecycleRecord(
            key=InstanceKey("us-east-1", "i-2"),
            instance_type=None,
            launch_time=datetime(2024, 12, 1, tzinfo=timezone.utc),
            termination_time=STILL_RUNNING,
            origin=LaunchOrigin.SNAPSHOT,
        ),
        LifecycleRecord(
            key=InstanceKey("us-east-1", "i-1"),
            instance_type="t3.micro",
            launch_time=LAUNCH,
            termination_time=TERMINATED,
            origin=LaunchOrigin.EVENT,
        ),
    ]


def test_write_csv_sorts_and_renders_open_lifecycles(tmp_path) -> None:
    path = tmp_path / "history" / "ec2_instance_history.csv"

    count = write_csv(_records(), path)

    assert count == 2
    with path.open(encoding="utf-8", newline="") as f:
        rows = list(csv.reader(f))
    assert rows == [
        ["Region", "InstanceID", "InstanceType", "LaunchTime", "TerminationTime"],
        ["us-east-1", "i-1", "t3.micro", "2025-01-01T10:00:00Z", "2025-01-05T08:30:00Z"],
        ["us-east-1", "i-2", "unknown", "2024-12-01T00:00:00Z", "Still Running"],
    ]


def test_write_orphans_csv(tmp_path) -> None:
    path = tmp_path / "orphans.csv"
    orphans = [OrphanTermination(key=InstanceKey("eu-west-1", "i-9"), termination_time=TERMINATED)]

    assert write_orphans_csv(orphans, path) == 1
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines == ["Region,InstanceID,TerminationTime", "eu-west-1,i-9,2025-01-05T08:30:00Z"]


def test_write_jsonl_is_stable(tmp_path) -> None:
    path = tmp_path / "history.jsonl"

    assert write_jsonl(_records(), path) == 2
    first = path.read_text(encoding="utf-8")
    write_jsonl(list(reversed(_records())), path)
    assert path.read_text(encoding="utf-8") == first

    rows = [json.loads(line) for line in first.splitlines()]
    assert rows[0] == {
        "instanceId": "i-1",
        "instanceType": "t3.micro",
        "launchOrigin": "Event",
        "launchTime": "2025-01-01T10:00:00Z",
        "region": "us-east-1",
        "stillRunning": False,
        "terminationTime": "2025-01-05T08:30:00Z",
    }
    assert rows[1]["terminationTime"] is None
    assert rows[1]["stillRunning"] is True


def test_write_parquet_without_pyarrow(monkeypatch, tmp_path) -> None:
    def _missing():
        raise ParquetNotAvailable("pyarrow is required for Parquet export")

    monkeypatch.setattr(parquet_mod, "_require_pyarrow", _missing)

    with pytest.raises(ParquetNotAvailable):
        write_parquet(_records(), tmp_path / "history.parquet")


def test_write_parquet_round_trips_typed_columns(tmp_path) -> None:
    pq = pytest.importorskip("pyarrow.parquet")
    path = tmp_path / "history" / "ec2_instance_history.parquet"

    assert write_parquet(_records(), path, batch_size=1) == 2

    table = pq.read_table(path)
    assert table.column_names == [
        "region",
        "instanceId",
        "instanceType",
        "launchTime",
        "terminationTime",
        "stillRunning",
        "launchOrigin",
    ]
    rows = table.to_pylist()
    assert [r["instanceId"] for r in rows] == ["i-1", "i-2"]
    assert rows[1]["terminationTime"] is None
    assert rows[1]["instanceType"] is None


def test_write_parquet_empty_still_writes_schema(tmp_path) -> None:
    pq = pytest.importorskip("pyarrow.parquet")
    path = tmp_path / "empty.parquet"

    assert write_parquet([], path) == 0
    assert pq.read_table(path).num_rows == 0
