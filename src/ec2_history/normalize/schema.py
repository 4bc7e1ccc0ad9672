from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional, Union


class InstanceKey(NamedTuple):
    """
    Instance identity. EC2 instance ids are only unique within a region,
    so the region is always part of the key.
    """

    region: str
    instance_id: str

    def label(self) -> str:
        return f"{self.region}/{self.instance_id}"


class EventKind(str, Enum):
    LAUNCH = "Launch"
    TERMINATE = "Terminate"


class LaunchOrigin(str, Enum):
    EVENT = "Event"
    SNAPSHOT = "Snapshot"


class SourceKind(str, Enum):
    """Which raw source a record came from."""

    LAUNCH = "launch"
    TERMINATE = "terminate"
    RUNNING = "running"


class _StillRunning(Enum):
    STILL_RUNNING = "Still Running"

    def __repr__(self) -> str:
        return "STILL_RUNNING"


# No termination evidence was observed for the instance.
STILL_RUNNING = _StillRunning.STILL_RUNNING

TerminationTime = Union[datetime, _StillRunning]


@dataclass(frozen=True)
class NormalizedEvent:
    key: InstanceKey
    kind: EventKind
    timestamp: datetime
    instance_type: Optional[str] = None  # Launch only


@dataclass(frozen=True)
class NormalizedRunningInstance:
    key: InstanceKey
    instance_type: Optional[str]
    launch_time: datetime


NormalizedUnit = Union[NormalizedEvent, NormalizedRunningInstance]


@dataclass(frozen=True)
class LifecycleRecord:
    key: InstanceKey
    instance_type: Optional[str]
    launch_time: datetime
    termination_time: TerminationTime
    origin: LaunchOrigin

    @property
    def still_running(self) -> bool:
        return self.termination_time is STILL_RUNNING


@dataclass(frozen=True)
class OrphanTermination:
    key: InstanceKey
    termination_time: datetime


class RegionStatus(str, Enum):
    OK = "OK"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class RegionOutcome:
    region: str
    status: RegionStatus
    launch_records: int = 0
    termination_records: int = 0
    running_records: int = 0
    units_committed: int = 0
    malformed: int = 0
    attempts: int = 0
    error: Optional[str] = None
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class OutputPaths:
    root: Path
    history_dir: Path
    report_dir: Path
    diff_dir: Path
    logs_dir: Path
    history_csv: Path
    history_jsonl: Path
    history_parquet: Path
    orphans_csv: Path
    report_md: Path
    run_summary_json: Path
    debug_log: Path


def resolve_output_paths(outdir: Path) -> OutputPaths:
    root = outdir
    history_dir = root / "history"
    report_dir = root / "report"
    diff_dir = root / "diff"
    logs_dir = root / "logs"

    return OutputPaths(
        root=root,
        history_dir=history_dir,
        report_dir=report_dir,
        diff_dir=diff_dir,
        logs_dir=logs_dir,
        history_csv=history_dir / "ec2_instance_history.csv",
        history_jsonl=history_dir / "ec2_instance_history.jsonl",
        history_parquet=history_dir / "ec2_instance_history.parquet",
        orphans_csv=history_dir / "orphan_terminations.csv",
        report_md=report_dir / "report.md",
        run_summary_json=root / "run_summary.json",
        debug_log=logs_dir / "debug.log",
    )


# Column layout of the history CSV
CSV_REPORT_FIELDS: List[str] = [
    "Region",
    "InstanceID",
    "InstanceType",
    "LaunchTime",
    "TerminationTime",
]

ORPHAN_CSV_FIELDS: List[str] = [
    "Region",
    "InstanceID",
    "TerminationTime",
]

# Canonical field order used for stable JSON output
CANONICAL_FIELD_ORDER: List[str] = [
    "region",
    "instanceId",
    "instanceType",
    "launchTime",
    "terminationTime",
    "stillRunning",
    "launchOrigin",
]

RUN_SUMMARY_FIELDS: List[str] = [
    "schema_version",
    "status",
    "complete",
    "window_start",
    "window_end",
    "regions_total",
    "regions_ok",
    "regions_failed",
    "records_total",
    "still_running",
    "terminated",
    "orphan_terminations",
    "malformed_records",
    "terminated_before_launch",
    "records_by_origin",
    "records_by_region",
]
