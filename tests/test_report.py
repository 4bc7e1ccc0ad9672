from __future__ import annotations

from datetime import datetime, timezone

from ec2_history.correlate.correlator import CorrelationResult
from ec2_history.normalize.schema import (
    STILL_RUNNING,
    InstanceKey,
    LaunchOrigin,
    LifecycleRecord,
    OrphanTermination,
    RegionOutcome,
    RegionStatus,
)
from ec2_history.report import assemble, build_history_report, render_report_md, report_metrics, write_report_md

START = datetime(2025, 1, 1, tzinfo=timezone.utc)
END = datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


def _rec(region: str, iid: str, itype=None, term=STILL_RUNNING, origin=LaunchOrigin.EVENT) -> LifecycleRecord:
    return LifecycleRecord(
        key=InstanceKey(region, iid),
        instance_type=itype,
        launch_time=datetime(2025, 1, 2, tzinfo=timezone.utc),
        termination_time=term,
        origin=origin,
    )


def _result(records, orphans=(), regions=("us-east-1",), before_launch=()) -> CorrelationResult:
    return CorrelationResult(
        records=list(records),
        orphans=list(orphans),
        committed_regions=tuple(regions),
        terminated_before_launch=list(before_launch),
    )


def test_assemble_orders_by_region_then_instance() -> None:
    result = _result(
        [
            _rec("us-west-2", "i-1"),
            _rec("eu-west-1", "i-b"),
            _rec("eu-west-1", "i-a"),
        ]
    )

    records, orphans = assemble(result)

    assert [r.key.label() for r in records] == ["eu-west-1/i-a", "eu-west-1/i-b", "us-west-2/i-1"]
    assert orphans == []


def test_assemble_passes_orphans_through() -> None:
    orphan = OrphanTermination(key=InstanceKey("eu-west-1", "i-9"), termination_time=END)
    _, orphans = assemble(_result([], orphans=[orphan]))
    assert orphans == [orphan]


def test_metrics_and_status_for_complete_run() -> None:
    terminated = datetime(2025, 1, 9, tzinfo=timezone.utc)
    report = build_history_report(
        _result(
            [
                _rec("us-east-1", "i-1", "t3.micro", terminated),
                _rec("us-east-1", "i-2", None, origin=LaunchOrigin.SNAPSHOT),
            ]
        ),
        [RegionOutcome(region="us-east-1", status=RegionStatus.OK)],
        window_start=START,
        window_end=END,
    )

    metrics = report_metrics(report)

    assert report.complete
    assert metrics["status"] == "OK"
    assert metrics["window_start"] == "2025-01-01T00:00:00Z"
    assert metrics["records_total"] == 2
    assert metrics["still_running"] == 1
    assert metrics["terminated"] == 1
    assert metrics["records_by_origin"] == {"Event": 1, "Snapshot": 1}
    assert metrics["regions_failed"] == []


def test_partial_report_is_flagged_incomplete(tmp_path) -> None:
    report = build_history_report(
        _result([_rec("us-east-1", "i-1", "t3.micro")]),
        [
            RegionOutcome(region="us-east-1", status=RegionStatus.OK, launch_records=1),
            RegionOutcome(region="ap-south-1", status=RegionStatus.FAILED, error="timed out after 300s"),
        ],
        window_start=START,
        window_end=END,
        malformed_records=1,
        malformed_samples=[{"region": "us-east-1", "kind": "launch", "reason": "missing instance id"}],
    )

    assert not report.complete
    assert report.status == "PARTIAL"
    assert report_metrics(report)["regions_failed"] == ["ap-south-1"]

    text = render_report_md(report)
    assert text.startswith("# EC2 Instance History Report")
    assert "Incomplete report" in text
    assert "| ap-south-1 | FAILED |" in text
    assert "timed out after 300s" in text
    assert "missing instance id" in text

    path = write_report_md(report, tmp_path)
    assert path.read_text(encoding="utf-8").startswith("# EC2 Instance History Report")


def test_report_lists_orphans_and_reused_ids() -> None:
    key = InstanceKey("us-east-1", "i-reused")
    report = build_history_report(
        _result(
            [_rec("us-east-1", "i-reused", "t3.micro", datetime(2024, 12, 31, tzinfo=timezone.utc))],
            orphans=[OrphanTermination(key=InstanceKey("us-east-1", "i-gone"), termination_time=END)],
            before_launch=[key],
        ),
        [RegionOutcome(region="us-east-1", status=RegionStatus.OK)],
        window_start=START,
        window_end=END,
    )

    text = render_report_md(report)

    assert "Incomplete report" not in text
    assert "## Orphan terminations" in text
    assert "| us-east-1 | i-gone | 2025-01-31T23:59:59Z |" in text
    assert "## Terminated before launch" in text
    assert "- us-east-1/i-reused" in text
