from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .correlate.correlator import CorrelationResult
from .normalize.schema import (
    InstanceKey,
    LifecycleRecord,
    OrphanTermination,
    RegionOutcome,
    RegionStatus,
    resolve_output_paths,
)
from .normalize.transform import record_sort_key
from .util.time import format_utc, utc_now_iso

OUT_SCHEMA_VERSION = "1"
MAX_REPORT_ROWS = 50


def assemble(result: CorrelationResult) -> Tuple[List[LifecycleRecord], List[OrphanTermination]]:
    """
    Order the correlator output deterministically: records ascending by
    (region, instance id); orphans are passed through unchanged.
    """
    return sorted(result.records, key=record_sort_key), list(result.orphans)


@dataclass(frozen=True)
class HistoryReport:
    window_start: datetime
    window_end: datetime
    records: List[LifecycleRecord]
    orphans: List[OrphanTermination]
    regions: List[RegionOutcome]
    malformed_records: int = 0
    malformed_by_region: Dict[str, Dict[str, int]] = field(default_factory=dict)
    malformed_samples: List[Dict[str, str]] = field(default_factory=list)
    terminated_before_launch: List[InstanceKey] = field(default_factory=list)

    @property
    def incomplete_regions(self) -> List[RegionOutcome]:
        return [r for r in self.regions if r.status is not RegionStatus.OK]

    @property
    def complete(self) -> bool:
        return not self.incomplete_regions

    @property
    def status(self) -> str:
        return "OK" if self.complete else "PARTIAL"


def build_history_report(
    result: CorrelationResult,
    regions: Sequence[RegionOutcome],
    *,
    window_start: datetime,
    window_end: datetime,
    malformed_records: int = 0,
    malformed_by_region: Optional[Dict[str, Dict[str, int]]] = None,
    malformed_samples: Optional[List[Dict[str, str]]] = None,
) -> HistoryReport:
    records, orphans = assemble(result)
    return HistoryReport(
        window_start=window_start,
        window_end=window_end,
        records=records,
        orphans=orphans,
        regions=sorted(regions, key=lambda r: r.region),
        malformed_records=malformed_records,
        malformed_by_region=dict(malformed_by_region or {}),
        malformed_samples=list(malformed_samples or []),
        terminated_before_launch=list(result.terminated_before_launch),
    )


def _counts(values: Sequence[str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for v in values:
        out[v] = out.get(v, 0) + 1
    return dict(sorted(out.items()))


def report_metrics(report: HistoryReport) -> Dict[str, Any]:
    still_running = sum(1 for r in report.records if r.still_running)
    return {
        "schema_version": OUT_SCHEMA_VERSION,
        "status": report.status,
        "complete": report.complete,
        "window_start": format_utc(report.window_start),
        "window_end": format_utc(report.window_end),
        "regions_total": len(report.regions),
        "regions_ok": sum(1 for r in report.regions if r.status is RegionStatus.OK),
        "regions_failed": sorted(r.region for r in report.incomplete_regions),
        "records_total": len(report.records),
        "still_running": still_running,
        "terminated": len(report.records) - still_running,
        "orphan_terminations": len(report.orphans),
        "malformed_records": report.malformed_records,
        "terminated_before_launch": len(report.terminated_before_launch),
        "records_by_origin": _counts([r.origin.value for r in report.records]),
        "records_by_region": _counts([r.key.region for r in report.records]),
    }


def _md_escape(text: str) -> str:
    return (text or "").replace("|", "\\|").replace("\n", " ")


def _truncate(s: str, max_len: int = 160) -> str:
    s = (s or "").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def render_report_md(
    report: HistoryReport,
    *,
    started_at: Optional[str] = None,
    finished_at: Optional[str] = None,
    max_rows: int = MAX_REPORT_ROWS,
) -> str:
    metrics = report_metrics(report)
    lines: List[str] = []
    lines.append("# EC2 Instance History Report")
    lines.append("")
    lines.append(f"- Status: **{report.status}**")
    lines.append(f"- Window: {metrics['window_start']} to {metrics['window_end']} (inclusive)")
    if started_at:
        lines.append(f"- Started: {started_at}")
    if finished_at:
        lines.append(f"- Finished: {finished_at}")
    lines.append("")

    if not report.complete:
        lines.append("> **Incomplete report.** The regions below contributed no records;")
        lines.append("> instances in those regions are missing from this history.")
        lines.append("")

    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("| --- | --- |")
    lines.append(f"| Regions collected | {metrics['regions_ok']} / {metrics['regions_total']} |")
    lines.append(f"| Lifecycle records | {metrics['records_total']} |")
    lines.append(f"| Still running | {metrics['still_running']} |")
    lines.append(f"| Terminated in window | {metrics['terminated']} |")
    lines.append(f"| Orphan terminations | {metrics['orphan_terminations']} |")
    lines.append(f"| Malformed records skipped | {metrics['malformed_records']} |")
    lines.append(f"| Terminated before launch | {metrics['terminated_before_launch']} |")
    lines.append("")

    lines.append("## Regions")
    lines.append("")
    lines.append("| Region | Status | Launch events | Termination events | Running | Malformed | Error |")
    lines.append("| --- | --- | --- | --- | --- | --- | --- |")
    for r in report.regions:
        lines.append(
            f"| {r.region} | {r.status.value} | {r.launch_records} | {r.termination_records} | "
            f"{r.running_records} | {r.malformed} | {_md_escape(_truncate(r.error or ''))} |"
        )
    lines.append("")

    by_type = _counts([r.instance_type or "unknown" for r in report.records])
    if by_type:
        lines.append("## Instance types")
        lines.append("")
        lines.append("| Instance type | Records |")
        lines.append("| --- | --- |")
        for itype, count in sorted(by_type.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"| {_md_escape(itype)} | {count} |")
        lines.append("")

    if report.orphans:
        lines.append("## Orphan terminations")
        lines.append("")
        lines.append("Terminated in the window with no launch evidence; not included as lifecycle records.")
        lines.append("")
        lines.append("| Region | Instance | Terminated |")
        lines.append("| --- | --- | --- |")
        for o in report.orphans[:max_rows]:
            lines.append(f"| {o.key.region} | {o.key.instance_id} | {format_utc(o.termination_time)} |")
        if len(report.orphans) > max_rows:
            lines.append("")
            lines.append(f"_{len(report.orphans) - max_rows} more in history/orphan_terminations.csv_")
        lines.append("")

    if report.terminated_before_launch:
        lines.append("## Terminated before launch")
        lines.append("")
        lines.append("The earliest termination precedes the launch. The instance id was likely reused")
        lines.append("within the window; treat these records with care.")
        lines.append("")
        for key in report.terminated_before_launch[:max_rows]:
            lines.append(f"- {key.label()}")
        lines.append("")

    if report.malformed_samples:
        lines.append("## Malformed records (sample)")
        lines.append("")
        lines.append("| Region | Source | Reason |")
        lines.append("| --- | --- | --- |")
        for s in report.malformed_samples[:max_rows]:
            lines.append(f"| {s.get('region', '')} | {s.get('kind', '')} | {_md_escape(_truncate(s.get('reason', '')))} |")
        lines.append("")

    return "\n".join(lines)


def write_report_md(
    report: HistoryReport,
    outdir: Path,
    *,
    started_at: Optional[str] = None,
    finished_at: Optional[str] = None,
) -> Path:
    paths = resolve_output_paths(outdir)
    text = render_report_md(report, started_at=started_at, finished_at=finished_at or utc_now_iso())
    paths.report_md.parent.mkdir(parents=True, exist_ok=True)
    paths.report_md.write_text(text, encoding="utf-8")
    return paths.report_md
