from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional

from .auth.providers import AuthContext, AuthError, get_caller_identity, resolve_auth
from .aws.clients import set_client_timeouts
from .aws.regions import get_enabled_regions
from .aws.sources import aws_region_sources
from .config import RunConfig, dump_config, load_run_config
from .diff.diff import diff_files, write_diff
from .export.csv import write_csv, write_orphans_csv
from .export.jsonl import write_jsonl
from .logging import LogConfig, add_run_log_file, get_logger, remove_run_log_file, setup_logging
from .normalize.schema import RUN_SUMMARY_FIELDS, resolve_output_paths
from .normalize.transform import stable_json_dumps
from .pipeline import run_history
from .report import HistoryReport, build_history_report, report_metrics, write_report_md
from .util.errors import (
    AuthResolutionError,
    ConfigError,
    ExitCode,
    ExportError,
    RunCancelled,
    as_exit_code,
)
from .util.rich_progress import RunProgress, render_run_summary_table
from .util.time import utc_now_iso

LOG = get_logger(__name__)


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    timer_key: Optional[str] = None,
    **extra: Any,
) -> None:
    key = timer_key or step
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(key)
        elif phase in {"complete", "error", "warning", "skipped"}:
            duration_ms = timers.finish(key)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _resolve_auth(cfg: RunConfig) -> AuthContext:
    try:
        return resolve_auth(cfg.profile, cfg.home_region)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e


def _write_run_summary(outdir: Path, metrics: Dict[str, Any], cfg: RunConfig, extra: Dict[str, Any]) -> Path:
    summary = dict(metrics)
    summary.update(extra)
    summary["config"] = dump_config(cfg)
    missing = [k for k in RUN_SUMMARY_FIELDS if k not in summary]
    if missing:
        raise ExportError(f"run_summary.json missing required fields: {', '.join(missing)}")
    path = resolve_output_paths(outdir).run_summary_json
    path.write_text(stable_json_dumps(summary), encoding="utf-8")
    return path


def _export_history(report: HistoryReport, cfg: RunConfig) -> List[str]:
    paths = resolve_output_paths(cfg.outdir)
    written: List[str] = []
    try:
        write_csv(report.records, paths.history_csv, already_sorted=True)
        written.append(str(paths.history_csv))
        write_orphans_csv(report.orphans, paths.orphans_csv)
        written.append(str(paths.orphans_csv))
        write_jsonl(report.records, paths.history_jsonl)
        written.append(str(paths.history_jsonl))
        if cfg.parquet:
            from .export.parquet import ParquetNotAvailable, write_parquet

            try:
                write_parquet(report.records, paths.history_parquet, already_sorted=True)
            except ParquetNotAvailable as e:
                raise ExportError(str(e)) from e
            written.append(str(paths.history_parquet))
    except OSError as e:
        raise ExportError(f"Failed to write history exports: {e}") from e
    return written


def cmd_run(cfg: RunConfig) -> int:
    # Window problems are fatal and must surface before anything is fetched.
    settings = cfg.collection_settings()
    settings.validate()

    cfg.outdir.mkdir(parents=True, exist_ok=True)
    paths = resolve_output_paths(cfg.outdir)
    add_run_log_file(paths.debug_log)
    started_at = utc_now_iso()
    timers = _StepTimers()

    _log_event(
        LOG,
        logging.INFO,
        "Starting history run",
        step="run",
        phase="start",
        timers=timers,
        outdir=str(cfg.outdir),
        window_start=str(settings.window_start),
        window_end=str(settings.window_end),
    )
    try:
        set_client_timeouts(settings.region_timeout)
        ctx = _resolve_auth(cfg)

        _log_event(LOG, logging.INFO, "Region discovery started", step="regions", phase="start", timers=timers)
        if cfg.regions:
            regions = list(cfg.regions)
        else:
            regions = get_enabled_regions(ctx)
        if not regions:
            raise ConfigError("No enabled regions found for the account/profile provided")
        _log_event(
            LOG,
            logging.INFO,
            "Regions in scope",
            step="regions",
            phase="complete",
            timers=timers,
            regions=regions,
            count=len(regions),
        )

        cancel = threading.Event()
        progress = RunProgress(enabled=cfg.progress)
        _log_event(LOG, logging.INFO, "Collection started", step="collect", phase="start", timers=timers)
        try:
            with progress:
                progress.start_regions(regions)
                run = run_history(
                    regions,
                    aws_region_sources(ctx),
                    settings,
                    cancel_event=cancel,
                    on_region_done=progress.region_done,
                )
        except KeyboardInterrupt as e:
            cancel.set()
            raise RunCancelled("Run interrupted before finalization; no report written") from e
        _log_event(
            LOG,
            logging.INFO,
            "Collection complete",
            step="collect",
            phase="complete",
            timers=timers,
            committed_regions=len(run.result.committed_regions),
        )

        report = build_history_report(
            run.result,
            run.regions,
            window_start=settings.window_start,
            window_end=settings.window_end,
            malformed_records=run.errors.total,
            malformed_by_region=run.errors.counts_by_region(),
            malformed_samples=run.errors.samples(),
        )

        _log_event(LOG, logging.INFO, "Export started", step="export", phase="start", timers=timers)
        artifacts = _export_history(report, cfg)
        write_report_md(report, cfg.outdir, started_at=started_at)

        diff_summary: Optional[Dict[str, Any]] = None
        if cfg.prev:
            diff_obj = diff_files(cfg.prev, paths.history_jsonl)
            write_diff(paths.diff_dir, diff_obj)
            diff_summary = diff_obj["summary"]

        metrics = report_metrics(report)
        _write_run_summary(
            cfg.outdir,
            metrics,
            cfg,
            {
                "started_at": started_at,
                "finished_at": utc_now_iso(),
                "regions": [
                    {
                        "region": r.region,
                        "status": r.status.value,
                        "attempts": r.attempts,
                        "malformed": r.malformed,
                        "error": r.error,
                    }
                    for r in report.regions
                ],
                "malformed_by_region": report.malformed_by_region,
                "diff": diff_summary,
            },
        )
        _log_event(
            LOG,
            logging.INFO,
            "Export complete",
            step="export",
            phase="complete",
            timers=timers,
            artifacts=artifacts,
        )

        level = logging.INFO if report.complete else logging.WARNING
        _log_event(
            LOG,
            level,
            "History run complete" if report.complete else "History run complete with excluded regions",
            step="run",
            phase="complete" if report.complete else "warning",
            timers=timers,
            status=report.status,
            records=metrics["records_total"],
            orphans=metrics["orphan_terminations"],
            regions_failed=metrics["regions_failed"],
        )
        render_run_summary_table(
            enabled=progress.enabled,
            status=report.status,
            metrics=metrics,
            regions=regions,
            outdir=str(cfg.outdir),
        )
        return int(ExitCode.OK) if report.complete else int(ExitCode.PARTIAL)
    finally:
        remove_run_log_file(paths.debug_log)


def cmd_diff(cfg: RunConfig) -> int:
    prev = cfg.prev
    curr = cfg.curr
    if not prev or not curr:
        raise ConfigError("Both --prev and --curr must be provided for diff")
    timers = _StepTimers()
    _log_event(LOG, logging.INFO, "Diff started", step="diff", phase="start", timers=timers)
    diff_obj = diff_files(Path(prev), Path(curr))
    write_diff(cfg.outdir, diff_obj)
    _log_event(
        LOG,
        logging.INFO,
        "Diff complete",
        step="diff",
        phase="complete",
        timers=timers,
        outdir=str(cfg.outdir),
        summary=diff_obj["summary"],
    )
    return 0


def cmd_validate_auth(cfg: RunConfig) -> int:
    ctx = _resolve_auth(cfg)
    try:
        identity = get_caller_identity(ctx)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e
    regions = get_enabled_regions(ctx)
    LOG.info(
        "Authentication validated",
        extra={"method": ctx.method, "profile": cfg.profile, "account": identity["account"], "regions": regions},
    )
    print(f"OK: authenticated as {identity['arn']} (account {identity['account']}); enabled regions:", ", ".join(regions))
    return 0


def cmd_list_regions(cfg: RunConfig) -> int:
    ctx = _resolve_auth(cfg)
    for r in get_enabled_regions(ctx):
        print(r)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "run":
            code = cmd_run(cfg)
        elif command == "diff":
            code = cmd_diff(cfg)
        elif command == "validate-auth":
            code = cmd_validate_auth(cfg)
        elif command == "list-regions":
            code = cmd_list_regions(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(int(ExitCode.CANCELLED))
    except Exception as e:
        setup_logging(LogConfig())  # ensure something is configured
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
