from __future__ import annotations

import csv
import json
import os
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from ec2_history import cli
from ec2_history.aws.sources import RegionSources
from ec2_history.config import load_run_config
from ec2_history.normalize.schema import RUN_SUMMARY_FIELDS, resolve_output_paths
from ec2_history.util.errors import ConfigError, ExitCode


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("EC2_HIST_") or name == "AWS_PROFILE":
            monkeypatch.delenv(name, raising=False)


def _fake_sources(fail_region: str | None = None) -> RegionSources:
    launches: Dict[str, List[Dict[str, Any]]] = {
        "us-east-1": [{"instanceId": "i-1", "instanceType": "t3.micro", "eventTime": "2025-01-01T10:00:00Z"}],
    }
    terminations: Dict[str, List[Dict[str, Any]]] = {
        "us-east-1": [{"instanceId": "i-1", "eventTime": "2025-01-05T08:30:00Z"}],
        "eu-west-1": [{"instanceId": "i-9", "eventTime": "2025-01-02T12:00:00Z"}],
    }
    running: Dict[str, List[Dict[str, Any]]] = {
        "us-east-1": [
            {"InstanceId": "i-2", "InstanceType": "m5.large", "LaunchTime": datetime(2024, 12, 1, tzinfo=timezone.utc)}
        ],
    }

    def _terminations(region, start, end):
        if region == fail_region:
            raise RuntimeError("connection reset")
        return list(terminations.get(region, []))

    return RegionSources(
        launches=lambda region, start, end: list(launches.get(region, [])),
        terminations=_terminations,
        running=lambda region: list(running.get(region, [])),
    )


def _patch_aws(monkeypatch, sources: RegionSources, regions: List[str]) -> None:
    ctx = SimpleNamespace(session=None, profile=None, home_region="us-east-1", method="default")
    monkeypatch.setattr(cli, "_resolve_auth", lambda cfg: ctx)
    monkeypatch.setattr(cli, "get_enabled_regions", lambda c: list(regions))
    monkeypatch.setattr(cli, "aws_region_sources", lambda c: sources)


def _run_argv(tmp_path, *extra: str) -> List[str]:
    return [
        "run",
        "--start",
        "2025-01-01",
        "--end",
        "2025-01-31",
        "--outdir",
        str(tmp_path / "out"),
        "--fetch-retries",
        "0",
        "--no-progress",
        *extra,
    ]


def test_cmd_run_writes_history_artifacts(monkeypatch, tmp_path) -> None:
    _patch_aws(monkeypatch, _fake_sources(), ["us-east-1", "eu-west-1"])
    _, cfg = load_run_config(argv=_run_argv(tmp_path))

    code = cli.cmd_run(cfg)

    assert code == ExitCode.OK
    paths = resolve_output_paths(cfg.outdir)
    with paths.history_csv.open(encoding="utf-8", newline="") as f:
        rows = list(csv.reader(f))
    assert rows == [
        ["Region", "InstanceID", "InstanceType", "LaunchTime", "TerminationTime"],
        ["us-east-1", "i-1", "t3.micro", "2025-01-01T10:00:00Z", "2025-01-05T08:30:00Z"],
        ["us-east-1", "i-2", "m5.large", "2024-12-01T00:00:00Z", "Still Running"],
    ]
    assert "eu-west-1,i-9,2025-01-02T12:00:00Z" in paths.orphans_csv.read_text(encoding="utf-8")
    assert len(paths.history_jsonl.read_text(encoding="utf-8").splitlines()) == 2
    assert paths.report_md.read_text(encoding="utf-8").startswith("# EC2 Instance History Report")
    assert paths.debug_log.exists()

    summary = json.loads(paths.run_summary_json.read_text(encoding="utf-8"))
    assert all(k in summary for k in RUN_SUMMARY_FIELDS)
    assert summary["status"] == "OK"
    assert summary["records_total"] == 2
    assert summary["orphan_terminations"] == 1
    assert summary["config"]["window_end"] == "2025-01-31T23:59:59Z"
    assert [r["region"] for r in summary["regions"]] == ["eu-west-1", "us-east-1"]


def test_cmd_run_partial_when_region_fails(monkeypatch, tmp_path) -> None:
    _patch_aws(monkeypatch, _fake_sources(fail_region="eu-west-1"), ["us-east-1", "eu-west-1"])
    _, cfg = load_run_config(argv=_run_argv(tmp_path))

    code = cli.cmd_run(cfg)

    assert code == ExitCode.PARTIAL
    paths = resolve_output_paths(cfg.outdir)
    summary = json.loads(paths.run_summary_json.read_text(encoding="utf-8"))
    assert summary["status"] == "PARTIAL"
    assert summary["regions_failed"] == ["eu-west-1"]
    assert summary["orphan_terminations"] == 0
    assert "Incomplete report" in paths.report_md.read_text(encoding="utf-8")


def test_cmd_run_explicit_regions_skip_discovery(monkeypatch, tmp_path) -> None:
    _patch_aws(monkeypatch, _fake_sources(), [])

    def _no_discovery(ctx):
        raise AssertionError("region discovery should not run")

    monkeypatch.setattr(cli, "get_enabled_regions", _no_discovery)
    _, cfg = load_run_config(argv=_run_argv(tmp_path, "--regions", "us-east-1"))

    assert cli.cmd_run(cfg) == ExitCode.OK
    summary = json.loads(resolve_output_paths(cfg.outdir).run_summary_json.read_text(encoding="utf-8"))
    assert summary["regions_total"] == 1


def test_cmd_run_no_regions_is_config_error(monkeypatch, tmp_path) -> None:
    _patch_aws(monkeypatch, _fake_sources(), [])
    _, cfg = load_run_config(argv=_run_argv(tmp_path))

    with pytest.raises(ConfigError):
        cli.cmd_run(cfg)


def test_cmd_run_with_prev_writes_diff(monkeypatch, tmp_path) -> None:
    prev = tmp_path / "prev.jsonl"
    prev.write_text(
        json.dumps(
            {
                "region": "us-east-1",
                "instanceId": "i-1",
                "instanceType": "t3.micro",
                "launchTime": "2025-01-01T10:00:00Z",
                "terminationTime": None,
                "stillRunning": True,
                "launchOrigin": "Event",
            }
        )
        + "\n",
        encoding="utf-8",
    )
    _patch_aws(monkeypatch, _fake_sources(), ["us-east-1"])
    _, cfg = load_run_config(argv=_run_argv(tmp_path, "--prev", str(prev)))

    assert cli.cmd_run(cfg) == ExitCode.OK
    paths = resolve_output_paths(cfg.outdir)
    diff_summary = json.loads((paths.diff_dir / "diff_summary.json").read_text(encoding="utf-8"))
    assert diff_summary["newly_terminated"] == 1
    assert diff_summary["added"] == 1


def test_main_exits_with_config_error_code(monkeypatch) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["run", "--start", "2025-02-01", "--end", "2025-01-01"])
    assert exc_info.value.code == ExitCode.CONFIG_ERROR


def test_main_list_regions(monkeypatch, capsys) -> None:
    _patch_aws(monkeypatch, _fake_sources(), ["eu-west-1", "us-east-1"])

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["list-regions"])

    assert exc_info.value.code == 0
    assert capsys.readouterr().out.splitlines() == ["eu-west-1", "us-east-1"]
