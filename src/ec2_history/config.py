from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .pipeline import (
    DEFAULT_FETCH_RETRIES,
    DEFAULT_REGION_TIMEOUT,
    DEFAULT_WORKERS_REGION,
    CollectionSettings,
)
from .util.errors import ConfigError
from .util.time import format_utc, window_bound

# --------
# Defaults
# --------
ALLOWED_CONFIG_KEYS = {
    "outdir",
    "prev",
    "curr",
    "start",
    "end",
    "regions",
    "workers_region",
    "fetch_retries",
    "region_timeout",
    "parquet",
    "progress",
    "json_logs",
    "log_level",
    "profile",
    "home_region",
}
BOOL_CONFIG_KEYS = {"parquet", "progress", "json_logs"}
INT_CONFIG_KEYS = {"workers_region", "fetch_retries"}
FLOAT_CONFIG_KEYS = {"region_timeout"}
PATH_CONFIG_KEYS = {"outdir", "prev", "curr"}
STR_CONFIG_KEYS = {"log_level", "profile", "home_region"}
# YAML turns bare dates into datetime.date; accept both
DATE_CONFIG_KEYS = {"start", "end"}


@dataclass(frozen=True)
class RunConfig:
    # General
    outdir: Path
    prev: Optional[Path] = None
    curr: Optional[Path] = None
    parquet: bool = False
    progress: bool = True
    json_logs: bool = False
    log_level: str = "INFO"

    # Window (inclusive, expanded to day boundaries)
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    # Performance
    workers_region: int = DEFAULT_WORKERS_REGION
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    region_timeout: float = DEFAULT_REGION_TIMEOUT
    regions: Optional[List[str]] = None

    # Auth
    profile: Optional[str] = None
    home_region: Optional[str] = None

    # Internal/derived
    collected_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )

    def collection_settings(self) -> CollectionSettings:
        if self.window_start is None or self.window_end is None:
            raise ConfigError("A window is required: pass --start and --end (YYYY-MM-DD)")
        return CollectionSettings(
            window_start=self.window_start,
            window_end=self.window_end,
            workers_region=self.workers_region,
            fetch_retries=self.fetch_retries,
            region_timeout=self.region_timeout,
        )


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError:
                data = json.loads(text)
    except Exception as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

# Config key -> environment variable
ENV_VARS: Dict[str, str] = {
    "outdir": "EC2_HIST_OUTDIR",
    "prev": "EC2_HIST_PREV",
    "curr": "EC2_HIST_CURR",
    "start": "EC2_HIST_START",
    "end": "EC2_HIST_END",
    "parquet": "EC2_HIST_PARQUET",
    "progress": "EC2_HIST_PROGRESS",
    "json_logs": "EC2_HIST_JSON_LOGS",
    "log_level": "EC2_HIST_LOG_LEVEL",
    "workers_region": "EC2_HIST_WORKERS_REGION",
    "fetch_retries": "EC2_HIST_FETCH_RETRIES",
    "region_timeout": "EC2_HIST_REGION_TIMEOUT",
    "regions": "EC2_HIST_REGIONS",
    "profile": "AWS_PROFILE",
    "home_region": "EC2_HIST_HOME_REGION",
}


def _read_env() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, name in ENV_VARS.items():
        raw = (os.getenv(name) or "").strip()
        if not raw:
            continue
        if key in BOOL_CONFIG_KEYS:
            out[key] = raw.lower() in _TRUTHY
        elif key in INT_CONFIG_KEYS or key in FLOAT_CONFIG_KEYS:
            try:
                out[key] = int(raw) if key in INT_CONFIG_KEYS else float(raw)
            except ValueError:
                warnings.warn(f"Ignoring non-numeric {name}={raw!r}")
        else:
            out[key] = raw
    return out


def _split_regions(value: Union[str, List[Any]]) -> List[str]:
    parts = value.split(",") if isinstance(value, str) else [str(r) for r in value]
    return [p.strip() for p in parts if p.strip()]


def _coerce_file_value(key: str, value: Any) -> Any:
    if key == "regions":
        if isinstance(value, str) or (isinstance(value, list) and all(isinstance(r, str) for r in value)):
            return _split_regions(value)
        raise ValueError("Config field 'regions' must be a list of strings or comma-separated string")
    if key in BOOL_CONFIG_KEYS:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUTHY | _FALSY:
            return value.strip().lower() in _TRUTHY
        raise ValueError(f"Config field '{key}' must be a boolean")
    if key in INT_CONFIG_KEYS or key in FLOAT_CONFIG_KEYS:
        cast = int if key in INT_CONFIG_KEYS else float
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"Config field '{key}' must be a number")
        try:
            return cast(value)
        except ValueError as e:
            raise ValueError(f"Config field '{key}' must be a number") from e
    if key in DATE_CONFIG_KEYS:
        return value.isoformat() if hasattr(value, "isoformat") else str(value)
    if key in PATH_CONFIG_KEYS and isinstance(value, (str, Path)):
        return value
    if key in STR_CONFIG_KEYS and isinstance(value, str):
        return value
    raise ValueError(f"Config field '{key}' must be a string")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    return {
        key: _coerce_file_value(key, value)
        for key, value in data.items()
        if key in ALLOWED_CONFIG_KEYS and value is not None
    }


def _layer(*layers: Dict[str, Any]) -> Dict[str, Any]:
    """Merge config layers lowest precedence first; None never overrides."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged.update({k: v for k, v in layer.items() if v is not None})
    return merged


def _timestamp_dir(base: Optional[Union[str, Path]]) -> Path:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    if base:
        return Path(base) / ts
    return Path("out") / ts


def _resolve_window(
    start_raw: Optional[str], end_raw: Optional[str], *, required: bool
) -> Tuple[Optional[datetime], Optional[datetime]]:
    if not start_raw and not end_raw:
        if required:
            raise ConfigError("A window is required: pass --start and --end (YYYY-MM-DD)")
        return None, None
    if not start_raw or not end_raw:
        raise ConfigError("Both --start and --end must be provided")
    try:
        start = window_bound(str(start_raw), end=False)
        end = window_bound(str(end_raw), end=True)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    if end < start:
        raise ConfigError(f"Window end {format_utc(end)} is before window start {format_utc(start)}")
    return start, end


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ec2-history", description="EC2 instance lifecycle history")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--profile", default=None, help="AWS named profile (default credential chain otherwise)")
        p.add_argument("--home-region", default=None, help="Region used for global calls (describe-regions, STS)")

    # run
    p_run = subparsers.add_parser("run", help="Reconstruct instance history for a window")
    add_common(p_run)
    p_run.add_argument("--start", default=None, help="Window start, inclusive (YYYY-MM-DD or ISO-8601)")
    p_run.add_argument("--end", default=None, help="Window end, inclusive (YYYY-MM-DD or ISO-8601)")
    p_run.add_argument("--outdir", type=Path, default=None, help="Output base directory (out/TS)")
    p_run.add_argument(
        "--regions",
        default=None,
        help="Comma-separated list of regions to query (overrides enabled regions)",
    )
    p_run.add_argument(
        "--workers-region", type=int, default=None, help=f"Max parallel regions (default {DEFAULT_WORKERS_REGION})"
    )
    p_run.add_argument(
        "--fetch-retries",
        type=int,
        default=None,
        help=f"Retries per source fetch (default {DEFAULT_FETCH_RETRIES})",
    )
    p_run.add_argument(
        "--region-timeout",
        type=float,
        default=None,
        help=f"Overall seconds allowed per region (default {DEFAULT_REGION_TIMEOUT:g})",
    )
    p_run.add_argument(
        "--parquet",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also write Parquet (pyarrow)",
    )
    p_run.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show a progress bar and summary table on a terminal",
    )
    p_run.add_argument("--prev", type=Path, default=None, help="Previous ec2_instance_history.jsonl for diff")

    # diff
    p_diff = subparsers.add_parser("diff", help="Diff two history JSONL files")
    add_common(p_diff)
    p_diff.add_argument("--prev", type=Path, required=False, help="Previous ec2_instance_history.jsonl")
    p_diff.add_argument("--curr", type=Path, required=False, help="Current ec2_instance_history.jsonl")
    p_diff.add_argument("--outdir", type=Path, default=None, help="Output dir for diff files")

    # validate-auth
    p_val = subparsers.add_parser("validate-auth", help="Validate AWS credentials")
    add_common(p_val)

    # list-regions
    p_lr = subparsers.add_parser("list-regions", help="List enabled regions")
    add_common(p_lr)

    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
    subcommand: Optional[str] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is the subcommand selected: run|diff|validate-auth|list-regions
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command if subcommand is None else subcommand

    defaults: Dict[str, Any] = {
        "parquet": False,
        "progress": True,
        "json_logs": False,
        "log_level": "INFO",
        "workers_region": DEFAULT_WORKERS_REGION,
        "fetch_retries": DEFAULT_FETCH_RETRIES,
        "region_timeout": DEFAULT_REGION_TIMEOUT,
    }

    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # Subcommands without a flag simply leave it unset
    cli_cfg = {key: getattr(ns, key, None) for key in ENV_VARS}

    merged = _layer(defaults, file_cfg, _read_env(), cli_cfg)

    outdir_raw = merged.get("outdir")
    outdir = _timestamp_dir(outdir_raw) if command == "run" else Path(outdir_raw) if outdir_raw else Path.cwd()
    prev = Path(merged["prev"]) if merged.get("prev") else None
    curr = Path(merged["curr"]) if merged.get("curr") else None
    profile = merged.get("profile")
    home_region = merged.get("home_region")
    log_level = (merged.get("log_level") or "INFO").upper()
    regions_raw = merged.get("regions")
    regions: Optional[List[str]] = _split_regions(regions_raw) if regions_raw else None

    window_start, window_end = _resolve_window(merged.get("start"), merged.get("end"), required=command == "run")

    workers_region = int(merged["workers_region"])
    if workers_region < 1:
        raise ConfigError("workers_region must be >= 1")
    fetch_retries = int(merged["fetch_retries"])
    if fetch_retries < 0:
        raise ConfigError("fetch_retries must be >= 0")
    region_timeout = float(merged["region_timeout"])
    if region_timeout <= 0:
        raise ConfigError("region_timeout must be > 0")

    cfg = RunConfig(
        outdir=outdir,
        prev=prev,
        curr=curr,
        parquet=bool(merged["parquet"]),
        progress=bool(merged["progress"]),
        json_logs=bool(merged["json_logs"]),
        log_level=log_level,
        window_start=window_start,
        window_end=window_end,
        workers_region=workers_region,
        fetch_retries=fetch_retries,
        region_timeout=region_timeout,
        regions=regions or None,
        profile=str(profile) if profile else None,
        home_region=str(home_region) if home_region else None,
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "outdir": str(cfg.outdir),
        "prev": str(cfg.prev) if cfg.prev else None,
        "curr": str(cfg.curr) if cfg.curr else None,
        "parquet": cfg.parquet,
        "progress": cfg.progress,
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "window_start": format_utc(cfg.window_start) if cfg.window_start else None,
        "window_end": format_utc(cfg.window_end) if cfg.window_end else None,
        "workers_region": cfg.workers_region,
        "fetch_retries": cfg.fetch_retries,
        "region_timeout": cfg.region_timeout,
        "regions": cfg.regions,
        "profile": cfg.profile,
        "home_region": cfg.home_region,
        "collected_at": cfg.collected_at,
    }
