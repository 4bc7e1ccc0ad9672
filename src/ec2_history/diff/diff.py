from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from ..util.errors import DiffError
from .hash import stable_record_hash


def _load_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        raise DiffError(f"History file not found: {path}")
    recs: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                recs.append(json.loads(line))
            except ValueError as e:
                raise DiffError(f"{path}:{lineno}: invalid JSON: {e}") from e
    return recs


def record_key(record: Dict[str, Any]) -> str:
    region = str(record.get("region") or "")
    instance_id = str(record.get("instanceId") or "")
    if not region or not instance_id:
        return ""
    return f"{region}/{instance_id}"


def _index_by_key(records: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    by: Dict[str, Dict[str, Any]] = {}
    for r in records:
        key = record_key(r)
        if not key:
            continue
        by[key] = r
    return by


def compute_diff(
    prev_records: Iterable[Dict[str, Any]],
    curr_records: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Compute the diff between two history reports keyed by region/instanceId.
    Returns added/removed/changed/unchanged key lists, per-key hashes, the list
    of instances that were still running before and have terminated since, and
    summary counts.
    """
    prev_by = _index_by_key(prev_records)
    curr_by = _index_by_key(curr_records)

    added: List[str] = []
    removed: List[str] = []
    changed: List[str] = []
    unchanged: List[str] = []
    newly_terminated: List[str] = []
    details: Dict[str, Dict[str, str]] = {}

    prev_keys = set(prev_by.keys())
    curr_keys = set(curr_by.keys())

    for key in sorted(prev_keys - curr_keys):
        removed.append(key)
        details[key] = {"prev_hash": stable_record_hash(prev_by[key])}

    for key in sorted(curr_keys - prev_keys):
        added.append(key)
        details[key] = {"curr_hash": stable_record_hash(curr_by[key])}

    for key in sorted(prev_keys & curr_keys):
        prev_h = stable_record_hash(prev_by[key])
        curr_h = stable_record_hash(curr_by[key])
        details[key] = {"prev_hash": prev_h, "curr_hash": curr_h}
        if prev_h == curr_h:
            unchanged.append(key)
            continue
        changed.append(key)
        if prev_by[key].get("terminationTime") is None and curr_by[key].get("terminationTime") is not None:
            newly_terminated.append(key)

    summary = {
        "added": len(added),
        "removed": len(removed),
        "changed": len(changed),
        "unchanged": len(unchanged),
        "newly_terminated": len(newly_terminated),
        "prev_total": len(prev_by),
        "curr_total": len(curr_by),
    }

    return {
        "added": added,
        "removed": removed,
        "changed": changed,
        "unchanged": unchanged,
        "newly_terminated": newly_terminated,
        "details": details,
        "summary": summary,
    }


def diff_files(prev_path: Path, curr_path: Path) -> Dict[str, Any]:
    return compute_diff(_load_jsonl(prev_path), _load_jsonl(curr_path))


def write_diff(outdir: Path, diff_obj: Dict[str, Any]) -> Tuple[Path, Path]:
    """
    Write diff.json and diff_summary.json to outdir, returning their paths.
    """
    outdir.mkdir(parents=True, exist_ok=True)
    diff_path = outdir / "diff.json"
    summary_path = outdir / "diff_summary.json"
    diff_path.write_text(json.dumps(diff_obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
    summary_path.write_text(
        json.dumps(diff_obj.get("summary", {}), sort_keys=True, separators=(",", ":"), ensure_ascii=False),
        encoding="utf-8",
    )
    return diff_path, summary_path
