from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..logging import get_logger
from ..util.errors import MalformedRecord
from ..util.time import format_utc, parse_iso_utc
from .schema import (
    CANONICAL_FIELD_ORDER,
    EventKind,
    InstanceKey,
    LifecycleRecord,
    NormalizedEvent,
    NormalizedRunningInstance,
    NormalizedUnit,
    OrphanTermination,
    SourceKind,
)

LOG = get_logger(__name__)

MAX_ERROR_SAMPLES = 50

_INSTANCE_ID_KEYS = ("instanceId", "InstanceId", "instance_id")
_INSTANCE_TYPE_KEYS = ("instanceType", "InstanceType", "instance_type")
_EVENT_TIME_KEYS = ("eventTime", "EventTime", "event_time", "timestamp")
_LAUNCH_TIME_KEYS = ("launchTime", "LaunchTime", "launch_time")


def _get(d: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d:
            return d[k]
    return None


def _instance_id(raw: Mapping[str, Any], region: str, kind: SourceKind) -> str:
    value = _get(raw, *_INSTANCE_ID_KEYS)
    if value is None:
        raise MalformedRecord("missing instance id", region=region, kind=kind.value, raw=raw)
    if not isinstance(value, str) or not value.strip() or any(c.isspace() for c in value.strip()):
        raise MalformedRecord(f"unparsable instance id {value!r}", region=region, kind=kind.value, raw=raw)
    return value.strip()


def _instance_type(raw: Mapping[str, Any]) -> Optional[str]:
    value = _get(raw, *_INSTANCE_TYPE_KEYS)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _timestamp(raw: Mapping[str, Any], keys: Tuple[str, ...], region: str, kind: SourceKind) -> datetime:
    value = _get(raw, *keys)
    if value is None:
        raise MalformedRecord("missing timestamp", region=region, kind=kind.value, raw=raw)
    ts = parse_iso_utc(value)
    if ts is None:
        raise MalformedRecord(f"unparsable timestamp {value!r}", region=region, kind=kind.value, raw=raw)
    return ts


def normalize_launch_event(raw: Mapping[str, Any], region: str) -> NormalizedEvent:
    instance_id = _instance_id(raw, region, SourceKind.LAUNCH)
    ts = _timestamp(raw, _EVENT_TIME_KEYS, region, SourceKind.LAUNCH)
    return NormalizedEvent(
        key=InstanceKey(region, instance_id),
        kind=EventKind.LAUNCH,
        timestamp=ts,
        instance_type=_instance_type(raw),
    )


def normalize_termination_event(raw: Mapping[str, Any], region: str) -> NormalizedEvent:
    instance_id = _instance_id(raw, region, SourceKind.TERMINATE)
    ts = _timestamp(raw, _EVENT_TIME_KEYS, region, SourceKind.TERMINATE)
    return NormalizedEvent(key=InstanceKey(region, instance_id), kind=EventKind.TERMINATE, timestamp=ts)


def normalize_running_instance(
    raw: Mapping[str, Any],
    region: str,
    window_start: datetime,
) -> Optional[NormalizedRunningInstance]:
    """
    Normalize a running-instance snapshot entry.
    Instances launched at or after window_start return None: they must come in
    through a Launch event, otherwise they would be counted twice.
    """
    instance_id = _instance_id(raw, region, SourceKind.RUNNING)
    launch_time = _timestamp(raw, _LAUNCH_TIME_KEYS, region, SourceKind.RUNNING)
    if launch_time >= window_start:
        return None
    return NormalizedRunningInstance(
        key=InstanceKey(region, instance_id),
        instance_type=_instance_type(raw),
        launch_time=launch_time,
    )


def normalize_record(
    raw: Mapping[str, Any],
    region: str,
    kind: SourceKind,
    window_start: datetime,
) -> Optional[NormalizedUnit]:
    """
    Convert one raw record into a normalized unit.
    Raises MalformedRecord for records that cannot be normalized.
    """
    if not isinstance(raw, Mapping):
        raise MalformedRecord(f"expected a mapping, got {type(raw).__name__}", region=region, kind=kind.value)
    if kind is SourceKind.LAUNCH:
        return normalize_launch_event(raw, region)
    if kind is SourceKind.TERMINATE:
        return normalize_termination_event(raw, region)
    return normalize_running_instance(raw, region, window_start)


class ErrorCollector:
    """
    Collects per-record normalization failures for the run report.
    Thread-safe; regions normalize concurrently.
    """

    def __init__(self, max_samples: int = MAX_ERROR_SAMPLES) -> None:
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._counts: Dict[Tuple[str, str], int] = {}
        self._samples: List[Dict[str, str]] = []

    def add(self, err: MalformedRecord) -> None:
        with self._lock:
            key = (err.region, err.kind)
            self._counts[key] = self._counts.get(key, 0) + 1
            if len(self._samples) < self._max_samples:
                self._samples.append({"region": err.region, "kind": err.kind, "reason": err.reason})
        LOG.warning(
            "Skipping malformed record",
            extra={"step": "normalize", "phase": "warning", "region": err.region, "kind": err.kind, "reason": err.reason},
        )

    def merge(self, other: "ErrorCollector") -> None:
        """Fold another collector's counts and samples into this one, without re-logging."""
        with other._lock:
            counts = dict(other._counts)
            samples = list(other._samples)
        with self._lock:
            for key, count in counts.items():
                self._counts[key] = self._counts.get(key, 0) + count
            room = self._max_samples - len(self._samples)
            if room > 0:
                self._samples.extend(samples[:room])

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def counts_by_region(self) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {}
        with self._lock:
            for (region, kind), count in sorted(self._counts.items()):
                out.setdefault(region, {})[kind] = count
        return out

    def samples(self) -> List[Dict[str, str]]:
        with self._lock:
            return list(self._samples)


def normalize_batch(
    raws: Iterable[Mapping[str, Any]],
    region: str,
    kind: SourceKind,
    window_start: datetime,
    errors: ErrorCollector,
) -> List[NormalizedUnit]:
    """
    Normalize a batch of raw records from one source, skipping malformed ones.
    Failures are scoped to the record and reported through errors.
    """
    units: List[NormalizedUnit] = []
    for raw in raws:
        try:
            unit = normalize_record(raw, region, kind, window_start)
        except MalformedRecord as e:
            errors.add(e)
            continue
        if unit is not None:
            units.append(unit)
    return units


def _iso(value: Optional[datetime]) -> Optional[str]:
    return format_utc(value) if value is not None else None


def record_to_dict(record: LifecycleRecord) -> Dict[str, Any]:
    termination = None if record.still_running else record.termination_time
    return {
        "region": record.key.region,
        "instanceId": record.key.instance_id,
        "instanceType": record.instance_type,
        "launchTime": _iso(record.launch_time),
        "terminationTime": _iso(termination),  # type: ignore[arg-type]
        "stillRunning": record.still_running,
        "launchOrigin": record.origin.value,
    }


def canonicalize_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a shallow copy of record with fields ordered according to CANONICAL_FIELD_ORDER.
    Fields not in the canonical list are appended in sorted order.
    """
    out: Dict[str, Any] = {}
    for k in CANONICAL_FIELD_ORDER:
        if k in record:
            out[k] = record[k]
    for k in sorted(k for k in record.keys() if k not in out):
        out[k] = record[k]
    return out


def stable_json_dumps(obj: Any) -> str:
    """
    Dump JSON with sort_keys=True and separators to ensure stable output.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def record_sort_key(item: Union[LifecycleRecord, OrphanTermination, Mapping[str, Any]]) -> Tuple[str, str]:
    if isinstance(item, (LifecycleRecord, OrphanTermination)):
        return (item.key.region, item.key.instance_id)
    return (str(item.get("region") or ""), str(item.get("instanceId") or ""))
