from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..logging import get_logger
from ..normalize.schema import (
    STILL_RUNNING,
    EventKind,
    InstanceKey,
    LaunchOrigin,
    LifecycleRecord,
    NormalizedEvent,
    NormalizedRunningInstance,
    NormalizedUnit,
    OrphanTermination,
)

LOG = get_logger(__name__)


@dataclass(frozen=True)
class LaunchEntry:
    instance_type: Optional[str]
    launch_time: datetime
    origin: LaunchOrigin


@dataclass(frozen=True)
class CorrelationResult:
    """
    Finalized state of one correlation pass.
    records are in no particular order; orphans are sorted by key.
    """

    records: List[LifecycleRecord]
    orphans: List[OrphanTermination]
    committed_regions: Tuple[str, ...] = ()
    # Keys whose earliest termination precedes the launch; usually an
    # instance id reused within the window.
    terminated_before_launch: List[InstanceKey] = field(default_factory=list)


def _launch_rank(entry: LaunchEntry) -> Tuple[datetime, bool, str]:
    # Earliest wins; on a tie a known type beats None, then the smaller type.
    return (entry.launch_time, entry.instance_type is None, entry.instance_type or "")


class LifecycleCorrelator:
    """
    Accumulates normalized units from all regions and produces one lifecycle
    record per instance key.

    Ingestion is commutative: the final result does not depend on the order in
    which units or regions arrive. Use commit_region() from worker threads; the
    ingest* methods are not synchronized and are meant for single-threaded use.
    """

    def __init__(self) -> None:
        self._launches: Dict[InstanceKey, LaunchEntry] = {}
        self._terminations: Dict[InstanceKey, datetime] = {}
        self._committed_regions: List[str] = []
        self._lock = threading.Lock()
        self._finalized = False

    def __len__(self) -> int:
        return len(self._launches.keys() | self._terminations.keys())

    @property
    def finalized(self) -> bool:
        return self._finalized

    def ingest(self, unit: NormalizedUnit) -> None:
        if self._finalized:
            raise RuntimeError("Correlator already finalized")
        if isinstance(unit, NormalizedEvent):
            if unit.kind is EventKind.LAUNCH:
                self._ingest_launch(unit)
            else:
                self._ingest_termination(unit)
        elif isinstance(unit, NormalizedRunningInstance):
            self._ingest_running(unit)
        else:
            raise TypeError(f"Unsupported unit type: {type(unit).__name__}")

    def ingest_many(self, units: Iterable[NormalizedUnit]) -> int:
        count = 0
        for unit in units:
            self.ingest(unit)
            count += 1
        return count

    def _ingest_launch(self, event: NormalizedEvent) -> None:
        candidate = LaunchEntry(event.instance_type, event.timestamp, LaunchOrigin.EVENT)
        current = self._launches.get(event.key)
        if current is None or current.origin is LaunchOrigin.SNAPSHOT:
            self._launches[event.key] = candidate
            return
        # Duplicate or replayed RunInstances entry
        if _launch_rank(candidate) < _launch_rank(current):
            self._launches[event.key] = candidate

    def _ingest_running(self, running: NormalizedRunningInstance) -> None:
        candidate = LaunchEntry(running.instance_type, running.launch_time, LaunchOrigin.SNAPSHOT)
        current = self._launches.get(running.key)
        if current is None:
            self._launches[running.key] = candidate
        elif current.origin is LaunchOrigin.SNAPSHOT and _launch_rank(candidate) < _launch_rank(current):
            self._launches[running.key] = candidate

    def _ingest_termination(self, event: NormalizedEvent) -> None:
        current = self._terminations.get(event.key)
        if current is None or event.timestamp < current:
            self._terminations[event.key] = event.timestamp

    def commit_region(self, region: str, units: Iterable[NormalizedUnit]) -> int:
        """
        Apply all units of one region inside a single exclusive section, so a
        region contributes either all of its units or none of them.
        """
        batch = list(units)
        with self._lock:
            if self._finalized:
                raise RuntimeError(f"Cannot commit region {region}: correlator already finalized")
            self.ingest_many(batch)
            self._committed_regions.append(region)
        LOG.debug(
            "Committed region units",
            extra={"step": "correlate", "phase": "commit", "region": region, "units": len(batch)},
        )
        return len(batch)

    def finalize(self) -> CorrelationResult:
        """
        Produce lifecycle records and orphan terminations. Runs once; waits for
        any in-progress commit to finish first.
        """
        with self._lock:
            if self._finalized:
                raise RuntimeError("Correlator already finalized")
            self._finalized = True

            records: List[LifecycleRecord] = []
            suspicious: List[InstanceKey] = []
            for key, entry in self._launches.items():
                termination = self._terminations.get(key)
                if termination is not None and termination < entry.launch_time:
                    suspicious.append(key)
                records.append(
                    LifecycleRecord(
                        key=key,
                        instance_type=entry.instance_type,
                        launch_time=entry.launch_time,
                        termination_time=termination if termination is not None else STILL_RUNNING,
                        origin=entry.origin,
                    )
                )

            orphans = [
                OrphanTermination(key=key, termination_time=ts)
                for key, ts in sorted(self._terminations.items())
                if key not in self._launches
            ]

            return CorrelationResult(
                records=records,
                orphans=orphans,
                committed_regions=tuple(sorted(self._committed_regions)),
                terminated_before_launch=sorted(suspicious),
            )


def correlate(units: Iterable[NormalizedUnit]) -> CorrelationResult:
    """Single-pass helper: fresh correlator, ingest everything, finalize."""
    correlator = LifecycleCorrelator()
    correlator.ingest_many(units)
    return correlator.finalize()
