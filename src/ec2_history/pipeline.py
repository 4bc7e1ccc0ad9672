from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from .aws.sources import RegionSources
from .correlate.correlator import CorrelationResult, LifecycleCorrelator
from .logging import get_logger
from .normalize.schema import NormalizedUnit, RegionOutcome, RegionStatus, SourceKind
from .normalize.transform import ErrorCollector, normalize_batch
from .util.concurrency import parallel_map_ordered
from .util.errors import ConfigError, RegionFetchFailure, RunCancelled, aws_error_code

LOG = get_logger(__name__)

DEFAULT_WORKERS_REGION = 6
DEFAULT_FETCH_RETRIES = 3
DEFAULT_REGION_TIMEOUT = 300.0
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0

# Errors that retrying will not fix
NON_RETRIABLE_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "OptInRequired",
        "ExpiredToken",
        "ExpiredTokenException",
    }
)


@dataclass(frozen=True)
class CollectionSettings:
    window_start: datetime
    window_end: datetime
    workers_region: int = DEFAULT_WORKERS_REGION
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    region_timeout: float = DEFAULT_REGION_TIMEOUT
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY

    def validate(self) -> None:
        if self.window_start.tzinfo is None or self.window_end.tzinfo is None:
            raise ConfigError("Window bounds must be timezone-aware")
        if self.window_end < self.window_start:
            raise ConfigError(
                f"Window end {self.window_end.isoformat()} is before window start {self.window_start.isoformat()}"
            )
        if self.workers_region < 1:
            raise ConfigError("workers_region must be >= 1")
        if self.fetch_retries < 0:
            raise ConfigError("fetch_retries must be >= 0")
        if self.region_timeout <= 0:
            raise ConfigError("region_timeout must be > 0")


@dataclass(frozen=True)
class HistoryRun:
    result: CorrelationResult
    regions: List[RegionOutcome]
    errors: ErrorCollector


class _RegionCancelled(Exception):
    pass


class _RegionBudget:
    """Per-region deadline plus cooperative cancellation checks."""

    def __init__(self, region: str, timeout: float, cancel_event: threading.Event) -> None:
        self.region = region
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._deadline = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise _RegionCancelled(self.region)
        if time.monotonic() >= self._deadline:
            raise RegionFetchFailure(self.region, f"timed out after {self.timeout:g}s")

    def sleep(self, seconds: float) -> None:
        if self.cancel_event.wait(min(seconds, self.remaining())):
            raise _RegionCancelled(self.region)
        self.check()


def _drain(records: Iterable[Any], budget: _RegionBudget) -> List[Any]:
    out: List[Any] = []
    budget.check()
    for record in records:
        budget.check()
        out.append(record)
    return out


def _fetch_with_retry(
    label: str,
    fetch: Callable[[], Iterable[Any]],
    settings: CollectionSettings,
    budget: _RegionBudget,
) -> Tuple[List[Any], int]:
    attempt = 0
    while True:
        attempt += 1
        try:
            return _drain(fetch(), budget), attempt
        except (RegionFetchFailure, _RegionCancelled):
            raise
        except Exception as e:
            code = aws_error_code(e)
            if code in NON_RETRIABLE_ERROR_CODES:
                raise RegionFetchFailure(budget.region, f"{label} fetch failed: {e}", attempts=attempt) from e
            if attempt > settings.fetch_retries:
                raise RegionFetchFailure(
                    budget.region, f"{label} fetch failed after {attempt} attempts: {e}", attempts=attempt
                ) from e
            delay = min(settings.retry_max_delay, settings.retry_base_delay * (2 ** (attempt - 1)))
            delay += random.uniform(0, delay * 0.1)
            LOG.warning(
                "Fetch failed; retrying",
                extra={
                    "step": "fetch",
                    "phase": "retry",
                    "region": budget.region,
                    "source": label,
                    "attempt": attempt,
                    "delay_s": round(delay, 3),
                    "error": str(e),
                },
            )
            budget.sleep(delay)


def collect_region(
    region: str,
    sources: RegionSources,
    settings: CollectionSettings,
    correlator: LifecycleCorrelator,
    errors: ErrorCollector,
    cancel_event: threading.Event,
) -> RegionOutcome:
    """
    Fetch, normalize and commit one region.
    The region's three sources must all succeed before anything is committed;
    a failed, timed-out or cancelled region contributes nothing, including its
    malformed-record counts, which reach errors only once the commit is done.
    """
    started = perf_counter()
    budget = _RegionBudget(region, settings.region_timeout, cancel_event)
    attempts = 0
    region_errors = ErrorCollector()

    def _elapsed_ms() -> int:
        return int((perf_counter() - started) * 1000)

    try:
        launches, n = _fetch_with_retry(
            SourceKind.LAUNCH.value,
            lambda: sources.launches(region, settings.window_start, settings.window_end),
            settings,
            budget,
        )
        attempts += n
        terminations, n = _fetch_with_retry(
            SourceKind.TERMINATE.value,
            lambda: sources.terminations(region, settings.window_start, settings.window_end),
            settings,
            budget,
        )
        attempts += n
        running, n = _fetch_with_retry(SourceKind.RUNNING.value, lambda: sources.running(region), settings, budget)
        attempts += n

        units: List[NormalizedUnit] = []
        units.extend(normalize_batch(launches, region, SourceKind.LAUNCH, settings.window_start, region_errors))
        units.extend(
            normalize_batch(terminations, region, SourceKind.TERMINATE, settings.window_start, region_errors)
        )
        units.extend(normalize_batch(running, region, SourceKind.RUNNING, settings.window_start, region_errors))

        budget.check()
        committed = correlator.commit_region(region, units)
        errors.merge(region_errors)
    except _RegionCancelled:
        LOG.info(
            "Region abandoned after cancellation",
            extra={"step": "region", "phase": "cancelled", "region": region},
        )
        return RegionOutcome(
            region=region, status=RegionStatus.CANCELLED, attempts=attempts, error="cancelled", duration_ms=_elapsed_ms()
        )
    except RegionFetchFailure as e:
        attempts += e.attempts
        LOG.error(
            "Region excluded from history",
            extra={"step": "region", "phase": "error", "region": region, "error": str(e), "duration_ms": _elapsed_ms()},
        )
        return RegionOutcome(
            region=region,
            status=RegionStatus.FAILED,
            attempts=attempts,
            malformed=region_errors.total,
            error=str(e),
            duration_ms=_elapsed_ms(),
        )

    outcome = RegionOutcome(
        region=region,
        status=RegionStatus.OK,
        launch_records=len(launches),
        termination_records=len(terminations),
        running_records=len(running),
        units_committed=committed,
        malformed=region_errors.total,
        attempts=attempts,
        duration_ms=_elapsed_ms(),
    )
    LOG.info(
        "Region collected",
        extra={
            "step": "region",
            "phase": "complete",
            "region": region,
            "launches": outcome.launch_records,
            "terminations": outcome.termination_records,
            "running": outcome.running_records,
            "units": committed,
            "duration_ms": outcome.duration_ms,
        },
    )
    return outcome


def _unique(regions: Sequence[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for r in regions:
        r = (r or "").strip()
        if r and r not in seen:
            seen.add(r)
            out.append(r)
    return out


def run_history(
    regions: Sequence[str],
    sources: RegionSources,
    settings: CollectionSettings,
    *,
    cancel_event: Optional[threading.Event] = None,
    on_region_done: Optional[Callable[[RegionOutcome], None]] = None,
) -> HistoryRun:
    """
    Collect every region concurrently into one fresh correlator and finalize it.
    Raises ConfigError before any fetch on an invalid window and RunCancelled
    when cancel_event is set before finalization.
    """
    settings.validate()
    region_list = _unique(regions)
    if not region_list:
        raise ConfigError("No regions to collect")

    cancel = cancel_event or threading.Event()
    correlator = LifecycleCorrelator()
    errors = ErrorCollector()

    outcomes = parallel_map_ordered(
        lambda r: collect_region(r, sources, settings, correlator, errors, cancel),
        region_list,
        max_workers=min(settings.workers_region, len(region_list)),
        cancel_event=cancel,
        on_result=on_region_done,
    )
    if cancel.is_set():
        raise RunCancelled(f"Run cancelled after {len(outcomes)} of {len(region_list)} regions; nothing finalized")

    result = correlator.finalize()
    return HistoryRun(result=result, regions=outcomes, errors=errors)
