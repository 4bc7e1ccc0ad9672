from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..auth.providers import AuthContext
from ..logging import get_logger
from ..util.errors import map_aws_error
from ..util.pagination import paginate
from .clients import get_cloudtrail_client, get_ec2_client

LOG = get_logger(__name__)

LAUNCH_EVENT_NAME = "RunInstances"
TERMINATE_EVENT_NAME = "TerminateInstances"
LOOKUP_PAGE_SIZE = 50  # CloudTrail LookupEvents maximum
DESCRIBE_PAGE_SIZE = 1000
# Instances that have not been terminated yet
ACTIVE_INSTANCE_STATES: Tuple[str, ...] = ("pending", "running", "stopping", "stopped")

RawRecord = Mapping[str, Any]
EventSource = Callable[[str, datetime, datetime], Iterable[RawRecord]]
SnapshotSource = Callable[[str], Iterable[RawRecord]]


@dataclass(frozen=True)
class RegionSources:
    """
    The three independent raw sources consumed per region.
    Each callable returns an iterable of raw records; pagination is its own concern.
    """

    launches: EventSource
    terminations: EventSource
    running: SnapshotSource


def explode_cloudtrail_event(event: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    Flatten one CloudTrail LookupEvents entry into raw instance records, one per
    item of responseElements.instancesSet (a single RunInstances call can launch
    many instances).

    Calls that failed (errorCode set) are not lifecycle evidence and yield nothing.
    Payloads that cannot be decoded yield a single record without instanceId so the
    normalizer reports it as malformed instead of dropping it silently.
    """
    event_id = event.get("EventId")
    fallback_time = event.get("EventTime")
    raw_payload = event.get("CloudTrailEvent")
    try:
        payload = json.loads(raw_payload) if isinstance(raw_payload, str) else raw_payload
    except ValueError:
        payload = None
    if not isinstance(payload, Mapping):
        return [{"eventId": event_id, "eventTime": fallback_time, "instanceId": None}]

    if payload.get("errorCode"):
        LOG.debug(
            "Skipping failed API call",
            extra={"step": "fetch", "phase": "skipped", "event_id": event_id, "error_code": str(payload.get("errorCode"))},
        )
        return []

    event_time = payload.get("eventTime") or fallback_time
    response = payload.get("responseElements")
    instances_set = response.get("instancesSet") if isinstance(response, Mapping) else None
    items = instances_set.get("items") if isinstance(instances_set, Mapping) else None
    if not isinstance(items, list) or not items:
        return [{"eventId": event_id, "eventTime": event_time, "instanceId": None}]

    out: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, Mapping):
            out.append({"eventId": event_id, "eventTime": event_time, "instanceId": None})
            continue
        out.append(
            {
                "eventId": event_id,
                "eventTime": event_time,
                "instanceId": item.get("instanceId"),
                "instanceType": item.get("instanceType"),
            }
        )
    return out


def _iter_cloudtrail_events(
    ctx: AuthContext,
    region: str,
    event_name: str,
    start: datetime,
    end: datetime,
) -> Iterable[Dict[str, Any]]:
    client = get_cloudtrail_client(ctx, region)

    def fetch(token: Optional[str]) -> Tuple[List[Mapping[str, Any]], Optional[str]]:
        kwargs: Dict[str, Any] = {
            "LookupAttributes": [{"AttributeKey": "EventName", "AttributeValue": event_name}],
            "StartTime": start,
            "EndTime": end,
            "MaxResults": LOOKUP_PAGE_SIZE,
        }
        if token:
            kwargs["NextToken"] = token
        try:
            resp = client.lookup_events(**kwargs)
        except Exception as e:
            mapped = map_aws_error(e, f"AWS SDK error while looking up {event_name} events in {region}")
            if mapped:
                raise mapped from e
            raise
        return list(resp.get("Events") or []), resp.get("NextToken")

    for event in paginate(fetch):
        yield from explode_cloudtrail_event(event)


def iter_launch_events(ctx: AuthContext, region: str, start: datetime, end: datetime) -> Iterable[Dict[str, Any]]:
    return _iter_cloudtrail_events(ctx, region, LAUNCH_EVENT_NAME, start, end)


def iter_termination_events(
    ctx: AuthContext, region: str, start: datetime, end: datetime
) -> Iterable[Dict[str, Any]]:
    return _iter_cloudtrail_events(ctx, region, TERMINATE_EVENT_NAME, start, end)


def iter_running_instances(ctx: AuthContext, region: str) -> Iterable[Dict[str, Any]]:
    """
    Yield the raw instance descriptions of currently active (non-terminated)
    instances in region.
    """
    client = get_ec2_client(ctx, region)

    def fetch(token: Optional[str]) -> Tuple[List[Mapping[str, Any]], Optional[str]]:
        kwargs: Dict[str, Any] = {
            "Filters": [{"Name": "instance-state-name", "Values": list(ACTIVE_INSTANCE_STATES)}],
            "MaxResults": DESCRIBE_PAGE_SIZE,
        }
        if token:
            kwargs["NextToken"] = token
        try:
            resp = client.describe_instances(**kwargs)
        except Exception as e:
            mapped = map_aws_error(e, f"AWS SDK error while describing instances in {region}")
            if mapped:
                raise mapped from e
            raise
        instances: List[Mapping[str, Any]] = []
        for reservation in resp.get("Reservations") or []:
            instances.extend(reservation.get("Instances") or [])
        return instances, resp.get("NextToken")

    yield from paginate(fetch)


def aws_region_sources(ctx: AuthContext) -> RegionSources:
    return RegionSources(
        launches=lambda region, start, end: iter_launch_events(ctx, region, start, end),
        terminations=lambda region, start, end: iter_termination_events(ctx, region, start, end),
        running=lambda region: iter_running_instances(ctx, region),
    )
