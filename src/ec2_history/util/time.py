from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now_iso(seconds: bool = True) -> str:
    """
    Return current UTC time in ISO-8601 format.
    - If seconds is True, use seconds precision (stable strings).
    - Else, use milliseconds precision.
    """
    if seconds:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso_utc(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into an aware UTC datetime.
    Accepts datetime objects (naive ones are assumed UTC), ISO-8601 strings with
    a trailing 'Z' or an offset, and epoch seconds. Returns None when the value is
    missing or cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc(dt: datetime) -> str:
    """Render as 'YYYY-MM-DDTHH:MM:SSZ' (the CloudTrail style)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def window_bound(value: str, *, end: bool) -> datetime:
    """
    Resolve a window bound. A bare date expands to the day boundary:
    start -> 00:00:00Z, end -> 23:59:59Z. Full timestamps are kept as given.
    """
    raw = (value or "").strip()
    if _DATE_ONLY.match(raw):
        raw = f"{raw}T23:59:59Z" if end else f"{raw}T00:00:00Z"
    dt = parse_iso_utc(raw)
    if dt is None:
        raise ValueError(f"Invalid window timestamp: {value!r} (expected YYYY-MM-DD or ISO-8601)")
    return dt
