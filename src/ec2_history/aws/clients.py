from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional, Tuple

from ..auth.providers import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_SDK_MAX_ATTEMPTS,
    AuthContext,
    client_config,
    make_client,
)

# (connect_timeout, read_timeout, max_attempts)
SdkTimeouts = Tuple[int, int, int]

_CLIENT_CACHE: Dict[Tuple[str, str, int, Optional[SdkTimeouts]], Any] = {}
_CLIENT_CACHE_LOCK = threading.Lock()
_SDK_TIMEOUTS: Optional[SdkTimeouts] = None


def sdk_timeouts_for(region_timeout: float) -> SdkTimeouts:
    """
    Size botocore timeouts and attempts so that one SDK call, retries
    included, fits inside region_timeout seconds (minimum 2s per attempt).
    """
    budget = max(2, int(region_timeout))
    connect = min(DEFAULT_CONNECT_TIMEOUT, max(1, budget // 4))
    read = min(DEFAULT_READ_TIMEOUT, max(1, budget - connect))
    attempts = max(1, min(DEFAULT_SDK_MAX_ATTEMPTS, budget // (connect + read)))
    return connect, read, attempts


def set_client_timeouts(region_timeout: Optional[float]) -> None:
    """Bound clients created after this call by region_timeout; None restores the defaults."""
    global _SDK_TIMEOUTS
    _SDK_TIMEOUTS = sdk_timeouts_for(region_timeout) if region_timeout and region_timeout > 0 else None


def clear_client_cache() -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.clear()


def _cache_disabled() -> bool:
    return (os.getenv("EC2_HIST_DISABLE_CLIENT_CACHE") or "").strip().lower() in {"1", "true", "yes"}


def _config() -> Any:
    if _SDK_TIMEOUTS is None:
        return None
    connect, read, attempts = _SDK_TIMEOUTS
    return client_config(connect_timeout=connect, read_timeout=read, max_attempts=attempts)


def _get_client(service: str, ctx: AuthContext, region: Optional[str]) -> Any:
    resolved_region = region or ctx.home_region
    # boto3 clients are thread-safe once created; creating them from a shared Session is not.
    with _CLIENT_CACHE_LOCK:
        if _cache_disabled():
            return make_client(service, ctx, region=resolved_region, config=_config())
        key = (service, resolved_region, id(ctx.session), _SDK_TIMEOUTS)
        client = _CLIENT_CACHE.get(key)
        if client is None:
            client = make_client(service, ctx, region=resolved_region, config=_config())
            _CLIENT_CACHE[key] = client
    return client


def get_ec2_client(ctx: AuthContext, region: Optional[str] = None) -> Any:
    return _get_client("ec2", ctx, region)


def get_cloudtrail_client(ctx: AuthContext, region: str) -> Any:
    return _get_client("cloudtrail", ctx, region)
