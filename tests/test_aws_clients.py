from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any, List

import pytest

from ec2_history.auth import providers
from ec2_history.aws import clients, regions


@pytest.fixture(autouse=True)
def _reset_cache(monkeypatch):
    monkeypatch.delenv("EC2_HIST_DISABLE_CLIENT_CACHE", raising=False)
    clients.clear_client_cache()
    clients.set_client_timeouts(None)
    yield
    clients.clear_client_cache()
    clients.set_client_timeouts(None)


def _ctx() -> SimpleNamespace:
    return SimpleNamespace(session=object(), home_region="us-east-1")


def test_clients_are_cached_per_service_and_region(monkeypatch) -> None:
    made: List[Any] = []

    def _make(service, ctx, region=None, config=None):
        made.append((service, region))
        return object()

    monkeypatch.setattr(clients, "make_client", _make)
    ctx = _ctx()

    a = clients.get_cloudtrail_client(ctx, "eu-west-1")
    b = clients.get_cloudtrail_client(ctx, "eu-west-1")
    c = clients.get_ec2_client(ctx)

    assert a is b
    assert c is not a
    assert made == [("cloudtrail", "eu-west-1"), ("ec2", "us-east-1")]


def test_cache_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setattr(clients, "make_client", lambda service, ctx, region=None, config=None: object())
    monkeypatch.setenv("EC2_HIST_DISABLE_CLIENT_CACHE", "1")
    ctx = _ctx()

    assert clients.get_ec2_client(ctx, "eu-west-1") is not clients.get_ec2_client(ctx, "eu-west-1")


@pytest.mark.parametrize("region_timeout", [2, 12.5, 60, 300, 3600])
def test_sdk_timeouts_fit_region_timeout(region_timeout) -> None:
    connect, read, attempts = clients.sdk_timeouts_for(region_timeout)

    assert connect >= 1 and read >= 1 and attempts >= 1
    assert attempts * (connect + read) <= max(2, region_timeout)


def test_default_region_timeout_bounds_sdk_retries() -> None:
    connect, read, attempts = clients.sdk_timeouts_for(300)
    assert (connect, read) == (10, 60)
    assert attempts == 4


def test_region_timeout_builds_bounded_config(monkeypatch) -> None:
    configs: List[Any] = []
    monkeypatch.setattr(
        clients, "make_client", lambda service, ctx, region=None, config=None: configs.append(config) or object()
    )

    clients.set_client_timeouts(12.5)
    clients.get_ec2_client(_ctx(), "eu-west-1")

    cfg = configs[0]
    assert cfg is not None
    assert cfg.connect_timeout == 3
    assert cfg.read_timeout == 9
    assert cfg.retries == {"max_attempts": 1, "mode": "standard"}


def test_uncached_clients_are_created_one_at_a_time(monkeypatch) -> None:
    monkeypatch.setenv("EC2_HIST_DISABLE_CLIENT_CACHE", "1")
    active = {"now": 0, "max": 0}
    guard = threading.Lock()

    def _make(service, ctx, region=None, config=None):
        with guard:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        time.sleep(0.01)
        with guard:
            active["now"] -= 1
        return object()

    monkeypatch.setattr(clients, "make_client", _make)
    ctx = _ctx()
    threads = [
        threading.Thread(target=clients.get_cloudtrail_client, args=(ctx, f"region-{n}")) for n in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert active["max"] == 1


def test_enabled_regions_skip_not_opted_in(monkeypatch) -> None:
    fake = SimpleNamespace(
        describe_regions=lambda AllRegions: {
            "Regions": [
                {"RegionName": "us-west-2", "OptInStatus": "opt-in-not-required"},
                {"RegionName": "af-south-1", "OptInStatus": "not-opted-in"},
                {"RegionName": "ap-east-1", "OptInStatus": "opted-in"},
                {"RegionName": "us-west-2"},
                {"OptInStatus": "opted-in"},
            ]
        }
    )
    monkeypatch.setattr(regions, "get_ec2_client", lambda ctx: fake)

    assert regions.get_enabled_regions(_ctx()) == ["ap-east-1", "us-west-2"]


def test_resolve_auth_without_credentials(monkeypatch) -> None:
    class _Session:
        region_name = None

        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def get_credentials(self):
            return None

    monkeypatch.setattr(providers.boto3.session, "Session", _Session)

    with pytest.raises(providers.AuthError, match="No AWS credentials"):
        providers.resolve_auth()


def test_resolve_auth_with_profile(monkeypatch) -> None:
    class _Session:
        region_name = "eu-central-1"

        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def get_credentials(self):
            return object()

    monkeypatch.setattr(providers.boto3.session, "Session", _Session)

    ctx = providers.resolve_auth(profile="audit")

    assert ctx.method == "profile"
    assert ctx.profile == "audit"
    assert ctx.home_region == "eu-central-1"
    assert ctx.session.kwargs["profile_name"] == "audit"


def test_client_config_uses_standard_retries() -> None:
    cfg = providers.client_config(read_timeout=20, max_attempts=0)
    assert cfg.read_timeout == 20
    assert cfg.retries == {"max_attempts": 1, "mode": "standard"}
