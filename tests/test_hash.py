from __future__ import annotations

from ec2_history.diff.hash import stable_record_hash

BASE = {
    "region": "us-east-1",
    "instanceId": "i-1",
    "instanceType": "t3.micro",
    "launchTime": "2025-01-01T10:00:00Z",
    "terminationTime": None,
    "stillRunning": True,
    "launchOrigin": "Event",
}


def test_hash_ignores_key_order_and_derived_fields() -> None:
    reordered = dict(reversed(list(BASE.items())))
    reordered["stillRunning"] = False

    assert stable_record_hash(BASE) == stable_record_hash(reordered)


def test_hash_changes_when_termination_observed() -> None:
    terminated = dict(BASE, terminationTime="2025-01-05T08:30:00Z", stillRunning=False)
    assert stable_record_hash(BASE) != stable_record_hash(terminated)
