from __future__ import annotations

from typing import List

from ..auth.providers import AuthContext
from ..util.errors import map_aws_error
from .clients import get_ec2_client


def get_enabled_regions(ctx: AuthContext) -> List[str]:
    """
    Return the sorted list of regions enabled for the account (e.g., 'eu-west-1').
    Opt-in regions that are not enabled are excluded.
    """
    ec2 = get_ec2_client(ctx)
    try:
        resp = ec2.describe_regions(AllRegions=False)
    except Exception as e:
        mapped = map_aws_error(e, "AWS SDK error while listing regions")
        if mapped:
            raise mapped from e
        raise
    regions = []
    for item in resp.get("Regions", []):
        name = item.get("RegionName")
        status = item.get("OptInStatus")
        if not name or status == "not-opted-in":
            continue
        regions.append(name)
    return sorted(set(regions))
