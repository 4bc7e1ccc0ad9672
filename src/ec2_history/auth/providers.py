from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from ..util.errors import map_aws_error

DEFAULT_REGION = "us-east-1"
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_READ_TIMEOUT = 60
DEFAULT_SDK_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class AuthContext:
    """
    Resolved AWS credentials context used to construct service clients.
    The boto3 Session is shared across threads. Clients are created from it one
    at a time and cached per service, region and timeout settings
    (see aws/clients.py); the clients themselves are shared by all workers.
    """

    session: Any
    profile: Optional[str]
    home_region: str
    method: str = "default"  # default|profile


class AuthError(RuntimeError):
    pass


def _detect_region(session: Any) -> str:
    region = getattr(session, "region_name", None)
    return region or os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or DEFAULT_REGION


def resolve_auth(profile: Optional[str] = None, region: Optional[str] = None) -> AuthContext:
    """
    Resolve an AWS session.
    - profile: named profile from ~/.aws/config (otherwise the default chain:
      env vars, shared config, SSO cache, instance/container roles)
    - region: home region for global calls such as describe_regions
    """
    try:
        if profile:
            session = boto3.session.Session(profile_name=profile, region_name=region)
        else:
            session = boto3.session.Session(region_name=region)
    except Exception as e:
        mapped = map_aws_error(e, "AWS SDK error while loading profile")
        if mapped:
            raise AuthError(str(mapped)) from e
        raise AuthError(f"Failed to create AWS session: {e}") from e

    if session.get_credentials() is None:
        raise AuthError(
            "No AWS credentials found. Configure a profile (--profile) or the standard AWS_* environment variables."
        )
    return AuthContext(
        session=session,
        profile=profile,
        home_region=region or _detect_region(session),
        method="profile" if profile else "default",
    )


def client_config(
    *,
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: int = DEFAULT_READ_TIMEOUT,
    max_attempts: int = DEFAULT_SDK_MAX_ATTEMPTS,
) -> Config:
    kwargs: Dict[str, Any] = {
        "connect_timeout": connect_timeout,
        "read_timeout": read_timeout,
        "retries": {"max_attempts": max(1, max_attempts), "mode": "standard"},
    }
    return Config(**kwargs)


def make_client(
    service: str,
    ctx: AuthContext,
    region: Optional[str] = None,
    config: Optional[Config] = None,
) -> Any:
    """
    Construct a boto3 client for service in region (home region when omitted)
    with the SDK's standard retry mode and bounded timeouts.
    """
    try:
        return ctx.session.client(service, region_name=region or ctx.home_region, config=config or client_config())
    except Exception as e:
        mapped = map_aws_error(e, f"AWS SDK error while creating {service} client")
        if mapped:
            raise mapped from e
        raise


def get_caller_identity(ctx: AuthContext) -> Dict[str, str]:
    sts = make_client("sts", ctx)
    try:
        resp = sts.get_caller_identity()
    except Exception as e:
        mapped = map_aws_error(e, "AWS SDK error while validating credentials")
        if mapped:
            raise AuthError(str(mapped)) from e
        raise
    return {"account": str(resp.get("Account") or ""), "arn": str(resp.get("Arn") or "")}
