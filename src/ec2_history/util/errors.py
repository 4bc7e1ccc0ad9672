from __future__ import annotations

from enum import IntEnum
from typing import Any, Mapping, Optional


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    AWS_ERROR = 4
    RUNTIME_ERROR = 5
    PARTIAL = 6
    CANCELLED = 130


class HistoryError(Exception):
    """Base error for the instance history pipeline."""


class ConfigError(HistoryError):
    """Raised for configuration or argument issues."""


class AuthResolutionError(HistoryError):
    """Raised when an AWS session cannot be resolved."""


class AwsClientError(HistoryError):
    """Raised when AWS SDK operations fail; code carries the service error code when known."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ExportError(HistoryError):
    """Raised when exporting artifacts fails."""


class DiffError(HistoryError):
    """Raised when diffing history reports fails."""


class RunCancelled(HistoryError):
    """Raised when the caller cancels a run before finalization."""


class MalformedRecord(HistoryError):
    """
    A single raw source record could not be normalized.
    Scoped to one record: callers skip it and keep going.
    """

    def __init__(
        self,
        reason: str,
        *,
        region: str,
        kind: str,
        raw: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(f"{kind} record in {region}: {reason}")
        self.reason = reason
        self.region = region
        self.kind = kind
        self.raw = raw


class RegionFetchFailure(HistoryError):
    """A region's sources could not be retrieved within the retry/timeout budget."""

    def __init__(self, region: str, message: str, *, attempts: int = 0) -> None:
        super().__init__(f"{region}: {message}")
        self.region = region
        self.attempts = attempts


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthResolutionError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, AwsClientError):
        return int(ExitCode.AWS_ERROR)
    if isinstance(exc, (RunCancelled, KeyboardInterrupt)):
        return int(ExitCode.CANCELLED)
    if isinstance(exc, (ExportError, DiffError, HistoryError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def _aws_error_types() -> tuple[type[BaseException], ...]:
    try:
        from botocore.exceptions import BotoCoreError, ClientError
    except Exception:
        return ()
    return (ClientError, BotoCoreError)


def is_aws_error(exc: BaseException) -> bool:
    """
    Return True if the exception looks like a botocore/boto3 error.
    """
    aws_types = _aws_error_types()
    if aws_types and isinstance(exc, aws_types):
        return True
    module = exc.__class__.__module__
    return module.startswith("botocore.") or module.startswith("boto3.")


def aws_error_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, AwsClientError):
        return exc.code
    response = getattr(exc, "response", None)
    if not isinstance(response, Mapping):
        return None
    error = response.get("Error")
    if not isinstance(error, Mapping):
        return None
    code = error.get("Code")
    return str(code) if code else None


def map_aws_error(exc: BaseException, context: str) -> AwsClientError | None:
    """
    Wrap AWS SDK errors with AwsClientError for consistent exit codes.
    """
    if not is_aws_error(exc):
        return None
    code = aws_error_code(exc)
    if code:
        return AwsClientError(f"{context}: [{code}] {exc}", code=code)
    return AwsClientError(f"{context}: {exc}")
