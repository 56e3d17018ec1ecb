"""Shared helpers for boto3 calls made by the provisioner."""
from __future__ import annotations

from typing import Iterable, Iterator, Sequence, TypeVar

import boto3
from botocore.exceptions import ClientError, OperationNotPageableError

T = TypeVar("T")

ACCESS_DENIED_CODES = frozenset(
    {"AccessDenied", "AccessDeniedException", "UnauthorizedOperation", "AuthorizationError"}
)


def safe_paginate(client: boto3.client, method_name: str, result_key: str, **kwargs) -> Iterator[dict]:
    """Iterate through paginated boto3 results while handling pagination gaps."""

    try:
        paginator = client.get_paginator(method_name)
    except OperationNotPageableError:
        response = getattr(client, method_name)(**kwargs)
        for item in response.get(result_key, []):
            yield item
        return

    for page in paginator.paginate(**kwargs):
        for item in page.get(result_key, []):
            yield item


def batch_iterable(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    """Yield slices of *items* with at most ``size`` members."""

    for i in range(0, len(items), size):
        yield items[i : i + size]


def error_code(exc: Exception) -> str:
    """Return the AWS error code from a botocore exception, if present."""

    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def is_access_denied(exc: Exception) -> bool:
    return error_code(exc) in ACCESS_DENIED_CODES


def describe_error(action: str, exc: Exception) -> str:
    """Format ``exc`` raised by ``action`` for display next to a resource."""

    action = action.rstrip(".")
    return f"{action}: {exc}"


__all__ = [
    "ACCESS_DENIED_CODES",
    "batch_iterable",
    "describe_error",
    "error_code",
    "is_access_denied",
    "safe_paginate",
]
