"""List and delete the managed user's access keys (the two-key limit recovery)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProvisionerError
from .manifest import IAM_USER_NAME
from .utils import error_code, safe_paginate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessKeyInfo:
    access_key_id: str
    status: str
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_used_service: Optional[str] = None


def list_access_keys(session: boto3.session.Session, user_name: str = IAM_USER_NAME) -> List[AccessKeyInfo]:
    """Keys of ``user_name`` with last-used details, oldest first."""

    iam = session.client("iam")
    keys = []
    try:
        for meta in safe_paginate(iam, "list_access_keys", "AccessKeyMetadata", UserName=user_name):
            key_id = meta["AccessKeyId"]
            used = iam.get_access_key_last_used(AccessKeyId=key_id).get("AccessKeyLastUsed", {})
            service = used.get("ServiceName")
            keys.append(
                AccessKeyInfo(
                    access_key_id=key_id,
                    status=meta.get("Status", "Unknown"),
                    created_at=meta.get("CreateDate"),
                    last_used_at=used.get("LastUsedDate"),
                    # IAM reports "N/A" for keys that were never used.
                    last_used_service=None if service in (None, "N/A") else service,
                )
            )
    except (ClientError, BotoCoreError) as exc:
        raise ProvisionerError(f"Failed to list access keys for {user_name}: {exc}") from exc
    return sorted(keys, key=lambda k: (k.created_at is None, k.created_at or datetime.min))


def delete_access_key(session: boto3.session.Session, key_id: str, user_name: str = IAM_USER_NAME) -> None:
    iam = session.client("iam")
    try:
        iam.delete_access_key(UserName=user_name, AccessKeyId=key_id)
    except ClientError as exc:
        if error_code(exc) == "NoSuchEntity":
            raise ProvisionerError(f"Access key {key_id} does not belong to {user_name}") from exc
        raise ProvisionerError(f"Failed to delete access key {key_id}: {exc}") from exc
    except BotoCoreError as exc:
        raise ProvisionerError(f"Failed to delete access key {key_id}: {exc}") from exc
    logger.info("Deleted access key %s of %s", key_id, user_name)


__all__ = ["AccessKeyInfo", "delete_access_key", "list_access_keys"]
