"""Managed IAM policy: document rendering, exact action diffing, and IAM writes.

Action names are compared as literal, case-sensitive strings. IAM action
names do not always match the API operation they authorise (for example
``GetBucketEncryption`` is authorised by ``s3:GetEncryptionConfiguration``),
so a near miss must surface as drift rather than be treated as equivalent.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from urllib.parse import unquote

import boto3
from botocore.exceptions import ClientError

from .manifest import IAM_POLICY_NAME, IAM_USER_NAME, FieldDrift, Manifest
from .utils import error_code, safe_paginate

logger = logging.getLogger(__name__)

POLICY_DESCRIPTION = "Minimal permissions for the Claria desktop app"
MAX_POLICY_VERSIONS = 5

_SID_NAMES = {
    "s3": "S3",
    "cloudtrail": "CloudTrail",
    "bedrock": "Bedrock",
    "aws-marketplace": "Marketplace",
    "iam": "IAMReadSelf",
    "sts": "STS",
}


@dataclass(frozen=True)
class AttachedPolicySnapshot:
    """The managed policy as currently attached to the managed user."""

    policy_arn: Optional[str]
    attached: bool
    actions: FrozenSet[str]
    document: Optional[Dict[str, Any]] = None


def required_actions(manifest: Manifest) -> FrozenSet[str]:
    return manifest.required_actions()


def policy_arn(account_id: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{IAM_POLICY_NAME}"


def policy_document(system_name: str, account_id: str, actions: Iterable[str]) -> Dict[str, Any]:
    """Render the managed policy granting exactly ``actions``.

    Statements are grouped by service prefix. S3 is scoped to the system's
    buckets and IAM to the managed user and policy; everything else applies
    to ``*``.
    """

    by_service: Dict[str, List[str]] = defaultdict(list)
    for action in sorted(set(actions)):
        by_service[action.split(":", 1)[0]].append(action)

    statements = []
    for service in sorted(by_service):
        if service == "s3":
            resource: Any = [
                f"arn:aws:s3:::{account_id}-{system_name}-*",
                f"arn:aws:s3:::{account_id}-{system_name}-*/*",
            ]
        elif service == "iam":
            resource = [
                f"arn:aws:iam::{account_id}:user/{IAM_USER_NAME}",
                policy_arn(account_id),
            ]
        else:
            resource = "*"
        sid_suffix = _SID_NAMES.get(service, service.title().replace("-", ""))
        statements.append(
            {
                "Sid": f"Claria{sid_suffix}",
                "Effect": "Allow",
                "Action": by_service[service],
                "Resource": resource,
            }
        )
    return {"Version": "2012-10-17", "Statement": statements}


def parse_document(document: Any) -> Optional[Dict[str, Any]]:
    """Return a policy document as a mapping.

    boto3 normally decodes IAM policy documents already; URL-encoded JSON
    strings are accepted too.
    """

    if isinstance(document, dict):
        return document
    if isinstance(document, str) and document:
        try:
            parsed = json.loads(unquote(document))
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def extract_allowed_actions(document: Optional[Mapping[str, Any]]) -> FrozenSet[str]:
    """Collect the literal action strings from every ``Allow`` statement."""

    if not document:
        return frozenset()
    actions = set()
    for statement in _as_list(document.get("Statement")):
        if not isinstance(statement, dict) or statement.get("Effect") != "Allow":
            continue
        for action in _as_list(statement.get("Action")):
            if isinstance(action, str):
                actions.add(action)
    return frozenset(actions)


def diff_actions(desired: Iterable[str], actual: Iterable[str]) -> List[FieldDrift]:
    """Exact string-set diff: one drift per missing and per extraneous action."""

    desired_set = set(desired)
    actual_set = set(actual)
    drift = [
        FieldDrift(field=action, label="Missing permission", actual=None, expected=action)
        for action in sorted(desired_set - actual_set)
    ]
    drift.extend(
        FieldDrift(field=action, label="Unexpected permission", actual=action, expected=None)
        for action in sorted(actual_set - desired_set)
    )
    return drift


def missing_actions(required: Iterable[str], granted: Iterable[str]) -> List[str]:
    granted_set = set(granted)
    return sorted(action for action in set(required) if action not in granted_set)


def find_attached_policy(iam: boto3.client, user_name: str = IAM_USER_NAME) -> Optional[str]:
    """ARN of the managed policy attached to ``user_name``, or ``None``."""

    for policy in safe_paginate(iam, "list_attached_user_policies", "AttachedPolicies", UserName=user_name):
        if policy.get("PolicyName") == IAM_POLICY_NAME:
            return policy.get("PolicyArn")
    return None


def get_default_document(iam: boto3.client, arn: str) -> Optional[Dict[str, Any]]:
    """Fetch the default version document of managed policy ``arn``."""

    policy = iam.get_policy(PolicyArn=arn).get("Policy", {})
    version_id = policy.get("DefaultVersionId", "v1")
    version = iam.get_policy_version(PolicyArn=arn, VersionId=version_id).get("PolicyVersion", {})
    return parse_document(version.get("Document"))


def read_attached_policy(iam: boto3.client, user_name: str = IAM_USER_NAME) -> AttachedPolicySnapshot:
    """Read the managed policy attached to ``user_name`` and its granted actions."""

    arn = find_attached_policy(iam, user_name)
    if arn is None:
        return AttachedPolicySnapshot(policy_arn=None, attached=False, actions=frozenset())
    document = get_default_document(iam, arn)
    return AttachedPolicySnapshot(
        policy_arn=arn,
        attached=True,
        actions=extract_allowed_actions(document),
        document=document,
    )


def policy_exists(iam: boto3.client, arn: str) -> bool:
    try:
        iam.get_policy(PolicyArn=arn)
    except ClientError as exc:
        if error_code(exc) == "NoSuchEntity":
            return False
        raise
    return True


def publish_policy_version(iam: boto3.client, arn: str, document: Mapping[str, Any]) -> None:
    """Make ``document`` the default version of ``arn``.

    IAM keeps at most five versions; at the limit the oldest non-default
    version is deleted first.
    """

    versions = list(safe_paginate(iam, "list_policy_versions", "Versions", PolicyArn=arn))
    if len(versions) >= MAX_POLICY_VERSIONS:
        candidates = [v for v in versions if not v.get("IsDefaultVersion")]
        if candidates:
            oldest = min(candidates, key=lambda v: v.get("CreateDate") or "")
            iam.delete_policy_version(PolicyArn=arn, VersionId=oldest["VersionId"])
            logger.info("Deleted policy version %s of %s", oldest["VersionId"], arn)

    response = iam.create_policy_version(
        PolicyArn=arn, PolicyDocument=json.dumps(document), SetAsDefault=True
    )
    logger.info(
        "Published policy version %s for %s",
        response.get("PolicyVersion", {}).get("VersionId", "unknown"),
        arn,
    )


def ensure_policy(iam: boto3.client, account_id: str, document: Mapping[str, Any]) -> str:
    """Create the managed policy, or bring its default version up to ``document``.

    Returns the policy ARN. When the policy exists and already grants
    exactly the same actions no write is made.
    """

    arn = policy_arn(account_id)
    if policy_exists(iam, arn):
        current = get_default_document(iam, arn)
        if extract_allowed_actions(current) != extract_allowed_actions(document):
            publish_policy_version(iam, arn, document)
        else:
            logger.info("IAM policy %s already up to date", arn)
        return arn

    response = iam.create_policy(
        PolicyName=IAM_POLICY_NAME,
        PolicyDocument=json.dumps(document),
        Description=POLICY_DESCRIPTION,
    )
    created = response["Policy"]["Arn"]
    logger.info("Created IAM policy %s", created)
    return created


def get_user_arn(iam: boto3.client, user_name: str = IAM_USER_NAME) -> Optional[str]:
    try:
        response = iam.get_user(UserName=user_name)
    except ClientError as exc:
        if error_code(exc) == "NoSuchEntity":
            return None
        raise
    return response["User"]["Arn"]


def ensure_user(iam: boto3.client, user_name: str = IAM_USER_NAME) -> str:
    """Create ``user_name`` unless it already exists. Returns the user ARN."""

    existing = get_user_arn(iam, user_name)
    if existing:
        logger.info("IAM user %s already exists, reusing", user_name)
        return existing
    response = iam.create_user(UserName=user_name)
    arn = response["User"]["Arn"]
    logger.info("Created IAM user %s", arn)
    return arn


def ensure_policy_attached(iam: boto3.client, arn: str, user_name: str = IAM_USER_NAME) -> bool:
    """Attach ``arn`` to ``user_name``. Returns ``False`` if it was already attached."""

    if find_attached_policy(iam, user_name) == arn:
        return False
    iam.attach_user_policy(UserName=user_name, PolicyArn=arn)
    logger.info("Attached %s to %s", arn, user_name)
    return True


__all__ = [
    "AttachedPolicySnapshot",
    "diff_actions",
    "ensure_policy",
    "ensure_policy_attached",
    "ensure_user",
    "extract_allowed_actions",
    "find_attached_policy",
    "get_default_document",
    "get_user_arn",
    "missing_actions",
    "parse_document",
    "policy_arn",
    "policy_document",
    "policy_exists",
    "publish_policy_version",
    "read_attached_policy",
    "required_actions",
]
