"""Classify credentials as root, IAM admin, scoped, or insufficient."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .credentials import CallerIdentity, get_caller_identity
from .iam_policy import extract_allowed_actions, get_default_document, parse_document
from .manifest import IAM_POLICY_NAME
from .utils import error_code, is_access_denied, safe_paginate

logger = logging.getLogger(__name__)

ADMIN_MANAGED_POLICIES = frozenset(
    {
        "arn:aws:iam::aws:policy/AdministratorAccess",
        "arn:aws:iam::aws:policy/IAMFullAccess",
    }
)
ADMIN_ACTIONS = frozenset({"*", "iam:*"})
# Capabilities bootstrap needs; named in the reason for insufficient credentials.
BOOTSTRAP_CAPABILITIES: Tuple[str, ...] = (
    "iam:CreatePolicy",
    "iam:CreateUser",
    "iam:AttachUserPolicy",
    "iam:CreateAccessKey",
)


class CredentialClass(str, Enum):
    ROOT = "root"
    IAM_ADMIN = "iam_admin"
    SCOPED_CLARIA = "scoped_claria"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class AttachedPolicy:
    """One effective policy of an identity, with its parsed document."""

    name: str
    arn: Optional[str] = None
    document: Optional[Dict[str, Any]] = field(default=None, compare=False)
    source: str = "attached"


@dataclass(frozen=True)
class CredentialAssessment:
    credential_class: CredentialClass
    identity: CallerIdentity
    reason: str


def _grants_admin(policy: AttachedPolicy) -> bool:
    if policy.arn in ADMIN_MANAGED_POLICIES:
        return True
    if not policy.document:
        return False
    statements = policy.document.get("Statement")
    if isinstance(statements, dict):
        statements = [statements]
    for statement in statements or []:
        if not isinstance(statement, dict) or statement.get("Effect") != "Allow":
            continue
        actions = statement.get("Action")
        resources = statement.get("Resource")
        actions = actions if isinstance(actions, list) else [actions]
        resources = resources if isinstance(resources, list) else [resources]
        if ADMIN_ACTIONS.intersection(a for a in actions if isinstance(a, str)) and "*" in resources:
            return True
    return False


def _is_managed_claria_policy(policy: AttachedPolicy) -> bool:
    if policy.name != IAM_POLICY_NAME or policy.document is None:
        return False
    actions = extract_allowed_actions(policy.document)
    return bool(actions) and not any("*" in action for action in actions)


def classify_identity(
    identity: CallerIdentity,
    policies: Optional[Sequence[AttachedPolicy]],
    read_error: Optional[str] = None,
) -> CredentialAssessment:
    """Classify ``identity`` from its effective policies.

    Pure: identical inputs yield identical class and reason. Rules are
    evaluated in priority order and the first match wins, so root is never
    reported as ``iam_admin``.
    """

    if identity.is_root:
        return CredentialAssessment(
            credential_class=CredentialClass.ROOT,
            identity=identity,
            reason="Credentials belong to the AWS account root user.",
        )

    ordered = sorted(policies or [], key=lambda p: (p.name, p.arn or "", p.source))

    admin = [p for p in ordered if _grants_admin(p)]
    if admin:
        names = ", ".join(p.name for p in admin)
        return CredentialAssessment(
            credential_class=CredentialClass.IAM_ADMIN,
            identity=identity,
            reason=f"Credentials hold unrestricted administrative access via {names}.",
        )

    scoped = [p for p in ordered if _is_managed_claria_policy(p)]
    if scoped:
        actions = extract_allowed_actions(scoped[0].document)
        return CredentialAssessment(
            credential_class=CredentialClass.SCOPED_CLARIA,
            identity=identity,
            reason=(
                f"Credentials hold the {IAM_POLICY_NAME} policy "
                f"({len(actions)} actions) and nothing broader."
            ),
        )

    if read_error:
        reason = (
            f"Could not read the identity's policies ({read_error}). Missing capability: "
            f"{IAM_POLICY_NAME} is not visibly attached and {BOOTSTRAP_CAPABILITIES[0]} "
            "could not be confirmed."
        )
    else:
        held = ", ".join(p.name for p in ordered) or "none"
        reason = (
            f"Missing capability: neither {IAM_POLICY_NAME} nor administrative access "
            f"({', '.join(BOOTSTRAP_CAPABILITIES)}) is granted. Attached policies: {held}."
        )
    return CredentialAssessment(
        credential_class=CredentialClass.INSUFFICIENT,
        identity=identity,
        reason=reason,
    )


def _managed_policies(iam: boto3.client, method: str, **kwargs) -> List[AttachedPolicy]:
    policies = []
    for item in safe_paginate(iam, method, "AttachedPolicies", **kwargs):
        arn = item.get("PolicyArn")
        document = None if arn in ADMIN_MANAGED_POLICIES else get_default_document(iam, arn)
        policies.append(AttachedPolicy(name=item.get("PolicyName", arn), arn=arn, document=document))
    return policies


def _inline_policies(
    iam: boto3.client, list_method: str, get_method: str, source: str, **kwargs
) -> List[AttachedPolicy]:
    policies = []
    for name in safe_paginate(iam, list_method, "PolicyNames", **kwargs):
        response = getattr(iam, get_method)(PolicyName=name, **kwargs)
        policies.append(
            AttachedPolicy(
                name=name,
                document=parse_document(response.get("PolicyDocument")),
                source=source,
            )
        )
    return policies


def _group_policies(iam: boto3.client, user_name: str) -> List[AttachedPolicy]:
    policies: List[AttachedPolicy] = []
    for group in safe_paginate(iam, "list_groups_for_user", "Groups", UserName=user_name):
        group_name = group["GroupName"]
        policies.extend(_managed_policies(iam, "list_attached_group_policies", GroupName=group_name))
        policies.extend(
            _inline_policies(
                iam, "list_group_policies", "get_group_policy", f"group:{group_name}", GroupName=group_name
            )
        )
    return policies


def _optional(label: str, reader) -> List[AttachedPolicy]:
    # The scoped identity may only read its own attached policy; denied
    # secondary reads narrow the picture instead of failing it.
    try:
        return reader()
    except ClientError as exc:
        if not is_access_denied(exc):
            raise
        logger.debug("Skipping %s: %s", label, exc)
        return []


def collect_policies(session: boto3.session.Session, identity: CallerIdentity) -> List[AttachedPolicy]:
    """Gather the effective policies attached to ``identity``.

    Raises :class:`botocore.exceptions.ClientError` when IAM denies listing
    the attached managed policies. Denied inline or group reads are skipped.
    """

    iam = session.client("iam")
    kind = identity.principal_kind
    name = identity.principal_name
    if kind == "user":
        policies = _managed_policies(iam, "list_attached_user_policies", UserName=name)
        policies.extend(
            _optional(
                "inline user policies",
                lambda: _inline_policies(iam, "list_user_policies", "get_user_policy", "inline", UserName=name),
            )
        )
        policies.extend(_optional("group policies", lambda: _group_policies(iam, name)))
        return policies
    if kind == "assumed-role":
        policies = _managed_policies(iam, "list_attached_role_policies", RoleName=name)
        policies.extend(
            _optional(
                "inline role policies",
                lambda: _inline_policies(iam, "list_role_policies", "get_role_policy", "inline", RoleName=name),
            )
        )
        return policies
    return []


def assess_credentials(session: boto3.session.Session) -> CredentialAssessment:
    """Resolve the caller behind ``session`` and classify it. Read-only."""

    identity = get_caller_identity(session)
    if identity.is_root:
        return classify_identity(identity, [])

    try:
        policies = collect_policies(session, identity)
    except (ClientError, BotoCoreError) as exc:
        code = error_code(exc) or type(exc).__name__
        logger.info("Could not read policies for %s: %s", identity.arn, exc)
        return classify_identity(identity, None, read_error=code)
    return classify_identity(identity, policies)


__all__ = [
    "ADMIN_MANAGED_POLICIES",
    "AttachedPolicy",
    "CredentialAssessment",
    "CredentialClass",
    "assess_credentials",
    "classify_identity",
    "collect_policies",
]
