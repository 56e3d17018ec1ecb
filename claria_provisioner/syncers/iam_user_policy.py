"""Syncer for the managed user and the least-privilege policy attached to it."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..iam_policy import (
    diff_actions,
    ensure_policy,
    ensure_policy_attached,
    ensure_user,
    get_user_arn,
    policy_document,
    read_attached_policy,
)
from ..manifest import FieldDrift, ResourceType
from . import ResourceSyncer, register_syncer

logger = logging.getLogger(__name__)


@register_syncer(ResourceType.IAM_USER_POLICY.value)
class IamUserPolicySyncer(ResourceSyncer):
    """Drift is the exact difference between granted and declared action names.

    Destroying this resource would revoke the credentials doing the
    destroying, so it is retained.
    """

    service_name = "iam"
    create_actions = (
        "iam:CreateUser",
        "iam:CreatePolicy",
        "iam:AttachUserPolicy",
    )
    update_actions = (
        "iam:CreatePolicyVersion",
        "iam:ListPolicyVersions",
        "iam:DeletePolicyVersion",
        "iam:AttachUserPolicy",
    )
    retain_on_destroy = True

    @property
    def user_name(self) -> str:
        return self.spec.desired["user_name"]

    def resource_id(self, properties: Mapping[str, Any]) -> str:
        return properties.get("policy_arn") or self.resource_name

    def read(self) -> Optional[Dict[str, Any]]:
        user_arn = get_user_arn(self.client, self.user_name)
        if user_arn is None:
            return None
        snapshot = read_attached_policy(self.client, self.user_name)
        return {
            "user_name": self.user_name,
            "user_arn": user_arn,
            "policy_arn": snapshot.policy_arn,
            "policy_attached": snapshot.attached,
            "actions": sorted(snapshot.actions),
        }

    def diff(self, actual: Mapping[str, Any]) -> List[FieldDrift]:
        drift = super().diff(actual)
        drift.extend(diff_actions(self.spec.desired["actions"], actual.get("actions") or []))
        return drift

    def _apply(self) -> Dict[str, Any]:
        desired = self.spec.desired
        user_arn = ensure_user(self.client, self.user_name)
        document = policy_document(desired["system_name"], desired["account_id"], desired["actions"])
        arn = ensure_policy(self.client, desired["account_id"], document)
        ensure_policy_attached(self.client, arn, self.user_name)
        return {
            "user_name": self.user_name,
            "user_arn": user_arn,
            "policy_arn": arn,
            "policy_attached": True,
            "actions": sorted(desired["actions"]),
        }

    def create(self) -> Dict[str, Any]:
        return self._apply()

    def update(self) -> Dict[str, Any]:
        return self._apply()

    def destroy(self) -> None:
        logger.info("Leaving %s attached to %s", self.resource_name, self.user_name)


__all__ = ["IamUserPolicySyncer"]
