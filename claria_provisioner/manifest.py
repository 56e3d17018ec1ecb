"""The fixed, ordered catalogue of resources the provisioner manages."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional, Tuple

from .errors import ManifestError


# Bump when adding, removing, or changing resource specs.
MANIFEST_VERSION = 1

IAM_USER_NAME = "claria-admin"
IAM_POLICY_NAME = "ClariaProvisionerAccess"

CLOUDTRAIL_PREFIX = "_cloudtrail"
DEFAULT_MODEL_PREFIXES: Tuple[str, ...] = (
    "anthropic.claude-sonnet-4",
    "anthropic.claude-opus-4",
)

# Actions the identity needs outside any single resource's lifecycle.
BASE_ACTIONS: Tuple[str, ...] = ("sts:GetCallerIdentity",)


class ResourceType(str, Enum):
    """Resource types known to this build."""

    S3_BUCKET = "s3_bucket"
    CLOUDTRAIL_TRAIL = "cloudtrail_trail"
    BEDROCK_MODEL_ACCESS = "bedrock_model_access"
    IAM_USER_POLICY = "iam_user_policy"


class Severity(str, Enum):
    """How much operator attention a change to the resource deserves."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class FieldDrift:
    """Before/after for a single field that does not match desired state."""

    field: str
    label: str
    actual: Any
    expected: Any


@dataclass(frozen=True)
class ResourceSpec:
    """Desired shape and required permissions of one managed resource."""

    resource_type: str
    resource_name: str
    label: str
    description: str
    severity: Severity = Severity.NORMAL
    desired: Mapping[str, Any] = field(default_factory=dict)
    field_labels: Mapping[str, str] = field(default_factory=dict)
    iam_actions: Tuple[str, ...] = ()

    def label_for(self, name: str) -> str:
        return self.field_labels.get(name, name)

    @classmethod
    def orphaned(cls, resource_type: str, resource_name: str) -> "ResourceSpec":
        """Display-only spec for a resource tracked in state but gone from the manifest."""

        return cls(
            resource_type=resource_type,
            resource_name=resource_name,
            label=f"{resource_type} (orphaned)",
            description="Resource is no longer managed and will be removed",
            severity=Severity.DESTRUCTIVE,
        )


@dataclass(frozen=True)
class Manifest:
    """Ordered resource specs plus the version they were declared under."""

    specs: Tuple[ResourceSpec, ...]
    version: int = MANIFEST_VERSION

    def __post_init__(self) -> None:
        seen = set()
        for spec in self.specs:
            if spec.resource_name in seen:
                raise ManifestError(f"Duplicate resource name in manifest: {spec.resource_name}")
            seen.add(spec.resource_name)

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def get(self, resource_name: str) -> Optional[ResourceSpec]:
        for spec in self.specs:
            if spec.resource_name == resource_name:
                return spec
        return None

    def names(self) -> Tuple[str, ...]:
        return tuple(spec.resource_name for spec in self.specs)

    def required_actions(self) -> FrozenSet[str]:
        """Union of every spec's ``iam_actions``."""

        actions = set()
        for spec in self.specs:
            actions.update(spec.iam_actions)
        return frozenset(actions)


def bucket_name(account_id: str, system_name: str) -> str:
    return f"{account_id}-{system_name}-data"


def trail_name(system_name: str) -> str:
    return f"{system_name}-trail"


def _bucket_policy(bucket: str, account_id: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AWSCloudTrailAclCheck",
                "Effect": "Allow",
                "Principal": {"Service": "cloudtrail.amazonaws.com"},
                "Action": "s3:GetBucketAcl",
                "Resource": f"arn:aws:s3:::{bucket}",
                "Condition": {"StringEquals": {"AWS:SourceAccount": account_id}},
            },
            {
                "Sid": "AWSCloudTrailWrite",
                "Effect": "Allow",
                "Principal": {"Service": "cloudtrail.amazonaws.com"},
                "Action": "s3:PutObject",
                "Resource": f"arn:aws:s3:::{bucket}/{CLOUDTRAIL_PREFIX}/AWSLogs/{account_id}/*",
                "Condition": {
                    "StringEquals": {
                        "s3:x-amz-acl": "bucket-owner-full-control",
                        "AWS:SourceAccount": account_id,
                    }
                },
            },
        ],
    }


def _policy_spec(other_specs: Tuple[ResourceSpec, ...], account_id: str, system_name: str) -> ResourceSpec:
    own_actions: Tuple[str, ...] = BASE_ACTIONS + (
        "iam:GetUser",
        "iam:ListAttachedUserPolicies",
        "iam:GetPolicy",
        "iam:GetPolicyVersion",
    )
    union = set(own_actions)
    for spec in other_specs:
        union.update(spec.iam_actions)
    return ResourceSpec(
        resource_type=ResourceType.IAM_USER_POLICY.value,
        resource_name=IAM_POLICY_NAME,
        label="IAM Policy",
        description="Permissions scoped to only what the desktop app needs",
        severity=Severity.ELEVATED,
        desired={
            "account_id": account_id,
            "system_name": system_name,
            "user_name": IAM_USER_NAME,
            "policy_attached": True,
            "actions": sorted(union),
        },
        field_labels={"policy_attached": "Policy attached"},
        iam_actions=own_actions,
    )


def build_manifest(account_id: str, system_name: str, region: str) -> Manifest:
    """Build the manifest for ``system_name`` in ``account_id``/``region``."""

    bucket = bucket_name(account_id, system_name)
    trail = trail_name(system_name)

    resources: Tuple[ResourceSpec, ...] = (
        ResourceSpec(
            resource_type=ResourceType.S3_BUCKET.value,
            resource_name=bucket,
            label="S3 Bucket",
            description="Encrypted, versioned storage for client records and provisioner state",
            desired={
                "region": region,
                "versioning": "Enabled",
                "sse_algorithm": "AES256",
                "block_public_acls": True,
                "ignore_public_acls": True,
                "block_public_policy": True,
                "restrict_public_buckets": True,
                "bucket_policy": _bucket_policy(bucket, account_id),
            },
            field_labels={
                "versioning": "Versioning status",
                "sse_algorithm": "Encryption algorithm",
                "block_public_acls": "Block public ACLs",
                "ignore_public_acls": "Ignore public ACLs",
                "block_public_policy": "Block public policy",
                "restrict_public_buckets": "Restrict public buckets",
                "bucket_policy": "Bucket policy",
            },
            iam_actions=(
                "s3:ListBucket",
                "s3:GetBucketLocation",
                "s3:CreateBucket",
                "s3:DeleteBucket",
                "s3:GetBucketVersioning",
                "s3:PutBucketVersioning",
                "s3:GetEncryptionConfiguration",
                "s3:PutEncryptionConfiguration",
                "s3:GetBucketPublicAccessBlock",
                "s3:PutBucketPublicAccessBlock",
                "s3:GetBucketPolicy",
                "s3:PutBucketPolicy",
                "s3:ListBucketVersions",
                "s3:GetObject",
                "s3:PutObject",
                "s3:DeleteObject",
                "s3:DeleteObjectVersion",
            ),
        ),
        ResourceSpec(
            resource_type=ResourceType.CLOUDTRAIL_TRAIL.value,
            resource_name=trail,
            label="CloudTrail Trail",
            description="Audit trail recording all account activity",
            desired={
                "s3_bucket": bucket,
                "s3_key_prefix": CLOUDTRAIL_PREFIX,
                "is_multi_region": False,
                "is_logging": True,
            },
            field_labels={
                "s3_bucket": "S3 bucket",
                "s3_key_prefix": "S3 key prefix",
                "is_multi_region": "Multi-region",
                "is_logging": "Logging active",
            },
            iam_actions=(
                "cloudtrail:GetTrail",
                "cloudtrail:GetTrailStatus",
                "cloudtrail:CreateTrail",
                "cloudtrail:UpdateTrail",
                "cloudtrail:StartLogging",
                "cloudtrail:StopLogging",
                "cloudtrail:DeleteTrail",
            ),
        ),
        ResourceSpec(
            resource_type=ResourceType.BEDROCK_MODEL_ACCESS.value,
            resource_name=f"{system_name}-model-access",
            label="Model Access",
            description="Marketplace agreements for the AI models used in report generation",
            severity=Severity.ELEVATED,
            desired={prefix: "AVAILABLE" for prefix in DEFAULT_MODEL_PREFIXES},
            field_labels={prefix: f"Agreement for {prefix}" for prefix in DEFAULT_MODEL_PREFIXES},
            iam_actions=(
                "bedrock:ListFoundationModels",
                "bedrock:GetFoundationModelAvailability",
                "bedrock:ListFoundationModelAgreementOffers",
                "bedrock:CreateFoundationModelAgreement",
                "bedrock:InvokeModel",
                "bedrock:InvokeModelWithResponseStream",
                "aws-marketplace:ViewSubscriptions",
                "aws-marketplace:Subscribe",
            ),
        ),
    )
    return Manifest(specs=resources + (_policy_spec(resources, account_id, system_name),), version=MANIFEST_VERSION)


__all__ = [
    "BASE_ACTIONS",
    "CLOUDTRAIL_PREFIX",
    "DEFAULT_MODEL_PREFIXES",
    "FieldDrift",
    "IAM_POLICY_NAME",
    "IAM_USER_NAME",
    "MANIFEST_VERSION",
    "Manifest",
    "ResourceSpec",
    "ResourceType",
    "Severity",
    "bucket_name",
    "build_manifest",
    "trail_name",
]
