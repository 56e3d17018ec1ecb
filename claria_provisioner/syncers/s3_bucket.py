"""Syncer for the encrypted, versioned data bucket."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..errors import ScanError
from ..manifest import ResourceType
from ..utils import batch_iterable, error_code, safe_paginate
from . import ResourceSyncer, register_syncer

logger = logging.getLogger(__name__)

MISSING_BUCKET_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})
DELETE_BATCH_SIZE = 1000

_PAB_FIELDS = {
    "block_public_acls": "BlockPublicAcls",
    "ignore_public_acls": "IgnorePublicAcls",
    "block_public_policy": "BlockPublicPolicy",
    "restrict_public_buckets": "RestrictPublicBuckets",
}


@register_syncer(ResourceType.S3_BUCKET.value)
class S3BucketSyncer(ResourceSyncer):
    service_name = "s3"
    create_actions = (
        "s3:CreateBucket",
        "s3:PutBucketVersioning",
        "s3:PutEncryptionConfiguration",
        "s3:PutBucketPublicAccessBlock",
        "s3:PutBucketPolicy",
    )
    update_actions = (
        "s3:PutBucketVersioning",
        "s3:PutEncryptionConfiguration",
        "s3:PutBucketPublicAccessBlock",
        "s3:PutBucketPolicy",
    )
    destroy_actions = (
        "s3:ListBucketVersions",
        "s3:DeleteObject",
        "s3:DeleteObjectVersion",
        "s3:DeleteBucket",
    )

    @property
    def bucket(self) -> str:
        return self.spec.resource_name

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as exc:
            if error_code(exc) in MISSING_BUCKET_CODES:
                return None
            raise

        location = self.client.get_bucket_location(Bucket=self.bucket).get("LocationConstraint")
        versioning = self.client.get_bucket_versioning(Bucket=self.bucket).get("Status")
        properties: Dict[str, Any] = {
            # us-east-1 buckets report no location constraint
            "region": location or "us-east-1",
            "versioning": versioning,
            "sse_algorithm": self._read_encryption(),
            "bucket_policy": self._read_policy(),
        }
        properties.update(self._read_public_access_block())
        return properties

    def _read_encryption(self) -> Optional[str]:
        try:
            response = self.client.get_bucket_encryption(Bucket=self.bucket)
        except ClientError as exc:
            if error_code(exc) == "ServerSideEncryptionConfigurationNotFoundError":
                return None
            raise
        rules = response.get("ServerSideEncryptionConfiguration", {}).get("Rules", [])
        for rule in rules:
            default = rule.get("ApplyServerSideEncryptionByDefault", {})
            if default.get("SSEAlgorithm"):
                return default["SSEAlgorithm"]
        return None

    def _read_public_access_block(self) -> Dict[str, bool]:
        try:
            response = self.client.get_public_access_block(Bucket=self.bucket)
        except ClientError as exc:
            if error_code(exc) == "NoSuchPublicAccessBlockConfiguration":
                return {name: False for name in _PAB_FIELDS}
            raise
        config = response.get("PublicAccessBlockConfiguration", {})
        return {name: bool(config.get(key, False)) for name, key in _PAB_FIELDS.items()}

    def _read_policy(self) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get_bucket_policy(Bucket=self.bucket)
        except ClientError as exc:
            if error_code(exc) == "NoSuchBucketPolicy":
                return None
            raise
        raw = response.get("Policy")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ScanError(f"Bucket policy of {self.bucket} is not valid JSON: {exc}") from exc

    def create(self) -> Dict[str, Any]:
        region = self.spec.desired["region"]
        kwargs: Dict[str, Any] = {"Bucket": self.bucket}
        if region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        self.client.create_bucket(**kwargs)
        logger.info("Created bucket %s in %s", self.bucket, region)
        return self.update()

    def update(self) -> Dict[str, Any]:
        desired = self.spec.desired
        self.client.put_bucket_versioning(
            Bucket=self.bucket,
            VersioningConfiguration={"Status": desired["versioning"]},
        )
        self.client.put_bucket_encryption(
            Bucket=self.bucket,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": desired["sse_algorithm"]}}]
            },
        )
        self.client.put_public_access_block(
            Bucket=self.bucket,
            PublicAccessBlockConfiguration={key: desired[name] for name, key in _PAB_FIELDS.items()},
        )
        self.client.put_bucket_policy(Bucket=self.bucket, Policy=json.dumps(desired["bucket_policy"]))
        logger.info("Applied versioning, encryption, public access block and policy to %s", self.bucket)
        return dict(desired)

    def destroy(self) -> None:
        # Versioned buckets must be emptied of every version and delete marker first.
        objects: List[Dict[str, str]] = []
        for key in ("Versions", "DeleteMarkers"):
            for item in safe_paginate(self.client, "list_object_versions", key, Bucket=self.bucket):
                objects.append({"Key": item["Key"], "VersionId": item["VersionId"]})

        for batch in batch_iterable(objects, DELETE_BATCH_SIZE):
            self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": list(batch), "Quiet": True})
        if objects:
            logger.info("Deleted %d object versions from %s", len(objects), self.bucket)

        self.client.delete_bucket(Bucket=self.bucket)
        logger.info("Deleted bucket %s", self.bucket)


__all__ = ["S3BucketSyncer"]
