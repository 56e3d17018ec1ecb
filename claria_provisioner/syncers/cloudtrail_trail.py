"""Syncer for the account audit trail."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from ..manifest import ResourceType
from ..utils import error_code
from . import ResourceSyncer, register_syncer

logger = logging.getLogger(__name__)


@register_syncer(ResourceType.CLOUDTRAIL_TRAIL.value)
class CloudTrailTrailSyncer(ResourceSyncer):
    service_name = "cloudtrail"
    create_actions = ("cloudtrail:CreateTrail", "cloudtrail:StartLogging")
    update_actions = ("cloudtrail:UpdateTrail", "cloudtrail:StartLogging", "cloudtrail:StopLogging")
    destroy_actions = ("cloudtrail:StopLogging", "cloudtrail:DeleteTrail")

    @property
    def trail(self) -> str:
        return self.spec.resource_name

    def resource_id(self, properties) -> str:
        return properties.get("trail_arn") or self.trail

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            trail = self.client.get_trail(Name=self.trail).get("Trail", {})
        except ClientError as exc:
            if error_code(exc) == "TrailNotFoundException":
                return None
            raise
        status = self.client.get_trail_status(Name=self.trail)
        return {
            "trail_arn": trail.get("TrailARN"),
            "s3_bucket": trail.get("S3BucketName"),
            "s3_key_prefix": trail.get("S3KeyPrefix"),
            "is_multi_region": bool(trail.get("IsMultiRegionTrail", False)),
            "is_logging": bool(status.get("IsLogging", False)),
        }

    def _trail_args(self) -> Dict[str, Any]:
        desired = self.spec.desired
        return {
            "Name": self.trail,
            "S3BucketName": desired["s3_bucket"],
            "S3KeyPrefix": desired["s3_key_prefix"],
            "IsMultiRegionTrail": desired["is_multi_region"],
        }

    def _set_logging(self, enabled: bool) -> None:
        if enabled:
            self.client.start_logging(Name=self.trail)
        else:
            self.client.stop_logging(Name=self.trail)

    def create(self) -> Dict[str, Any]:
        response = self.client.create_trail(**self._trail_args())
        logger.info("Created trail %s", self.trail)
        self._set_logging(self.spec.desired["is_logging"])
        return dict(self.spec.desired, trail_arn=response.get("TrailARN"))

    def update(self) -> Dict[str, Any]:
        response = self.client.update_trail(**self._trail_args())
        self._set_logging(self.spec.desired["is_logging"])
        logger.info("Updated trail %s", self.trail)
        return dict(self.spec.desired, trail_arn=response.get("TrailARN"))

    def destroy(self) -> None:
        try:
            self.client.stop_logging(Name=self.trail)
        except ClientError as exc:
            if error_code(exc) != "TrailNotFoundException":
                raise
            return
        self.client.delete_trail(Name=self.trail)
        logger.info("Deleted trail %s", self.trail)


__all__ = ["CloudTrailTrailSyncer"]
