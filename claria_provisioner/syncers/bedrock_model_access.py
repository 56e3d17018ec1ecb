"""Syncer for Marketplace agreements on the Bedrock models the app invokes."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..errors import ProvisionerError
from ..manifest import ResourceType
from ..utils import error_code
from . import ResourceSyncer, register_syncer

logger = logging.getLogger(__name__)

AVAILABLE = "AVAILABLE"
NO_MATCHING_MODELS = "NO_MATCHING_MODELS"


def is_context_window_variant(model_id: str) -> bool:
    """True for ids such as ``...:0:48k`` that name a context-window variant."""

    if ":" not in model_id:
        return False
    suffix = model_id.rsplit(":", 1)[1]
    return bool(suffix) and suffix[0].isdigit() and suffix != "0"


@register_syncer(ResourceType.BEDROCK_MODEL_ACCESS.value)
class BedrockModelAccessSyncer(ResourceSyncer):
    """Agreements cannot be revoked through the API, so destroy leaves them in place."""

    service_name = "bedrock"
    create_actions = (
        "bedrock:ListFoundationModels",
        "bedrock:ListFoundationModelAgreementOffers",
        "bedrock:CreateFoundationModelAgreement",
        "aws-marketplace:Subscribe",
    )
    update_actions = create_actions
    retain_on_destroy = True

    @property
    def prefixes(self) -> List[str]:
        return list(self.spec.desired)

    def _matching_models(self) -> Dict[str, List[str]]:
        summaries = self.client.list_foundation_models().get("modelSummaries", [])
        ids = [s["modelId"] for s in summaries if not is_context_window_variant(s.get("modelId", ""))]
        return {prefix: sorted(i for i in ids if prefix in i) for prefix in self.prefixes}

    def _availability(self, model_id: str) -> str:
        response = self.client.get_foundation_model_availability(modelId=model_id)
        return response.get("agreementAvailability", {}).get("status", "UNKNOWN")

    def read(self) -> Optional[Dict[str, Any]]:
        properties: Dict[str, Any] = {}
        for prefix, model_ids in self._matching_models().items():
            if not model_ids:
                properties[prefix] = NO_MATCHING_MODELS
                continue
            statuses = [self._availability(model_id) for model_id in model_ids]
            pending = [s for s in statuses if s != AVAILABLE]
            properties[prefix] = pending[0] if pending else AVAILABLE
        if not any(status == AVAILABLE for status in properties.values()):
            # No agreement accepted yet: treat as never provisioned.
            return None
        return properties

    def _accept_agreement(self, model_id: str) -> None:
        offers = self.client.list_foundation_model_agreement_offers(modelId=model_id).get("offers", [])
        if not offers:
            logger.debug("No agreement offers for %s", model_id)
            return
        try:
            self.client.create_foundation_model_agreement(
                modelId=model_id, offerToken=offers[0]["offerToken"]
            )
        except ClientError as exc:
            if "already exists" in str(exc):
                logger.debug("Agreement for %s already accepted", model_id)
                return
            raise
        logger.info("Accepted model agreement for %s", model_id)

    def create(self) -> Dict[str, Any]:
        failures = []
        for model_ids in self._matching_models().values():
            for model_id in model_ids:
                try:
                    self._accept_agreement(model_id)
                except ClientError as exc:
                    logger.warning("Failed to accept agreement for %s: %s", model_id, exc)
                    failures.append(f"{model_id}: {error_code(exc) or exc}")
        if failures:
            raise ProvisionerError("Model agreements not accepted: " + "; ".join(failures))
        return dict(self.spec.desired)

    def update(self) -> Dict[str, Any]:
        return self.create()

    def destroy(self) -> None:
        logger.info("Leaving model agreements for %s in place", self.resource_name)


__all__ = ["BedrockModelAccessSyncer", "is_context_window_variant"]
