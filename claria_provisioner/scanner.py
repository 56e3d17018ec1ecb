"""Concurrent, read-only scans of every managed resource."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProvisionerError
from .models import ScanResult, ScanStatus
from .syncers import ResourceSyncer
from .utils import describe_error

logger = logging.getLogger(__name__)

DEFAULT_SCAN_WORKERS = 4


def scan_one(syncer: ResourceSyncer) -> ScanResult:
    """Read a single resource. Failures are recorded on the result, never raised."""

    spec = syncer.spec
    try:
        properties = syncer.read()
    except (ClientError, BotoCoreError, ProvisionerError) as exc:
        logger.warning("Scan of %s/%s failed: %s", spec.resource_type, spec.resource_name, exc)
        return ScanResult(
            resource_name=spec.resource_name,
            resource_type=spec.resource_type,
            status=ScanStatus.ERROR,
            error=describe_error(f"Reading {spec.label}", exc),
        )

    if properties is None:
        logger.debug("%s/%s not found", spec.resource_type, spec.resource_name)
        return ScanResult(
            resource_name=spec.resource_name,
            resource_type=spec.resource_type,
            status=ScanStatus.NOT_FOUND,
        )
    return ScanResult(
        resource_name=spec.resource_name,
        resource_type=spec.resource_type,
        status=ScanStatus.FOUND,
        resource_id=syncer.resource_id(properties),
        properties=properties,
    )


def scan(syncers: Sequence[ResourceSyncer], max_workers: int = DEFAULT_SCAN_WORKERS) -> List[ScanResult]:
    """Scan every syncer concurrently and return results in the order given."""

    if not syncers:
        return []
    workers = max(1, min(max_workers, len(syncers)))
    logger.info("Scanning %d resources with %d workers", len(syncers), workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        # map preserves input order regardless of completion order
        return list(pool.map(scan_one, syncers))


__all__ = ["DEFAULT_SCAN_WORKERS", "scan", "scan_one"]
