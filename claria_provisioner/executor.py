"""Apply actionable plan entries one at a time, recording state after each."""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ApplyStepError, ProvisionerError
from .models import Action, ApplyResult, PlanEntry, ResourceState
from .state import StateStore
from .syncers import ResourceSyncer, build_syncer
from .utils import describe_error

logger = logging.getLogger(__name__)


def syncers_for(
    entries: Sequence[PlanEntry],
    syncers: Sequence[ResourceSyncer],
    session: boto3.session.Session,
) -> Dict[str, ResourceSyncer]:
    """Map resource names to syncers, rebuilding orphans from their recorded type."""

    by_name = {s.resource_name: s for s in syncers}
    for entry in entries:
        if entry.action is Action.DELETE and entry.spec.resource_name not in by_name:
            by_name[entry.spec.resource_name] = build_syncer(entry.spec, session)
    return by_name


def _run(entry: PlanEntry, syncer: ResourceSyncer) -> dict:
    if entry.action is Action.CREATE:
        return syncer.create()
    if entry.action is Action.MODIFY:
        return syncer.update()
    # Orphans are not scanned during planning; one removed out of band is already done.
    if syncer.read() is None:
        logger.info("%s is already gone, forgetting it", entry.spec.resource_name)
        return {}
    syncer.destroy()
    return {}


def _converged(entries: Sequence[PlanEntry]) -> bool:
    return all(entry.action is Action.OK or entry.is_actionable for entry in entries)


def execute(
    entries: Sequence[PlanEntry],
    syncers: Mapping[str, ResourceSyncer],
    store: StateStore,
    manifest_version: int,
) -> ApplyResult:
    """Run every actionable entry in plan order.

    The store is written for each resource before the next one starts. The
    first failure raises :class:`ApplyStepError`; nothing after it runs and
    nothing before it is rolled back. The manifest version is recorded only
    when no entry was left blocked by a failed precondition or scan.
    """

    result = ApplyResult()
    for entry in entries:
        if not entry.is_actionable:
            continue
        name = entry.spec.resource_name
        syncer = syncers[name]
        logger.info("Applying %s to %s/%s", entry.action.value, entry.spec.resource_type, name)
        try:
            properties = _run(entry, syncer)
        except (ClientError, BotoCoreError, ProvisionerError) as exc:
            result.failed = entry
            result.error = describe_error(f"{entry.action.value.capitalize()} {entry.spec.label}", exc)
            logger.error("Apply stopped at %s: %s", name, exc)
            raise ApplyStepError(entry, exc, result) from exc

        if entry.action is Action.DELETE:
            store.delete(name)
        else:
            store.put(
                name,
                ResourceState(
                    resource_type=entry.spec.resource_type,
                    resource_id=syncer.resource_id(properties),
                    properties=properties,
                    manifest_version=manifest_version,
                ),
            )
        result.applied.append(entry)

    if _converged(entries):
        store.stamp(manifest_version)
    else:
        logger.info("Plan still has blocked entries; manifest version %d not recorded", manifest_version)
    logger.info("Apply complete: %d step(s)", len(result.applied))
    return result


__all__ = ["execute", "syncers_for"]
