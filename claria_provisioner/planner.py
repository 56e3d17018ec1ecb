"""Compute the ordered reconciliation plan from a scan, the manifest and persisted state."""
from __future__ import annotations

import logging
from typing import AbstractSet, Dict, List, Optional, Sequence, Tuple

from .errors import StateIncompatible
from .iam_policy import missing_actions
from .manifest import FieldDrift, Manifest, ResourceSpec
from .models import Action, Cause, PlanEntry, ProvisionerState, ResourceState, ScanResult, ScanStatus
from .syncers import SYNCERS, ResourceSyncer

logger = logging.getLogger(__name__)

MISSING_PERMISSION_LABEL = "Missing permission"


def check_compatible(manifest: Manifest, state: ProvisionerState) -> None:
    """Refuse state written by a newer manifest than the one running."""

    versions = [state.manifest_version] + [r.manifest_version for r in state.resources.values()]
    newest = max((v for v in versions if v is not None), default=None)
    if newest is not None and newest > manifest.version:
        raise StateIncompatible(
            f"Provisioner state was written by manifest version {newest}, "
            f"but this build only understands version {manifest.version}. Upgrade, or reset the state."
        )


def _cause_for_drift(
    syncer: ResourceSyncer,
    record: Optional[ResourceState],
    observed_drift: List[FieldDrift],
    state: ProvisionerState,
    manifest: Manifest,
) -> Cause:
    version = state.version_for(syncer.resource_name)
    if record is None or version is None or version >= manifest.version:
        return Cause.DRIFT
    # The recorded and observed properties drift identically only when the
    # resource itself is untouched and the desired side moved.
    if syncer.diff(record.properties) == observed_drift:
        return Cause.MANIFEST_CHANGED
    return Cause.DRIFT


def _permission_drift(actions: Sequence[str]) -> List[FieldDrift]:
    return [
        FieldDrift(field=action, label=MISSING_PERMISSION_LABEL, actual=None, expected=action)
        for action in actions
    ]


def _plan_found(
    spec: ResourceSpec,
    syncer: ResourceSyncer,
    result: ScanResult,
    record: Optional[ResourceState],
    state: ProvisionerState,
    manifest: Manifest,
    granted_actions: Optional[AbstractSet[str]],
) -> Tuple[PlanEntry, List[str]]:
    """Plan a found resource. Also returns the actions the managed policy lacks for it."""

    drift = syncer.diff(result.properties or {})
    if drift:
        cause = _cause_for_drift(syncer, record, drift, state, manifest)
        return PlanEntry(spec=spec, action=Action.MODIFY, cause=cause, drift=drift), []

    if granted_actions is not None:
        lacking = missing_actions(spec.iam_actions, granted_actions)
        if lacking:
            version = state.version_for(spec.resource_name)
            advanced = version is not None and version < manifest.version
            entry = PlanEntry(
                spec=spec,
                action=Action.MODIFY,
                cause=Cause.MANIFEST_CHANGED if advanced else Cause.DRIFT,
                drift=_permission_drift(lacking),
            )
            return entry, lacking
    return PlanEntry(spec=spec, action=Action.OK, cause=Cause.IN_SYNC), []


def _check_precondition(
    entry: PlanEntry,
    needed: AbstractSet[str],
    caller_actions: Optional[AbstractSet[str]],
) -> PlanEntry:
    if caller_actions is None or not entry.is_actionable:
        return entry
    lacking = missing_actions(needed, caller_actions)
    if not lacking:
        return entry
    logger.info(
        "Cannot %s %s: caller lacks %s", entry.action.value, entry.spec.resource_name, ", ".join(lacking)
    )
    return PlanEntry(
        spec=entry.spec,
        action=Action.PRECONDITION_FAILED,
        cause=entry.cause,
        drift=entry.drift,
        missing_permissions=tuple(lacking),
    )


def plan(
    manifest: Manifest,
    scan_results: Sequence[ScanResult],
    state: ProvisionerState,
    syncers: Sequence[ResourceSyncer],
    granted_actions: Optional[AbstractSet[str]] = None,
    caller_actions: Optional[AbstractSet[str]] = None,
) -> List[PlanEntry]:
    """One entry per manifest spec in manifest order, then orphans sorted by name.

    ``granted_actions`` is what the managed policy currently grants, or
    ``None`` when unknown. ``caller_actions`` bounds what the current
    credentials may do; ``None`` means unbounded.
    """

    check_compatible(manifest, state)

    results: Dict[str, ScanResult] = {r.resource_name: r for r in scan_results}
    by_name: Dict[str, ResourceSyncer] = {s.resource_name: s for s in syncers}

    entries: List[PlanEntry] = []
    for spec in manifest:
        syncer = by_name[spec.resource_name]
        result = results.get(spec.resource_name)
        record = state.resources.get(spec.resource_name)

        if result is None or result.status is ScanStatus.ERROR:
            error = result.error if result is not None else "Resource was not scanned"
            entries.append(PlanEntry(spec=spec, action=Action.ERROR, cause=Cause.SCAN_FAILED, error=error))
            continue

        if result.status is ScanStatus.NOT_FOUND:
            # A record without the resource means it was deleted out of band.
            cause = Cause.DRIFT if record is not None else Cause.FIRST_PROVISION
            entry, ungranted = PlanEntry(spec=spec, action=Action.CREATE, cause=cause), []
        else:
            entry, ungranted = _plan_found(spec, syncer, result, record, state, manifest, granted_actions)

        needed = syncer.remediation_actions(entry.action) | frozenset(ungranted)
        entries.append(_check_precondition(entry, needed, caller_actions))

    declared = set(manifest.names())
    for name in sorted(set(state.resources) - declared):
        record = state.resources[name]
        syncer_cls = SYNCERS.get(record.resource_type)
        if syncer_cls is None:
            raise StateIncompatible(
                f"State tracks {name!r} with unknown resource type {record.resource_type!r}"
            )
        entry = PlanEntry(
            spec=ResourceSpec.orphaned(record.resource_type, name),
            action=Action.DELETE,
            cause=Cause.ORPHANED,
        )
        entries.append(_check_precondition(entry, frozenset(syncer_cls.destroy_actions), caller_actions))

    logger.info(
        "Planned %d entries (%d actionable)", len(entries), sum(1 for e in entries if e.is_actionable)
    )
    return entries


__all__ = ["MISSING_PERMISSION_LABEL", "check_compatible", "plan"]
