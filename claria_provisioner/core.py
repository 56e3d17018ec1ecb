"""Public entry points: credential handling, bootstrap, and the reconciliation engine."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import access_keys as _access_keys
from . import credentials as _credentials
from .bootstrap import BootstrapResult, ConfigWriter, StepCallback, run_bootstrap
from .classifier import CredentialAssessment, CredentialClass, assess_credentials
from .credentials import (
    AssumeRoleResult,
    CallerIdentity,
    CredentialSource,
    build_session,
    resolve_identity,
)
from .errors import ApplyStepError, ProvisionerError
from .executor import execute, syncers_for
from .manifest import IAM_USER_NAME, Manifest, ResourceSpec, ResourceType, bucket_name, build_manifest
from .models import Action, ApplyResult, Cause, PlanEntry, ResourceState, ScanResult, ScanStatus
from .planner import check_compatible, plan
from .scanner import DEFAULT_SCAN_WORKERS, scan, scan_one
from .state import S3BlobStore, StateStore
from .syncers import ResourceSyncer, build_syncer, build_syncers

logger = logging.getLogger(__name__)


def classify(region: str, source: CredentialSource) -> CredentialAssessment:
    """Classify the credentials behind ``source``. Makes no changes."""

    return assess_credentials(build_session(region, source))


def assume_role(region: str, source: CredentialSource, account_id: str, role_name: str) -> AssumeRoleResult:
    return _credentials.assume_role(region, source, account_id, role_name)


def bootstrap(
    region: str,
    system_name: str,
    credentials: CredentialSource,
    credential_class: CredentialClass,
    write_config: Optional[ConfigWriter] = None,
    on_step: Optional[StepCallback] = None,
    **options,
) -> BootstrapResult:
    """Create the scoped identity using ``credentials``. Safe to call again after a failure."""

    session = build_session(region, credentials)
    return run_bootstrap(
        session,
        credential_class,
        region,
        system_name,
        write_config=write_config,
        on_step=on_step,
        **options,
    )


def list_access_keys(region: str, credentials: CredentialSource) -> List[_access_keys.AccessKeyInfo]:
    return _access_keys.list_access_keys(build_session(region, credentials))


def delete_access_key(region: str, credentials: CredentialSource, key_id: str) -> None:
    _access_keys.delete_access_key(build_session(region, credentials), key_id)


def _is_managed_user(identity: CallerIdentity) -> bool:
    return identity.principal_kind == "user" and identity.principal_name == IAM_USER_NAME


class Provisioner:
    """Scan, plan, apply and destroy the manifest for one account.

    Phases are not re-entrant: callers must not start ``apply`` while a
    previous call is still running.
    """

    def __init__(
        self,
        session: boto3.session.Session,
        manifest: Manifest,
        store: StateStore,
        identity: CallerIdentity,
        scan_workers: int = DEFAULT_SCAN_WORKERS,
        syncers: Optional[Sequence[ResourceSyncer]] = None,
        state_bucket: Optional[str] = None,
    ) -> None:
        self.session = session
        self.manifest = manifest
        self.store = store
        self.identity = identity
        self.scan_workers = scan_workers
        self.syncers = list(syncers) if syncers is not None else build_syncers(manifest, session)
        self.state_bucket = state_bucket

    @classmethod
    def from_source(
        cls,
        region: str,
        system_name: str,
        source: CredentialSource,
        scan_workers: int = DEFAULT_SCAN_WORKERS,
    ) -> "Provisioner":
        session, identity = resolve_identity(region, source)
        manifest = build_manifest(identity.account_id, system_name, region)
        bucket = bucket_name(identity.account_id, system_name)
        store = StateStore(S3BlobStore(session, bucket))
        return cls(session, manifest, store, identity, scan_workers=scan_workers, state_bucket=bucket)

    def scan(self) -> List[ScanResult]:
        return scan(self.syncers, self.scan_workers)

    def _permission_sets(self, results: Iterable[ScanResult]) -> Tuple[Optional[frozenset], Optional[frozenset]]:
        granted = None
        for result in results:
            if result.resource_type == ResourceType.IAM_USER_POLICY.value and result.status is ScanStatus.FOUND:
                granted = frozenset((result.properties or {}).get("actions") or ())
        # Only the managed user is bounded by the managed policy.
        caller = (granted or frozenset()) if _is_managed_user(self.identity) else None
        return granted, caller

    def plan(self) -> List[PlanEntry]:
        """Re-scan and compute the plan against persisted state."""

        state = self.store.load()
        check_compatible(self.manifest, state)
        results = self.scan()
        granted, caller = self._permission_sets(results)
        return plan(self.manifest, results, state, self.syncers, granted, caller)

    def apply(self) -> ApplyResult:
        """Plan, run the actionable entries, then re-plan.

        Raises :class:`ApplyStepError` on the first failed step; every step
        before it stays applied and recorded.
        """

        entries = self.plan()
        result = execute(
            entries,
            syncers_for(entries, self.syncers, self.session),
            self.store,
            self.manifest.version,
        )
        result.final_plan = self.plan()
        return result

    def destroy(self) -> ApplyResult:
        """Delete orphans, then manifest resources in reverse order, then the state.

        Resources whose syncer retains them (the identity policy and model
        agreements) are left in place.
        """

        state = self.store.load()
        check_compatible(self.manifest, state)

        targets: List[Tuple[ResourceSyncer, bool]] = []
        for name in sorted(set(state.resources) - set(self.manifest.names())):
            spec = ResourceSpec.orphaned(state.resources[name].resource_type, name)
            targets.append((build_syncer(spec, self.session), True))
        targets.extend((syncer, False) for syncer in reversed(self.syncers))

        result = ApplyResult()
        for syncer, orphaned in targets:
            if syncer.retain_on_destroy:
                logger.info("Retaining %s on destroy", syncer.resource_name)
                continue
            hosts_state = syncer.resource_name == self.state_bucket
            if scan_one(syncer).status is ScanStatus.NOT_FOUND:
                if not hosts_state:
                    self.store.delete(syncer.resource_name)
                continue

            entry = PlanEntry(spec=syncer.spec, action=Action.DELETE, cause=Cause.ORPHANED)
            if hosts_state:
                # The state document lives in this bucket and goes with it.
                self.store.reset()
            try:
                syncer.destroy()
            except (ClientError, BotoCoreError, ProvisionerError) as exc:
                result.failed = entry
                result.error = str(exc)
                raise ApplyStepError(entry, exc, result) from exc
            if not hosts_state:
                self.store.delete(syncer.resource_name)
            result.applied.append(entry)
            logger.info("Destroyed %s%s", syncer.resource_name, " (orphaned)" if orphaned else "")

        self.store.reset()
        return result

    def reset_state(self) -> None:
        """Forget all persisted state. Cloud resources are not touched."""

        self.store.reset()

    def escalate(self, elevated_session: boto3.session.Session) -> List[PlanEntry]:
        """Use short-lived elevated credentials once to bring the managed policy up to date.

        Returns a fresh plan computed with the regular credentials.
        """

        spec = next(s for s in self.manifest if s.resource_type == ResourceType.IAM_USER_POLICY.value)
        syncer = build_syncer(spec, elevated_session)
        logger.info("Escalating %s with elevated credentials", spec.resource_name)
        properties = syncer.update()
        self.store.put(
            spec.resource_name,
            ResourceState(
                resource_type=spec.resource_type,
                resource_id=syncer.resource_id(properties),
                properties=properties,
                manifest_version=self.manifest.version,
            ),
        )
        return self.plan()


def _truncate(value: str, width: int) -> str:
    return (value[: width - 3] + "...") if len(value) > width else value


def print_scan_results(results: Iterable[ScanResult]) -> None:
    """Pretty-print scan results to stdout."""

    results = list(results)
    if not results:
        print("No resources scanned.")
        return

    header = f"{'Type':<22} {'Status':<10} {'Resource':<40} Details"
    print(header)
    print("-" * len(header))
    for result in results:
        details = result.error or result.resource_id or ""
        print(
            f"{result.resource_type:<22} {result.status.value:<10} "
            f"{_truncate(result.resource_name, 40):<40} {details}"
        )


def print_plan(entries: Iterable[PlanEntry]) -> None:
    """Pretty-print a plan, with one indented line per drifted field."""

    entries = list(entries)
    if not entries:
        print("Nothing to plan.")
        return

    header = f"{'Action':<20} {'Cause':<17} {'Type':<22} Resource"
    print(header)
    print("-" * len(header))
    for entry in entries:
        print(
            f"{entry.action.value:<20} {entry.cause.value:<17} "
            f"{entry.spec.resource_type:<22} {entry.spec.resource_name}"
        )
        for drift in entry.drift:
            print(f"    {drift.label}: {drift.actual!r} -> {drift.expected!r}")
        if entry.missing_permissions:
            print(f"    Missing permissions: {', '.join(entry.missing_permissions)}")
        if entry.error:
            print(f"    Error: {entry.error}")


def print_bootstrap_result(result: BootstrapResult) -> None:
    for step in result.steps:
        suffix = f" ({step.detail})" if step.detail else ""
        print(f"{step.status.value:<12} {step.name}{suffix}")
    if result.error:
        print(f"Error: {result.error}")


def print_access_keys(keys: Iterable[_access_keys.AccessKeyInfo]) -> None:
    keys = list(keys)
    if not keys:
        print("No access keys.")
        return

    header = f"{'Access key':<22} {'Status':<9} {'Created':<26} Last used"
    print(header)
    print("-" * len(header))
    for key in keys:
        last_used = "never"
        if key.last_used_at:
            last_used = f"{key.last_used_at} ({key.last_used_service or 'unknown service'})"
        print(f"{key.access_key_id:<22} {key.status:<9} {str(key.created_at or ''):<26} {last_used}")


def export_plan_to_excel(entries: Iterable[PlanEntry], path: str) -> str:
    """Write one row per drifted field (or per entry without drift) to *path*."""

    headers = ("Resource", "Type", "Action", "Cause", "Field", "Actual", "Expected", "Missing permissions")
    rows = []
    for entry in entries:
        base = (entry.spec.resource_name, entry.spec.resource_type, entry.action.value, entry.cause.value)
        missing = ", ".join(entry.missing_permissions)
        if not entry.drift:
            rows.append(base + ("", "", "", missing))
        for drift in entry.drift:
            rows.append(base + (drift.label, _cell(drift.actual), _cell(drift.expected), missing))
    return _export_rows_to_excel(rows, headers, path, sheet_title="Plan", purpose="the plan")


def export_scan_to_excel(results: Iterable[ScanResult], path: str) -> str:
    headers = ("Resource", "Type", "Status", "Resource ID", "Error")
    rows = (
        (r.resource_name, r.resource_type, r.status.value, r.resource_id or "", r.error or "")
        for r in results
    )
    return _export_rows_to_excel(rows, headers, path, sheet_title="Scan", purpose="scan results")


def _cell(value: object) -> str:
    return "" if value is None else str(value)


def _export_rows_to_excel(
    rows: Iterable[Sequence[object]],
    headers: Sequence[str],
    path: str,
    *,
    sheet_title: str,
    purpose: str,
) -> str:
    """Write ``rows`` with ``headers`` to an Excel sheet using :mod:`openpyxl`."""

    try:
        from openpyxl import Workbook
        from openpyxl.utils import get_column_letter
    except ImportError as exc:  # pragma: no cover - dependency missing during tests
        raise RuntimeError(
            f"The 'openpyxl' package is required to export {purpose} to Excel. "
            "Install it with 'pip install openpyxl'."
        ) from exc

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title

    sheet.append(list(headers))
    column_widths = [len(header) for header in headers]

    for row in rows:
        values = list(row)
        sheet.append(values)
        for idx, value in enumerate(values):
            column_widths[idx] = max(column_widths[idx], len(str(value)))

    for idx, width in enumerate(column_widths, start=1):
        sheet.column_dimensions[get_column_letter(idx)].width = min(width + 2, 60)

    workbook.save(path)
    return path


__all__ = [
    "Provisioner",
    "assume_role",
    "bootstrap",
    "classify",
    "delete_access_key",
    "export_plan_to_excel",
    "export_scan_to_excel",
    "list_access_keys",
    "print_access_keys",
    "print_bootstrap_result",
    "print_plan",
    "print_scan_results",
]
