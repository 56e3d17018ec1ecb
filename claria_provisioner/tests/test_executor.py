"""Tests for sequential plan execution and resumability."""

from __future__ import annotations

from dataclasses import replace

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from claria_provisioner.errors import ApplyStepError
from claria_provisioner.executor import execute
from claria_provisioner.manifest import ResourceSpec
from claria_provisioner.models import Action, Cause, PlanEntry, ResourceState
from claria_provisioner.planner import plan
from claria_provisioner.scanner import scan
from claria_provisioner.state import MemoryBlobStore, StateStore
from claria_provisioner.syncers import build_syncer


class RecordingStore(StateStore):
    """State store that logs writes into the same journal as the fake cloud."""

    def __init__(self, log) -> None:
        super().__init__(MemoryBlobStore())
        self.log = log

    def put(self, resource_name, record) -> None:
        self.log.append(("store", resource_name))
        super().put(resource_name, record)

    def delete(self, resource_name) -> None:
        self.log.append(("unstore", resource_name))
        super().delete(resource_name)


def _plan(manifest, syncers, store):
    return plan(manifest, scan(syncers), store.load(), syncers)


def _by_name(syncers):
    return {s.resource_name: s for s in syncers}


def test_empty_account_apply_creates_everything_in_order(manifest, cloud, syncers) -> None:
    """Each create is recorded before the next resource starts, and a re-plan is clean."""

    store = RecordingStore(cloud.log)

    result = execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)

    expected = []
    for name in manifest.names():
        expected.extend([("create", name), ("store", name)])
    assert cloud.log == expected
    assert result.success
    assert [e.spec.resource_name for e in result.applied] == list(manifest.names())

    replanned = _plan(manifest, syncers, store)
    assert [(e.action, e.cause) for e in replanned] == [(Action.OK, Cause.IN_SYNC)] * 4
    assert store.load().manifest_version == manifest.version


def test_in_sync_plan_performs_no_mutations(manifest, cloud, syncers) -> None:
    """Applying an all-ok plan touches no resources."""

    store = RecordingStore(cloud.log)
    execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)
    cloud.log.clear()
    writes = store.blob.writes

    result = execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)

    assert result.applied == []
    assert cloud.log == []
    # Not even the state document is rewritten.
    assert store.blob.writes == writes


def test_failure_stops_apply_and_keeps_earlier_writes(manifest, cloud, syncers) -> None:
    """The first failure raises; completed steps stay recorded and later steps never run."""

    store = RecordingStore(cloud.log)
    trail = manifest.specs[1]
    cloud.apply_errors[trail.resource_name] = ClientError(
        {"Error": {"Code": "InsufficientS3BucketPolicyException", "Message": "bad policy"}},
        "CreateTrail",
    )

    with pytest.raises(ApplyStepError) as excinfo:
        execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)

    error = excinfo.value
    assert error.entry.spec.resource_name == trail.resource_name
    assert [e.spec.resource_name for e in error.result.applied] == [manifest.specs[0].resource_name]
    assert error.result.failed is error.entry
    assert not error.result.success
    assert "bad policy" in error.result.error

    state = store.load()
    assert set(state.resources) == {manifest.specs[0].resource_name}
    # No version stamp after a failed run.
    assert state.manifest_version is None
    assert ("create", manifest.specs[2].resource_name) not in cloud.log


def test_resume_after_failure_only_runs_the_remainder(manifest, cloud, syncers) -> None:
    """A fresh plan after a partial apply sees completed resources as in sync."""

    store = RecordingStore(cloud.log)
    trail = manifest.specs[1]
    cloud.apply_errors[trail.resource_name] = ClientError(
        {"Error": {"Code": "Throttling", "Message": "try later"}}, "CreateTrail"
    )
    with pytest.raises(ApplyStepError):
        execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)

    del cloud.apply_errors[trail.resource_name]
    entries = _plan(manifest, syncers, store)

    assert entries[0].action is Action.OK
    assert [e.action for e in entries[1:]] == [Action.CREATE] * 3

    cloud.log.clear()
    result = execute(entries, _by_name(syncers), store, manifest.version)

    assert [e.spec.resource_name for e in result.applied] == list(manifest.names()[1:])
    assert ("create", manifest.specs[0].resource_name) not in cloud.log


def test_orphan_delete_removes_its_record(manifest, cloud, syncers, make_syncer) -> None:
    """Orphaned resources are destroyed after manifest entries and dropped from state."""

    store = RecordingStore(cloud.log)
    execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)

    orphan = ResourceSpec.orphaned("s3_bucket", "old-bucket")
    cloud.resources["old-bucket"] = {}
    store.put("old-bucket", ResourceState(resource_type="s3_bucket", resource_id="old-bucket"))
    cloud.log.clear()

    entries = _plan(manifest, syncers, store)
    mapping = _by_name(syncers)
    mapping["old-bucket"] = make_syncer(orphan)
    execute(entries, mapping, store, manifest.version)

    assert cloud.log == [("destroy", "old-bucket"), ("unstore", "old-bucket")]
    assert "old-bucket" not in store.load().resources


def test_orphan_already_gone_is_forgotten_without_a_delete(manifest, cloud, syncers, make_syncer) -> None:
    """An orphan removed out of band does not block apply; its record is dropped."""

    store = RecordingStore(cloud.log)
    execute(_plan(manifest, syncers, store), _by_name(syncers), store, manifest.version)
    store.put("old-bucket", ResourceState(resource_type="s3_bucket", resource_id="old-bucket"))
    cloud.log.clear()

    entries = _plan(manifest, syncers, store)
    mapping = _by_name(syncers)
    mapping["old-bucket"] = make_syncer(ResourceSpec.orphaned("s3_bucket", "old-bucket"))
    result = execute(entries, mapping, store, manifest.version)

    assert [e.spec.resource_name for e in result.applied] == ["old-bucket"]
    assert cloud.log == [("unstore", "old-bucket")]
    assert "old-bucket" not in store.load().resources


def test_missing_orphan_bucket_is_not_emptied(manifest) -> None:
    """A 404 on the orphan bucket means the delete already happened."""

    session = boto3.Session(
        aws_access_key_id="testing", aws_secret_access_key="testing", region_name="us-east-1"
    )
    orphan = ResourceSpec.orphaned("s3_bucket", "old-bucket")
    syncer = build_syncer(orphan, session)
    store = StateStore(MemoryBlobStore())
    store.put("old-bucket", ResourceState(resource_type="s3_bucket", resource_id="old-bucket"))
    entry = PlanEntry(spec=orphan, action=Action.DELETE, cause=Cause.ORPHANED)

    with Stubber(syncer.client) as stubber:
        stubber.add_client_error("head_bucket", service_error_code="404", http_status_code=404)
        result = execute([entry], {"old-bucket": syncer}, store, manifest.version)
        stubber.assert_no_pending_responses()

    assert result.applied == [entry]
    assert store.load().resources == {}


def test_blocked_entries_leave_the_manifest_version_unrecorded(manifest, cloud, syncers) -> None:
    """Apply with a precondition_failed entry does not claim the manifest is converged."""

    store = RecordingStore(cloud.log)
    entries = _plan(manifest, syncers, store)
    entries[3] = replace(
        entries[3], action=Action.PRECONDITION_FAILED, missing_permissions=("iam:CreatePolicy",)
    )

    result = execute(entries, _by_name(syncers), store, manifest.version)

    assert [e.spec.resource_name for e in result.applied] == list(manifest.names()[:3])
    state = store.load()
    assert state.manifest_version is None
    assert set(state.resources) == set(manifest.names()[:3])
