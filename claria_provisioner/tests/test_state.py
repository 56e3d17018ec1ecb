"""Tests for persisted provisioner state."""

from __future__ import annotations

import json

import pytest

from claria_provisioner.errors import StateIncompatible
from claria_provisioner.models import STATE_SCHEMA, ProvisionerState, ResourceState
from claria_provisioner.state import STATE_KEY, MemoryBlobStore, StateStore


def test_missing_document_loads_as_empty_state() -> None:
    """Before the first apply there is nothing stored."""

    state = StateStore(MemoryBlobStore()).load()

    assert state.manifest_version is None
    assert state.resources == {}


def test_each_put_writes_the_whole_document() -> None:
    """Records survive a reload from the blob store."""

    blob = MemoryBlobStore()
    store = StateStore(blob)
    store.put("bucket", ResourceState(resource_type="s3_bucket", resource_id="bucket", manifest_version=1))
    store.put("trail", ResourceState(resource_type="cloudtrail_trail", resource_id="arn:trail"))
    store.stamp(1)

    assert blob.writes == 3
    document = json.loads(blob.blobs[STATE_KEY])
    assert document["schema"] == STATE_SCHEMA
    assert document["manifest_version"] == 1

    reloaded = StateStore(blob).load()
    assert set(reloaded.resources) == {"bucket", "trail"}
    assert reloaded.resources["trail"].resource_id == "arn:trail"
    assert reloaded.version_for("bucket") == 1
    assert reloaded.version_for("trail") == 1


def test_delete_and_reset() -> None:
    """Deleting a record keeps the rest; reset removes the document."""

    blob = MemoryBlobStore()
    store = StateStore(blob)
    store.put("a", ResourceState(resource_type="s3_bucket", resource_id="a"))
    store.put("b", ResourceState(resource_type="s3_bucket", resource_id="b"))

    store.delete("a")
    assert set(StateStore(blob).load().resources) == {"b"}

    store.reset()
    assert STATE_KEY not in blob.blobs
    assert store.load().resources == {}


def test_garbage_document_is_incompatible() -> None:
    """Unparseable JSON is surfaced, never silently discarded."""

    blob = MemoryBlobStore()
    blob.put(STATE_KEY, b"{not json")

    with pytest.raises(StateIncompatible):
        StateStore(blob).load()
    assert STATE_KEY in blob.blobs


@pytest.mark.parametrize(
    "document",
    [
        [],
        {"schema": "something-else/9", "resources": {}},
        {"schema": STATE_SCHEMA, "manifest_version": "one"},
        {"schema": STATE_SCHEMA, "resources": {"x": {"resource_id": "x"}}},
    ],
)
def test_unrecognised_shapes_are_incompatible(document) -> None:
    """Wrong schema markers and malformed records are rejected."""

    with pytest.raises(StateIncompatible):
        ProvisionerState.from_dict(document)


def test_restamping_the_same_version_writes_nothing() -> None:
    """A converged apply leaves the stored document untouched."""

    blob = MemoryBlobStore()
    store = StateStore(blob)
    store.stamp(1)

    store.stamp(1)

    assert blob.writes == 1
