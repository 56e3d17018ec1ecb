"""Durable provisioner state, stored as one JSON document in the data bucket."""
from __future__ import annotations

import json
import logging
import threading
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

from .errors import StateIncompatible
from .models import ProvisionerState, ResourceState
from .utils import error_code

logger = logging.getLogger(__name__)

STATE_KEY = "_state/provisioner.json"


class BlobStore:
    """Minimal byte store. Writes are last-write-wins."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class S3BlobStore(BlobStore):
    def __init__(self, session: boto3.session.Session, bucket: str) -> None:
        self.bucket = bucket
        self.client = session.client("s3")

    def get(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            # Before the first apply neither the bucket nor the key exist.
            if error_code(exc) in {"NoSuchKey", "NoSuchBucket", "404"}:
                return None
            raise
        return response["Body"].read()

    def put(self, key: str, data: bytes) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="application/json",
            ServerSideEncryption="AES256",
        )

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if error_code(exc) != "NoSuchBucket":
                raise


class MemoryBlobStore(BlobStore):
    """In-process store for tests and dry runs."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.writes = 0

    def get(self, key: str) -> Optional[bytes]:
        return self.blobs.get(key)

    def put(self, key: str, data: bytes) -> None:
        self.blobs[key] = data
        self.writes += 1

    def delete(self, key: str) -> None:
        self.blobs.pop(key, None)


class StateStore:
    """Load and incrementally persist :class:`ProvisionerState`.

    Every mutation rewrites the whole document so that a crash between two
    apply steps leaves exactly the completed steps recorded.
    """

    def __init__(self, blob: BlobStore, key: str = STATE_KEY) -> None:
        self.blob = blob
        self.key = key
        self._lock = threading.Lock()
        self._state: Optional[ProvisionerState] = None

    def load(self) -> ProvisionerState:
        raw = self.blob.get(self.key)
        if raw is None:
            state = ProvisionerState()
        else:
            try:
                data = json.loads(raw)
            except ValueError as exc:
                raise StateIncompatible(f"Provisioner state is not valid JSON: {exc}") from exc
            state = ProvisionerState.from_dict(data)
        self._state = state
        return state

    def _current(self) -> ProvisionerState:
        if self._state is None:
            return self.load()
        return self._state

    def _save(self, state: ProvisionerState) -> None:
        body = json.dumps(state.to_dict(), indent=2, sort_keys=True, default=str)
        self.blob.put(self.key, body.encode("utf-8"))
        self._state = state

    def put(self, resource_name: str, record: ResourceState) -> None:
        with self._lock:
            state = self._current()
            state.resources[resource_name] = record
            self._save(state)
        logger.debug("Recorded state for %s", resource_name)

    def delete(self, resource_name: str) -> None:
        with self._lock:
            state = self._current()
            if state.resources.pop(resource_name, None) is not None:
                self._save(state)
        logger.debug("Removed state for %s", resource_name)

    def stamp(self, manifest_version: int) -> None:
        with self._lock:
            state = self._current()
            if state.manifest_version == manifest_version:
                return
            state.manifest_version = manifest_version
            self._save(state)

    def reset(self) -> None:
        with self._lock:
            self.blob.delete(self.key)
            self._state = None
        logger.info("Provisioner state cleared")


__all__ = ["BlobStore", "MemoryBlobStore", "S3BlobStore", "STATE_KEY", "StateStore"]
