"""In-process fakes shared by the engine and bootstrap tests."""

from __future__ import annotations

import copy
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError, OperationNotPageableError

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from claria_provisioner.manifest import ResourceSpec, build_manifest
from claria_provisioner.syncers import ResourceSyncer


ACCOUNT_ID = "123456789012"


def client_error(code: str, operation: str = "Operation", message: str = "error") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeCloud:
    """Observed resource properties keyed by name, plus a log of every mutation."""

    def __init__(self) -> None:
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.read_errors: Dict[str, Exception] = {}
        self.apply_errors: Dict[str, Exception] = {}
        self.log: List[tuple] = []

    def provision(self, spec: ResourceSpec, **overrides: Any) -> None:
        properties = copy.deepcopy(dict(spec.desired))
        properties.update(overrides)
        self.resources[spec.resource_name] = properties


class FakeSyncer(ResourceSyncer):
    create_actions = ("fake:Create",)
    update_actions = ("fake:Update",)
    destroy_actions = ("fake:Delete",)

    def __init__(self, spec: ResourceSpec, cloud: FakeCloud) -> None:
        self.spec = spec
        self.session = None
        self.client = None
        self.cloud = cloud

    def read(self) -> Optional[Dict[str, Any]]:
        if self.resource_name in self.cloud.read_errors:
            raise self.cloud.read_errors[self.resource_name]
        observed = self.cloud.resources.get(self.resource_name)
        return copy.deepcopy(observed) if observed is not None else None

    def _write(self, verb: str) -> Dict[str, Any]:
        self.cloud.log.append((verb, self.resource_name))
        if self.resource_name in self.cloud.apply_errors:
            raise self.cloud.apply_errors[self.resource_name]
        self.cloud.provision(self.spec)
        return copy.deepcopy(dict(self.spec.desired))

    def create(self) -> Dict[str, Any]:
        return self._write("create")

    def update(self) -> Dict[str, Any]:
        return self._write("update")

    def destroy(self) -> None:
        self.cloud.log.append(("destroy", self.resource_name))
        self.cloud.resources.pop(self.resource_name, None)


class FakeIam:
    """The subset of the IAM API used by bootstrap and the policy helpers."""

    def __init__(self, account_id: str = ACCOUNT_ID) -> None:
        self.account_id = account_id
        self.users: Dict[str, str] = {}
        self.policies: Dict[str, Dict[str, Any]] = {}
        self.attached: Dict[str, List[Dict[str, str]]] = {}
        self.access_keys: Dict[str, List[str]] = {}
        self.deleted_keys: List[tuple] = []
        self.calls: List[str] = []
        self._key_counter = 0

    def get_paginator(self, operation_name: str):
        raise OperationNotPageableError(operation_name=operation_name)

    def get_user(self, UserName: str) -> Dict[str, Any]:
        if UserName not in self.users:
            raise client_error("NoSuchEntity", "GetUser")
        return {"User": {"UserName": UserName, "Arn": self.users[UserName]}}

    def create_user(self, UserName: str) -> Dict[str, Any]:
        self.calls.append("create_user")
        self.users[UserName] = f"arn:aws:iam::{self.account_id}:user/{UserName}"
        return self.get_user(UserName)

    def get_policy(self, PolicyArn: str) -> Dict[str, Any]:
        if PolicyArn not in self.policies:
            raise client_error("NoSuchEntity", "GetPolicy")
        return {"Policy": {"Arn": PolicyArn, "DefaultVersionId": "v1"}}

    def get_policy_version(self, PolicyArn: str, VersionId: str) -> Dict[str, Any]:
        return {"PolicyVersion": {"Document": self.policies[PolicyArn], "VersionId": VersionId}}

    def create_policy(self, PolicyName: str, PolicyDocument: str, Description: str = "") -> Dict[str, Any]:
        self.calls.append("create_policy")
        arn = f"arn:aws:iam::{self.account_id}:policy/{PolicyName}"
        self.policies[arn] = json.loads(PolicyDocument)
        return {"Policy": {"Arn": arn, "PolicyName": PolicyName}}

    def list_attached_user_policies(self, UserName: str) -> Dict[str, Any]:
        return {"AttachedPolicies": list(self.attached.get(UserName, []))}

    def attach_user_policy(self, UserName: str, PolicyArn: str) -> Dict[str, Any]:
        self.calls.append("attach_user_policy")
        name = PolicyArn.rsplit("/", 1)[-1]
        self.attached.setdefault(UserName, []).append({"PolicyName": name, "PolicyArn": PolicyArn})
        return {}

    def list_access_keys(self, UserName: str) -> Dict[str, Any]:
        keys = self.access_keys.get(UserName, [])
        return {"AccessKeyMetadata": [{"AccessKeyId": key, "Status": "Active"} for key in keys]}

    def create_access_key(self, UserName: str) -> Dict[str, Any]:
        self.calls.append("create_access_key")
        self._key_counter += 1
        key_id = f"AKIANEW{self._key_counter:04d}"
        self.access_keys.setdefault(UserName, []).append(key_id)
        return {"AccessKey": {"AccessKeyId": key_id, "SecretAccessKey": "secret", "UserName": UserName}}

    def delete_access_key(self, AccessKeyId: str, UserName: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append("delete_access_key")
        self.deleted_keys.append((AccessKeyId, UserName))
        if UserName is not None and AccessKeyId in self.access_keys.get(UserName, []):
            self.access_keys[UserName].remove(AccessKeyId)
        return {}


class FakeSts:
    def __init__(self, arn: str, account_id: str = ACCOUNT_ID) -> None:
        self.arn = arn
        self.account_id = account_id

    def get_caller_identity(self) -> Dict[str, str]:
        return {"Account": self.account_id, "Arn": self.arn, "UserId": "AIDAEXAMPLE"}


class _FrozenCredentials:
    def __init__(self, access_key: str) -> None:
        self.access_key = access_key


class _Credentials:
    def __init__(self, access_key: str) -> None:
        self._frozen = _FrozenCredentials(access_key)

    def get_frozen_credentials(self) -> _FrozenCredentials:
        return self._frozen


class FakeSession:
    def __init__(self, clients: Dict[str, Any], access_key: str = "AKIASOURCE") -> None:
        self.clients = clients
        self.access_key = access_key

    def client(self, service_name: str, *args: Any, **kwargs: Any) -> Any:
        return self.clients[service_name]

    def get_credentials(self) -> _Credentials:
        return _Credentials(self.access_key)


@pytest.fixture
def manifest():
    return build_manifest(ACCOUNT_ID, "claria", "us-east-1")


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def syncers(manifest, cloud) -> List[FakeSyncer]:
    return [FakeSyncer(spec, cloud) for spec in manifest]


@pytest.fixture
def make_syncer(cloud):
    def factory(spec: ResourceSpec) -> FakeSyncer:
        return FakeSyncer(spec, cloud)

    return factory


@pytest.fixture
def iam() -> FakeIam:
    return FakeIam()


@pytest.fixture
def session_for(iam):
    """Build a fake session whose STS identity is ``arn``."""

    def factory(arn: str, access_key: str = "AKIASOURCE") -> FakeSession:
        return FakeSession({"iam": iam, "sts": FakeSts(arn)}, access_key=access_key)

    return factory
