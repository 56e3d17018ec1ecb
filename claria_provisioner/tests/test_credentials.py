"""Tests for credential sources, session building and role assumption."""

from __future__ import annotations

from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import Stubber

from claria_provisioner import credentials
from claria_provisioner.credentials import (
    DefaultChain,
    InlineKeys,
    NamedProfile,
    assume_role,
    build_session,
    resolve_identity,
)
from claria_provisioner.errors import AuthError


ROLE_ARN = "arn:aws:iam::210987654321:role/ClariaOps"
ASSUMED_ARN = "arn:aws:sts::210987654321:assumed-role/ClariaOps/claria-setup"
EXPIRATION = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class _StubbedSession:
    """Session whose ``client()`` hands back one pre-stubbed client."""

    def __init__(self, client) -> None:
        self._client = client

    def client(self, service_name, *args, **kwargs):
        return self._client


@pytest.fixture
def sts(monkeypatch):
    client = boto3.client(
        "sts",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    monkeypatch.setattr(credentials, "build_session", lambda region, source: _StubbedSession(client))
    with Stubber(client) as stubber:
        yield stubber


def test_assume_role_surfaces_expiration_and_session_token(sts) -> None:
    """Temporary credentials keep their token and expiry; nothing is refreshed."""

    sts.add_response(
        "assume_role",
        {
            "Credentials": {
                "AccessKeyId": "ASIATEMP",
                "SecretAccessKey": "temp-secret",
                "SessionToken": "temp-token",
                "Expiration": EXPIRATION,
            },
            "AssumedRoleUser": {"AssumedRoleId": "AROAEXAMPLE:claria-setup", "Arn": ASSUMED_ARN},
        },
        {"RoleArn": ROLE_ARN, "RoleSessionName": "claria-setup"},
    )

    result = assume_role("us-east-1", DefaultChain(), "210987654321", "ClariaOps")

    assert result.credentials == InlineKeys("ASIATEMP", "temp-secret", "temp-token")
    assert result.expiration == EXPIRATION
    assert result.assumed_role_arn == ASSUMED_ARN
    assert result.identity.account_id == "210987654321"
    assert result.identity.principal_kind == "assumed-role"
    assert result.identity.principal_name == "ClariaOps"
    assert "temp-secret" not in repr(result.credentials)


def test_assume_role_denied_is_an_auth_error(sts) -> None:
    """STS refusals surface as AuthError naming the role."""

    sts.add_client_error("assume_role", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(AuthError) as excinfo:
        assume_role("us-east-1", DefaultChain(), "210987654321", "ClariaOps")

    assert ROLE_ARN in str(excinfo.value)


def test_resolve_identity_returns_session_and_caller(sts) -> None:
    """The identity comes from GetCallerIdentity on the built session."""

    sts.add_response(
        "get_caller_identity",
        {"Account": "123456789012", "Arn": "arn:aws:iam::123456789012:root", "UserId": "123456789012"},
        {},
    )

    session, identity = resolve_identity("us-east-1", DefaultChain())

    assert session is not None
    assert identity.is_root
    assert identity.account_id == "123456789012"


def test_unknown_profile_is_an_auth_error(monkeypatch, tmp_path) -> None:
    """A missing named profile is reported as an authentication problem."""

    empty = tmp_path / "empty"
    empty.write_text("")
    monkeypatch.setenv("AWS_CONFIG_FILE", str(empty))
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(empty))

    with pytest.raises(AuthError):
        build_session("us-east-1", NamedProfile("does-not-exist"))


def test_inline_keys_carry_the_session_token() -> None:
    """Temporary inline keys build a session that presents the token."""

    session = build_session("eu-west-1", InlineKeys("ASIATEMP", "secret", "token"))

    frozen = session.get_credentials().get_frozen_credentials()
    assert frozen.token == "token"
    assert session.region_name == "eu-west-1"
