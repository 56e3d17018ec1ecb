"""Tests for the managed IAM policy helpers."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import boto3
from botocore.stub import Stubber

from claria_provisioner.iam_policy import (
    diff_actions,
    ensure_policy,
    ensure_policy_attached,
    extract_allowed_actions,
    parse_document,
    policy_arn,
    policy_document,
    publish_policy_version,
)
from claria_provisioner.manifest import IAM_POLICY_NAME, IAM_USER_NAME


ACCOUNT = "123456789012"


def test_action_comparison_is_exact() -> None:
    """Near-miss action names are drift in both directions."""

    drift = diff_actions(["s3:GetEncryptionConfiguration"], ["s3:GetBucketEncryption"])

    assert [(d.label, d.actual, d.expected) for d in drift] == [
        ("Missing permission", None, "s3:GetEncryptionConfiguration"),
        ("Unexpected permission", "s3:GetBucketEncryption", None),
    ]


def test_action_comparison_is_case_sensitive() -> None:
    """IAM action strings are compared literally."""

    assert diff_actions(["s3:ListBucket"], ["s3:listbucket"])
    assert diff_actions(["s3:ListBucket"], ["s3:ListBucket"]) == []


def test_extract_allowed_actions_handles_strings_and_lists() -> None:
    """Single-string and list ``Action`` fields are both collected; ``Deny`` is ignored."""

    document = {
        "Statement": [
            {"Effect": "Allow", "Action": "sts:GetCallerIdentity", "Resource": "*"},
            {"Effect": "Allow", "Action": ["s3:GetObject", "s3:PutObject"], "Resource": "*"},
            {"Effect": "Deny", "Action": "s3:DeleteBucket", "Resource": "*"},
        ]
    }

    assert extract_allowed_actions(document) == {"sts:GetCallerIdentity", "s3:GetObject", "s3:PutObject"}


def test_parse_document_accepts_url_encoded_json() -> None:
    """IAM may return the document URL-encoded."""

    encoded = "%7B%22Statement%22%3A%20%5B%5D%7D"

    assert parse_document(encoded) == {"Statement": []}
    assert parse_document("not json") is None


def test_policy_document_groups_and_scopes_statements() -> None:
    """Statements are grouped by service and S3/IAM are scoped."""

    document = policy_document(
        "claria", ACCOUNT, ["s3:GetObject", "iam:GetUser", "bedrock:InvokeModel", "s3:ListBucket"]
    )
    statements = {s["Sid"]: s for s in document["Statement"]}

    assert set(statements) == {"ClariaS3", "ClariaIAMReadSelf", "ClariaBedrock"}
    assert statements["ClariaS3"]["Action"] == ["s3:GetObject", "s3:ListBucket"]
    assert statements["ClariaS3"]["Resource"][0] == f"arn:aws:s3:::{ACCOUNT}-claria-*"
    assert f"arn:aws:iam::{ACCOUNT}:user/{IAM_USER_NAME}" in statements["ClariaIAMReadSelf"]["Resource"]
    assert statements["ClariaBedrock"]["Resource"] == "*"
    assert extract_allowed_actions(document) == {
        "s3:GetObject",
        "s3:ListBucket",
        "iam:GetUser",
        "bedrock:InvokeModel",
    }


def _iam_client():
    return boto3.client(
        "iam",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def test_publish_prunes_the_oldest_non_default_version_at_the_limit() -> None:
    """With five versions stored the oldest non-default one is deleted first."""

    iam = _iam_client()
    arn = policy_arn(ACCOUNT)
    document = policy_document("claria", ACCOUNT, ["s3:ListBucket"])
    versions = [
        {
            "VersionId": f"v{i}",
            "IsDefaultVersion": i == 5,
            "CreateDate": datetime(2024, 1, i, tzinfo=timezone.utc),
        }
        for i in range(1, 6)
    ]

    with Stubber(iam) as stubber:
        stubber.add_response(
            "list_policy_versions", {"Versions": versions, "IsTruncated": False}, {"PolicyArn": arn}
        )
        stubber.add_response("delete_policy_version", {}, {"PolicyArn": arn, "VersionId": "v1"})
        stubber.add_response(
            "create_policy_version",
            {"PolicyVersion": {"VersionId": "v6", "IsDefaultVersion": True}},
            {"PolicyArn": arn, "PolicyDocument": json.dumps(document), "SetAsDefault": True},
        )
        publish_policy_version(iam, arn, document)
        stubber.assert_no_pending_responses()


def test_ensure_policy_creates_when_missing(iam) -> None:
    """A missing policy is created with the rendered document."""

    document = policy_document("claria", ACCOUNT, ["s3:ListBucket"])

    arn = ensure_policy(iam, ACCOUNT, document)

    assert arn == f"arn:aws:iam::{ACCOUNT}:policy/{IAM_POLICY_NAME}"
    assert iam.calls == ["create_policy"]


def test_ensure_policy_skips_write_when_actions_match(iam) -> None:
    """An existing policy granting the same actions is left alone."""

    document = policy_document("claria", ACCOUNT, ["s3:ListBucket"])
    ensure_policy(iam, ACCOUNT, document)
    iam.calls.clear()

    ensure_policy(iam, ACCOUNT, document)

    assert iam.calls == []


def test_ensure_policy_attached_is_idempotent(iam) -> None:
    """Attaching twice only calls IAM once."""

    iam.create_user(IAM_USER_NAME)
    arn = policy_arn(ACCOUNT)

    assert ensure_policy_attached(iam, arn) is True
    assert ensure_policy_attached(iam, arn) is False
    assert iam.calls.count("attach_user_policy") == 1
