"""Turn credential source descriptors into boto3 sessions and caller identities."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import AuthError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "claria-setup"


@dataclass(frozen=True)
class InlineKeys:
    """An access key pair, optionally with the session token of temporary credentials."""

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"InlineKeys(access_key_id={self.access_key_id!r}, temporary={self.session_token is not None})"


@dataclass(frozen=True)
class NamedProfile:
    profile_name: str


@dataclass(frozen=True)
class DefaultChain:
    """Whatever the ambient boto3 credential chain resolves to."""


@dataclass(frozen=True)
class AssumedRole:
    """Credentials obtained by assuming ``role_name`` in ``account_id`` using ``parent``."""

    account_id: str
    role_name: str
    parent: "CredentialSource"
    session_name: str = DEFAULT_SESSION_NAME


CredentialSource = Union[InlineKeys, NamedProfile, DefaultChain, AssumedRole]


@dataclass(frozen=True)
class CallerIdentity:
    """Identity information returned by STS ``GetCallerIdentity``."""

    account_id: str
    arn: str
    user_id: str

    @property
    def is_root(self) -> bool:
        return self.arn.endswith(":root")

    @property
    def principal_kind(self) -> str:
        """``root``, ``user``, ``assumed-role`` or ``unknown`` from the ARN resource part."""

        if self.is_root:
            return "root"
        resource = self.arn.split(":", 5)[-1]
        kind = resource.split("/", 1)[0]
        return kind if kind in {"user", "assumed-role"} else "unknown"

    @property
    def principal_name(self) -> str:
        """User name, or role name for assumed-role sessions."""

        resource = self.arn.split(":", 5)[-1]
        parts = resource.split("/")
        if parts[0] == "assumed-role" and len(parts) >= 2:
            return parts[1]
        return parts[-1]


@dataclass(frozen=True)
class AssumeRoleResult:
    """Temporary credentials for a role in another account.

    These must never be persisted; ``expiration`` is surfaced so the caller
    can prompt for a fresh session instead of refreshing silently.
    """

    credentials: InlineKeys
    identity: CallerIdentity
    expiration: Optional[datetime]
    assumed_role_arn: str


def build_role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def build_session(region: str, source: CredentialSource) -> boto3.session.Session:
    """Return a :class:`boto3.session.Session` for ``source`` in ``region``."""

    try:
        if isinstance(source, InlineKeys):
            return boto3.Session(
                aws_access_key_id=source.access_key_id,
                aws_secret_access_key=source.secret_access_key,
                aws_session_token=source.session_token,
                region_name=region,
            )
        if isinstance(source, NamedProfile):
            return boto3.Session(profile_name=source.profile_name, region_name=region)
        if isinstance(source, DefaultChain):
            return boto3.Session(region_name=region)
        if isinstance(source, AssumedRole):
            result = assume_role(
                region, source.parent, source.account_id, source.role_name, source.session_name
            )
            return build_session(region, result.credentials)
    except BotoCoreError as exc:
        raise AuthError(f"Failed to build AWS session: {exc}") from exc
    raise TypeError(f"Unsupported credential source: {type(source).__name__}")


def get_caller_identity(session: boto3.session.Session) -> CallerIdentity:
    """Call STS ``GetCallerIdentity`` for ``session``."""

    try:
        response = session.client("sts").get_caller_identity()
    except (ClientError, BotoCoreError) as exc:
        raise AuthError(f"STS GetCallerIdentity failed: {exc}") from exc
    return CallerIdentity(
        account_id=response.get("Account", ""),
        arn=response.get("Arn", ""),
        user_id=response.get("UserId", ""),
    )


def resolve_identity(region: str, source: CredentialSource) -> Tuple[boto3.session.Session, CallerIdentity]:
    """Build a session for ``source`` and confirm who it is with STS."""

    session = build_session(region, source)
    return session, get_caller_identity(session)


def source_access_key_id(session: boto3.session.Session) -> Optional[str]:
    """Access key id behind ``session``, if it resolves to static or temporary keys."""

    try:
        credentials = session.get_credentials()
    except BotoCoreError as exc:
        raise AuthError(f"Failed to resolve credentials: {exc}") from exc
    if credentials is None:
        return None
    return credentials.get_frozen_credentials().access_key


def assume_role(
    region: str,
    source: CredentialSource,
    account_id: str,
    role_name: str,
    session_name: str = DEFAULT_SESSION_NAME,
) -> AssumeRoleResult:
    """Assume ``role_name`` in ``account_id`` using ``source`` as the parent credentials."""

    role_arn = build_role_arn(account_id, role_name)
    session = build_session(region, source)
    logger.info("Assuming role %s (session %s)", role_arn, session_name)
    try:
        response = session.client("sts").assume_role(RoleArn=role_arn, RoleSessionName=session_name)
    except (ClientError, BotoCoreError) as exc:
        raise AuthError(f"STS AssumeRole failed for {role_arn}: {exc}") from exc

    creds = response.get("Credentials")
    if not creds:
        raise AuthError("STS AssumeRole returned no credentials")

    assumed_arn = response.get("AssumedRoleUser", {}).get("Arn", "")
    # arn:aws:sts::ACCOUNT_ID:assumed-role/ROLE/SESSION
    parts = assumed_arn.split(":")
    assumed_account = parts[4] if len(parts) > 4 and parts[4] else account_id

    identity = CallerIdentity(
        account_id=assumed_account,
        arn=assumed_arn,
        user_id=response.get("AssumedRoleUser", {}).get("AssumedRoleId", ""),
    )
    logger.info("Assumed %s in account %s", assumed_arn, assumed_account)
    return AssumeRoleResult(
        credentials=InlineKeys(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken"),
        ),
        identity=identity,
        expiration=creds.get("Expiration"),
        assumed_role_arn=assumed_arn,
    )


__all__ = [
    "AssumeRoleResult",
    "AssumedRole",
    "CallerIdentity",
    "CredentialSource",
    "DefaultChain",
    "InlineKeys",
    "NamedProfile",
    "assume_role",
    "build_role_arn",
    "build_session",
    "get_caller_identity",
    "resolve_identity",
    "source_access_key_id",
]
