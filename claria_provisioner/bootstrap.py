"""Turn broad credentials into the scoped ``claria-admin`` identity.

The flow is a fixed, linear sequence of steps. Each step is reported through
``on_step`` as it moves ``pending -> in_progress -> succeeded|failed`` and the
flow stops at the first failure. The first three steps inspect real IAM
state before writing, so re-running bootstrap after a failure (typically the
two-key limit on ``create_access_key``) resumes without repeating them.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .classifier import CredentialClass
from .credentials import InlineKeys, build_session, get_caller_identity, source_access_key_id
from .errors import KEY_LIMIT_EXCEEDED, BootstrapStepError, ProvisionerError
from .iam_policy import ensure_policy, ensure_policy_attached, ensure_user, policy_document
from .manifest import IAM_USER_NAME, build_manifest
from .utils import describe_error, error_code

logger = logging.getLogger(__name__)

BOOTSTRAP_STEPS = (
    "create_policy",
    "create_user",
    "attach_policy",
    "create_access_key",
    "validate_new_credentials",
    "delete_source_key",
    "write_config",
)
ALLOWED_CLASSES = frozenset({CredentialClass.ROOT, CredentialClass.IAM_ADMIN})
MAX_ACCESS_KEYS = 2
VALIDATION_ATTEMPTS = 10
VALIDATION_INTERVAL = 2.0


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class BootstrapStep:
    name: str
    status: StepStatus = StepStatus.PENDING
    detail: Optional[str] = None


@dataclass(frozen=True)
class NewCredentials:
    access_key_id: str
    secret_access_key: str
    iam_user_arn: str

    def __repr__(self) -> str:
        return f"NewCredentials(access_key_id={self.access_key_id!r}, iam_user_arn={self.iam_user_arn!r})"


@dataclass
class BootstrapResult:
    steps: List[BootstrapStep] = field(default_factory=list)
    account_id: Optional[str] = None
    new_credentials: Optional[NewCredentials] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return bool(self.steps) and all(s.status is StepStatus.SUCCEEDED for s in self.steps)

    @property
    def key_limit_exceeded(self) -> bool:
        """True when the run stopped because the managed user already holds two keys."""

        return any(s.status is StepStatus.FAILED and s.detail == KEY_LIMIT_EXCEEDED for s in self.steps)

    def step(self, name: str) -> BootstrapStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


Validator = Callable[[NewCredentials], None]
ConfigWriter = Callable[[NewCredentials], None]
StepCallback = Callable[[BootstrapStep], None]


def sts_validator(region: str) -> Validator:
    """Validator that calls STS ``GetCallerIdentity`` with the new keys."""

    def validate(credentials: NewCredentials) -> None:
        session = build_session(
            region,
            InlineKeys(credentials.access_key_id, credentials.secret_access_key),
        )
        get_caller_identity(session)

    return validate


class BootstrapRunner:
    def __init__(
        self,
        session: boto3.session.Session,
        credential_class: CredentialClass,
        region: str,
        system_name: str,
        write_config: Optional[ConfigWriter] = None,
        on_step: Optional[StepCallback] = None,
        validator: Optional[Validator] = None,
        sleep: Callable[[float], None] = time.sleep,
        attempts: int = VALIDATION_ATTEMPTS,
        interval: float = VALIDATION_INTERVAL,
    ) -> None:
        self.session = session
        self.credential_class = credential_class
        self.region = region
        self.system_name = system_name
        self.write_config = write_config
        self.on_step = on_step
        self.validator = validator or sts_validator(region)
        self.sleep = sleep
        self.attempts = attempts
        self.interval = interval
        self.iam = session.client("iam")
        self.account_id = ""
        self.policy_arn: Optional[str] = None
        self.user_arn: Optional[str] = None
        self.result = BootstrapResult()

    def _transition(self, step: BootstrapStep, status: StepStatus, detail: Optional[str] = None) -> None:
        step.status = status
        step.detail = detail
        logger.debug("Bootstrap step %s -> %s", step.name, status.value)
        if self.on_step is not None:
            self.on_step(replace(step))

    def run(self) -> BootstrapResult:
        identity = get_caller_identity(self.session)
        self.account_id = identity.account_id
        self.result = BootstrapResult(
            steps=[BootstrapStep(name) for name in BOOTSTRAP_STEPS],
            account_id=identity.account_id,
        )
        if self.credential_class not in ALLOWED_CLASSES:
            self.result.error = (
                f"Bootstrap needs root or IAM administrator credentials, got {self.credential_class.value}."
            )
            logger.warning(self.result.error)
            return self.result

        logger.info("Bootstrapping %s in account %s", IAM_USER_NAME, self.account_id)
        for step in self.result.steps:
            self._transition(step, StepStatus.IN_PROGRESS)
            try:
                detail = getattr(self, f"_{step.name}")()
            except BootstrapStepError as exc:
                self._fail(step, exc.detail, str(exc))
                break
            except (ClientError, BotoCoreError, ProvisionerError) as exc:
                self._fail(step, describe_error(step.name.replace("_", " ").capitalize(), exc), str(exc))
                break
            self._transition(step, StepStatus.SUCCEEDED, detail)
        return self.result

    def _fail(self, step: BootstrapStep, detail: str, message: str) -> None:
        logger.error("Bootstrap step %s failed: %s", step.name, message)
        self.result.error = message
        self._transition(step, StepStatus.FAILED, detail)

    def _create_policy(self) -> str:
        manifest = build_manifest(self.account_id, self.system_name, self.region)
        document = policy_document(self.system_name, self.account_id, manifest.required_actions())
        self.policy_arn = ensure_policy(self.iam, self.account_id, document)
        return self.policy_arn

    def _create_user(self) -> str:
        self.user_arn = ensure_user(self.iam, IAM_USER_NAME)
        return self.user_arn

    def _attach_policy(self) -> str:
        attached = ensure_policy_attached(self.iam, self.policy_arn, IAM_USER_NAME)
        return "Attached" if attached else "Already attached"

    def _create_access_key(self) -> str:
        existing = self.iam.list_access_keys(UserName=IAM_USER_NAME).get("AccessKeyMetadata", [])
        if len(existing) >= MAX_ACCESS_KEYS:
            raise BootstrapStepError(
                KEY_LIMIT_EXCEEDED,
                f"The {IAM_USER_NAME} user already has {len(existing)} access keys "
                f"(the AWS maximum of {MAX_ACCESS_KEYS}). Delete an existing key to make room.",
            )
        try:
            key = self.iam.create_access_key(UserName=IAM_USER_NAME)["AccessKey"]
        except ClientError as exc:
            if error_code(exc) == "LimitExceeded":
                raise BootstrapStepError(KEY_LIMIT_EXCEEDED, f"IAM refused a new access key: {exc}") from exc
            raise
        self.result.new_credentials = NewCredentials(
            access_key_id=key["AccessKeyId"],
            secret_access_key=key["SecretAccessKey"],
            iam_user_arn=self.user_arn or "",
        )
        logger.info("Created access key %s for %s", key["AccessKeyId"], IAM_USER_NAME)
        return key["AccessKeyId"]

    def _validate_new_credentials(self) -> str:
        # New IAM keys take a few seconds to propagate to STS.
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            if attempt > 1:
                self.sleep(self.interval)
            try:
                self.validator(self.result.new_credentials)
            except (ProvisionerError, ClientError, BotoCoreError) as exc:
                last_error = exc
                logger.info("New credentials not active yet (attempt %d/%d): %s", attempt, self.attempts, exc)
                continue
            return f"Validated after {attempt} attempt(s)"
        raise BootstrapStepError(
            f"New credentials failed validation after {self.attempts} attempts: {last_error}"
        )

    def _delete_source_key(self) -> str:
        if self.credential_class is not CredentialClass.ROOT:
            return "Skipped: source credentials are not root."
        key_id = source_access_key_id(self.session)
        if not key_id:
            raise BootstrapStepError(
                "Could not determine the root access key. Delete it manually in the IAM console."
            )
        try:
            self.iam.delete_access_key(AccessKeyId=key_id)
        except ClientError as exc:
            raise BootstrapStepError(
                f"Could not delete root access key {key_id}. Delete it manually in the IAM console. "
                f"Error: {exc}"
            ) from exc
        logger.info("Deleted root access key %s", key_id)
        return f"Deleted {key_id}"

    def _write_config(self) -> str:
        if self.write_config is None:
            return "Delegated to caller"
        try:
            self.write_config(self.result.new_credentials)
        except OSError as exc:
            raise BootstrapStepError(f"Could not write configuration: {exc}") from exc
        return "Configuration written"


def run_bootstrap(
    session: boto3.session.Session,
    credential_class: CredentialClass,
    region: str,
    system_name: str,
    write_config: Optional[ConfigWriter] = None,
    on_step: Optional[StepCallback] = None,
    **options,
) -> BootstrapResult:
    """Run the bootstrap sequence with ``session`` as the elevated credentials."""

    runner = BootstrapRunner(
        session,
        credential_class,
        region,
        system_name,
        write_config=write_config,
        on_step=on_step,
        **options,
    )
    return runner.run()


__all__ = [
    "BOOTSTRAP_STEPS",
    "BootstrapResult",
    "BootstrapRunner",
    "BootstrapStep",
    "NewCredentials",
    "StepStatus",
    "run_bootstrap",
    "sts_validator",
]
