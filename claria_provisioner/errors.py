"""Exception hierarchy for the provisioning engine."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models import ApplyResult, PlanEntry


KEY_LIMIT_EXCEEDED = "key_limit_exceeded"


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""


class ManifestError(ProvisionerError):
    """Raised when a manifest is built with conflicting resource specs."""


class AuthError(ProvisionerError):
    """Raised when credentials cannot be resolved or a role cannot be assumed."""


class StateIncompatible(ProvisionerError):
    """Raised when persisted state cannot be interpreted by this build.

    Callers are expected to offer :meth:`Provisioner.reset_state` rather than
    silently discarding the stored document.
    """


class ScanError(ProvisionerError):
    """Raised by a syncer when a resource read fails for a non-AWS reason."""


class ApplyStepError(ProvisionerError):
    """Raised when a single apply step fails.

    ``result`` describes every step that completed before the failure; their
    state writes remain valid.
    """

    def __init__(self, entry: "PlanEntry", cause: Exception, result: "ApplyResult") -> None:
        self.entry = entry
        self.cause = cause
        self.result = result
        super().__init__(
            f"{entry.action.value} {entry.spec.resource_type}/{entry.spec.resource_name} failed: {cause}"
        )


class BootstrapStepError(ProvisionerError):
    """Raised inside the bootstrap flow to fail the current step with ``detail``."""

    def __init__(self, detail: str, message: Optional[str] = None) -> None:
        self.detail = detail
        super().__init__(message or detail)


__all__ = [
    "ApplyStepError",
    "AuthError",
    "BootstrapStepError",
    "KEY_LIMIT_EXCEEDED",
    "ManifestError",
    "ProvisionerError",
    "ScanError",
    "StateIncompatible",
]
