"""Provisioning and reconciliation of the Claria AWS resources."""

from __future__ import annotations

from .bootstrap import BootstrapResult, BootstrapStep, NewCredentials, StepStatus
from .classifier import CredentialAssessment, CredentialClass
from .core import Provisioner, assume_role, bootstrap, classify, delete_access_key, list_access_keys
from .credentials import AssumedRole, DefaultChain, InlineKeys, NamedProfile
from .errors import (
    ApplyStepError,
    AuthError,
    BootstrapStepError,
    ProvisionerError,
    ScanError,
    StateIncompatible,
)
from .manifest import Manifest, ResourceSpec, build_manifest
from .models import Action, ApplyResult, Cause, PlanEntry, ScanResult, ScanStatus

__all__ = [
    "Action",
    "ApplyResult",
    "ApplyStepError",
    "AssumedRole",
    "AuthError",
    "BootstrapResult",
    "BootstrapStep",
    "BootstrapStepError",
    "Cause",
    "CredentialAssessment",
    "CredentialClass",
    "DefaultChain",
    "InlineKeys",
    "Manifest",
    "NamedProfile",
    "NewCredentials",
    "PlanEntry",
    "Provisioner",
    "ProvisionerError",
    "ResourceSpec",
    "ScanError",
    "ScanResult",
    "ScanStatus",
    "StateIncompatible",
    "StepStatus",
    "assume_role",
    "bootstrap",
    "build_manifest",
    "classify",
    "delete_access_key",
    "list_access_keys",
]
