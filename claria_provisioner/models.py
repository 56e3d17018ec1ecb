"""Data models shared by the scanner, planner, executor and state store."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import StateIncompatible
from .manifest import FieldDrift, ResourceSpec


STATE_SCHEMA = "claria-provisioner-state/1"


class ScanStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class Action(str, Enum):
    """What the executor would do for a plan entry."""

    OK = "ok"
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    PRECONDITION_FAILED = "precondition_failed"
    ERROR = "error"


class Cause(str, Enum):
    """Why a plan entry carries its action."""

    IN_SYNC = "in_sync"
    FIRST_PROVISION = "first_provision"
    DRIFT = "drift"
    MANIFEST_CHANGED = "manifest_changed"
    ORPHANED = "orphaned"
    SCAN_FAILED = "scan_failed"


ACTIONABLE = frozenset({Action.CREATE, Action.MODIFY, Action.DELETE})


@dataclass
class ScanResult:
    """Observed state of a single resource from one scan."""

    resource_name: str
    resource_type: str
    status: ScanStatus
    resource_id: Optional[str] = None
    error: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None


@dataclass
class PlanEntry:
    """The planned action for one resource, with its cause and field drift."""

    spec: ResourceSpec
    action: Action
    cause: Cause
    drift: List[FieldDrift] = field(default_factory=list)
    missing_permissions: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        return self.action in ACTIONABLE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["cause"] = self.cause.value
        data["spec"]["severity"] = self.spec.severity.value
        return data


@dataclass
class ApplyResult:
    """Outcome of an apply call: what ran, and what (if anything) failed."""

    applied: List[PlanEntry] = field(default_factory=list)
    failed: Optional[PlanEntry] = None
    error: Optional[str] = None
    # Plan computed from a fresh scan once the steps ran.
    final_plan: List[PlanEntry] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed is None


@dataclass
class ResourceState:
    """Last-applied record for one resource."""

    resource_type: str
    resource_id: str
    properties: Dict[str, Any] = field(default_factory=dict)
    manifest_version: Optional[int] = None


@dataclass
class ProvisionerState:
    """Durable record of the last-applied state, keyed by resource name."""

    manifest_version: Optional[int] = None
    resources: Dict[str, ResourceState] = field(default_factory=dict)

    def version_for(self, resource_name: str) -> Optional[int]:
        """Manifest version the resource was last written under."""

        record = self.resources.get(resource_name)
        if record is not None and record.manifest_version is not None:
            return record.manifest_version
        return self.manifest_version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": STATE_SCHEMA,
            "manifest_version": self.manifest_version,
            "resources": {name: asdict(record) for name, record in self.resources.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ProvisionerState":
        if not isinstance(data, dict):
            raise StateIncompatible("Provisioner state is not a JSON object")
        schema = data.get("schema")
        if schema != STATE_SCHEMA:
            raise StateIncompatible(f"Unrecognised provisioner state schema: {schema!r}")

        version = data.get("manifest_version")
        if version is not None and not isinstance(version, int):
            raise StateIncompatible(f"Invalid manifest_version in state: {version!r}")

        raw_resources = data.get("resources") or {}
        if not isinstance(raw_resources, dict):
            raise StateIncompatible("Provisioner state 'resources' is not a mapping")

        resources: Dict[str, ResourceState] = {}
        for name, raw in raw_resources.items():
            try:
                resources[name] = ResourceState(
                    resource_type=raw["resource_type"],
                    resource_id=raw["resource_id"],
                    properties=dict(raw.get("properties") or {}),
                    manifest_version=raw.get("manifest_version"),
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise StateIncompatible(f"Cannot interpret state record for {name!r}: {exc}") from exc
        return cls(manifest_version=version, resources=resources)


__all__ = [
    "ACTIONABLE",
    "Action",
    "ApplyResult",
    "Cause",
    "PlanEntry",
    "ProvisionerState",
    "ResourceState",
    "STATE_SCHEMA",
    "ScanResult",
    "ScanStatus",
]
