"""Per-resource-type syncers and the registry that builds them from a manifest."""
from __future__ import annotations

import importlib
import pkgutil
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple, Type

import boto3

from ..manifest import FieldDrift, Manifest, ResourceSpec
from ..models import Action


class ResourceSyncer:
    """Read, diff and mutate one managed resource.

    Subclasses set ``service_name`` and the IAM actions each mutation needs,
    and implement :meth:`read`, :meth:`create`, :meth:`update` and
    :meth:`destroy`. ``read`` must be free of side effects: it returns the
    observed properties, or ``None`` when the resource does not exist.
    """

    service_name: str = ""
    create_actions: Tuple[str, ...] = ()
    update_actions: Tuple[str, ...] = ()
    destroy_actions: Tuple[str, ...] = ()
    # Resources that stay behind on destroy (e.g. the caller's own permissions).
    retain_on_destroy: bool = False

    def __init__(self, spec: ResourceSpec, session: boto3.session.Session) -> None:
        self.spec = spec
        self.session = session
        self.client = session.client(self.service_name)

    @property
    def resource_name(self) -> str:
        return self.spec.resource_name

    def resource_id(self, properties: Mapping[str, Any]) -> str:
        return self.spec.resource_name

    def read(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def diff(self, actual: Mapping[str, Any]) -> List[FieldDrift]:
        """Field-by-field comparison of every labelled desired field."""

        drift = []
        for name in self.spec.field_labels:
            expected = self.spec.desired.get(name)
            observed = actual.get(name)
            if observed != expected:
                drift.append(
                    FieldDrift(field=name, label=self.spec.label_for(name), actual=observed, expected=expected)
                )
        return drift

    def create(self) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self) -> Dict[str, Any]:
        raise NotImplementedError

    def destroy(self) -> None:
        raise NotImplementedError

    def remediation_actions(self, action: Action) -> FrozenSet[str]:
        """IAM actions the caller must hold to carry out ``action``."""

        if action is Action.CREATE:
            return frozenset(self.create_actions)
        if action is Action.MODIFY:
            return frozenset(self.update_actions)
        if action is Action.DELETE:
            return frozenset(self.destroy_actions)
        return frozenset()


SyncerFactory = Type[ResourceSyncer]


class SyncerRegistry:
    """Registry that maps resource types to their syncer classes."""

    def __init__(self) -> None:
        self._syncers: Dict[str, SyncerFactory] = {}

    @staticmethod
    def _normalize(name: str) -> str:
        if not name:
            raise ValueError("Resource type must be a non-empty string")
        return name.strip().lower()

    def register(self, resource_type: str) -> Callable[[SyncerFactory], SyncerFactory]:
        """Return a decorator that registers *resource_type* for the wrapped class."""

        normalized = self._normalize(resource_type)

        def decorator(cls: SyncerFactory) -> SyncerFactory:
            if normalized in self._syncers and self._syncers[normalized] is not cls:
                raise ValueError(f"Resource type '{resource_type}' is already registered")
            self._syncers[normalized] = cls
            return cls

        return decorator

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self._normalize(name) in self._syncers

    def __getitem__(self, name: str) -> SyncerFactory:
        return self._syncers[self._normalize(name)]

    def keys(self) -> Iterator[str]:
        return iter(self._syncers)

    def as_mapping(self) -> Mapping[str, SyncerFactory]:
        return MappingProxyType(self._syncers)


SYNCER_REGISTRY = SyncerRegistry()
register_syncer = SYNCER_REGISTRY.register


def build_syncer(spec: ResourceSpec, session: boto3.session.Session) -> ResourceSyncer:
    if spec.resource_type not in SYNCER_REGISTRY:
        valid = ", ".join(sorted(SYNCER_REGISTRY.keys()))
        raise ValueError(f"Unknown resource type '{spec.resource_type}'. Valid types: {valid}")
    return SYNCER_REGISTRY[spec.resource_type](spec, session)


def build_syncers(manifest: Manifest, session: boto3.session.Session) -> List[ResourceSyncer]:
    """One syncer per spec, in manifest order."""

    return [build_syncer(spec, session) for spec in manifest]


def _import_syncer_modules() -> None:
    """Import modules that register syncers via decorators."""

    package_name = __name__
    package_paths = getattr(__spec__, "submodule_search_locations", None)
    if not package_paths:
        return

    for module_info in pkgutil.iter_modules(package_paths):
        module_name = module_info.name
        if module_name.startswith("_"):
            continue
        importlib.import_module(f"{package_name}.{module_name}")


_import_syncer_modules()

SYNCERS: Mapping[str, SyncerFactory] = SYNCER_REGISTRY.as_mapping()

__all__ = [
    "ResourceSyncer",
    "SYNCERS",
    "SYNCER_REGISTRY",
    "SyncerRegistry",
    "build_syncer",
    "build_syncers",
    "register_syncer",
]
