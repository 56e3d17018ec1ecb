"""Runtime configuration read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional

from .scanner import DEFAULT_SCAN_WORKERS

DEFAULT_SYSTEM_NAME = "claria"
DEFAULT_REGION = "us-east-1"


@dataclass(frozen=True)
class ProvisionerConfig:
    region: str = DEFAULT_REGION
    system_name: str = DEFAULT_SYSTEM_NAME
    profile: Optional[str] = None
    scan_workers: int = DEFAULT_SCAN_WORKERS

    @staticmethod
    def from_env() -> "ProvisionerConfig":
        region = (
            os.getenv("CLARIA_REGION")
            or os.getenv("AWS_REGION")
            or os.getenv("AWS_DEFAULT_REGION")
            or DEFAULT_REGION
        )
        system_name = os.getenv("CLARIA_SYSTEM_NAME") or DEFAULT_SYSTEM_NAME
        profile = os.getenv("AWS_PROFILE") or None

        raw_workers = os.getenv("CLARIA_SCAN_WORKERS")
        scan_workers = DEFAULT_SCAN_WORKERS
        if raw_workers:
            try:
                scan_workers = int(raw_workers)
            except ValueError as exc:
                raise ValueError(f"CLARIA_SCAN_WORKERS must be an integer, got {raw_workers!r}") from exc
            if scan_workers < 1:
                raise ValueError("CLARIA_SCAN_WORKERS must be at least 1")

        return ProvisionerConfig(
            region=region,
            system_name=system_name,
            profile=profile,
            scan_workers=scan_workers,
        )

    def with_overrides(self, **overrides) -> "ProvisionerConfig":
        """Copy with every non-``None`` override applied."""

        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


__all__ = ["DEFAULT_REGION", "DEFAULT_SYSTEM_NAME", "ProvisionerConfig"]
