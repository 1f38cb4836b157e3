"""Ownership ledger for a provisioning run.

The ledger is the ordered list of resources a run created. It is the only
input rollback needs. Each record is persisted before the run moves on, so
the resources of a crashed or killed run can still be rolled back later.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from rolegate.errors import FilesystemFailure
from rolegate.role_dir import write_atomic

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    NETWORK = "network"
    DISK = "disk"
    DOMAIN = "domain"
    CONFIG_DIR = "config_dir"


@dataclass
class ProvisionedResource:
    """A resource created by this run. ``files`` is used for config dirs."""
    kind: ResourceKind
    name: str
    files: list[str] = field(default_factory=list)

    def describe(self) -> str:
        return f"{self.kind.value} {self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "files": list(self.files)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvisionedResource":
        return cls(
            kind=ResourceKind(data["kind"]),
            name=data["name"],
            files=list(data.get("files", [])),
        )


class OwnershipLedger:
    """Ordered record of resources owned by one provisioning run."""

    def __init__(self, role: str, path: Path | None = None):
        self.role = role
        self.path = Path(path) if path is not None else None
        self._resources: list[ProvisionedResource] = []

    @property
    def resources(self) -> list[ProvisionedResource]:
        return list(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def record(self, resource: ProvisionedResource) -> None:
        self._resources.append(resource)
        logger.debug(f"Ledger {self.role}: claimed {resource.describe()}")
        self._persist()

    def add_files(self, config_dir: str, files: list[Path | str]) -> None:
        """Claim files written into a config dir, recording the dir on first use."""
        entry = next(
            (r for r in self._resources if r.kind == ResourceKind.CONFIG_DIR and r.name == config_dir),
            None,
        )
        new_files = [str(f) for f in files]
        if entry is None:
            self.record(ProvisionedResource(ResourceKind.CONFIG_DIR, config_dir, new_files))
            return
        for name in new_files:
            if name not in entry.files:
                entry.files.append(name)
        self._persist()

    def retain(self, resources: list[ProvisionedResource]) -> None:
        """Keep only *resources* (e.g. undo steps that failed) and persist."""
        self._resources = list(resources)
        if not self._resources and self.path is not None:
            self.path.unlink(missing_ok=True)
            return
        self._persist()

    def in_undo_order(self) -> list[ProvisionedResource]:
        """Resources newest first."""
        return list(reversed(self._resources))

    def discard(self) -> None:
        """Drop all claims (the run committed)."""
        self._resources.clear()
        if self.path is not None:
            self.path.unlink(missing_ok=True)

    def _persist(self) -> None:
        if self.path is None:
            return
        payload = {
            "role": self.role,
            "resources": [r.to_dict() for r in self._resources],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_atomic(self.path, json.dumps(payload, indent=2) + "\n", mode=0o600)
        except (OSError, FilesystemFailure) as e:
            # The in-memory ledger still drives rollback for this process
            logger.warning(f"Failed to persist ledger for {self.role}: {e}")

    @classmethod
    def load(cls, path: Path) -> "OwnershipLedger | None":
        """Load a persisted ledger left behind by an interrupted run."""
        path = Path(path)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text())
            ledger = cls(data["role"], path)
            ledger._resources = [ProvisionedResource.from_dict(r) for r in data.get("resources", [])]
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable ledger {path}: {e}")
            return None
        return ledger


def ledger_path(state_dir: Path, role: str, run: str | None = None) -> Path:
    """Ledger file of a role's gateway run, or of one of its app VM runs.

    Role names never contain dots, so ``<role>.<run>`` cannot collide with
    another role's gateway ledger.
    """
    if run is None:
        return Path(state_dir) / f"{role}.ledger.json"
    return Path(state_dir) / f"{role}.{run}.ledger.json"


def role_ledger_paths(state_dir: Path, role: str) -> list[Path]:
    """Every persisted ledger belonging to *role*, gateway ledger first."""
    state_dir = Path(state_dir)
    if not state_dir.is_dir():
        return []
    gateway = ledger_path(state_dir, role)
    paths = [gateway] if gateway.is_file() else []
    paths.extend(sorted(state_dir.glob(f"{role}.*.ledger.json")))
    return paths
