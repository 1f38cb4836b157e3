"""Base hypervisor adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from rolegate.errors import ExternalCommandFailure
from rolegate.schemas import DomainState


@dataclass
class CommandResult:
    """Outcome of one external command."""
    command: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Diagnostic text, preferring stderr."""
        return (self.stderr or self.stdout).strip()

    def check(self, message: str = "") -> "CommandResult":
        """Raise ExternalCommandFailure unless the command succeeded."""
        if not self.success:
            raise ExternalCommandFailure(self.command, self.returncode, self.output, message)
        return self


@dataclass
class DomainSpec:
    """Everything needed to define and start a domain."""
    name: str
    ram_mb: int
    vcpus: int
    disk_path: Path
    # Gateways: [upstream, role-private]. App VMs: [role-private]
    networks: list[str] = field(default_factory=list)
    shared_dir: Path | None = None
    os_variant: str = "debian12"
    shared_mount_tag: str = "proxy"


class HypervisorAdapter(ABC):
    """Narrow command interface to the virtualization control plane.

    Creation methods raise ExternalCommandFailure (or ResourceConflict /
    ValidationError for violated preconditions). Destroy methods are
    best-effort: they return None on success or when the resource is
    already absent, and a warning string for any other failure.
    """

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def define_and_start_isolated_network(self, name: str) -> None:
        ...

    @abstractmethod
    def destroy_network(self, name: str) -> str | None:
        ...

    @abstractmethod
    def create_overlay_disk(self, template_path: Path, overlay_path: Path) -> None:
        ...

    @abstractmethod
    def delete_overlay_disk(self, path: Path) -> str | None:
        ...

    @abstractmethod
    def define_and_start_domain(self, spec: DomainSpec) -> None:
        ...

    @abstractmethod
    def domain_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def destroy_domain(self, name: str) -> str | None:
        ...

    @abstractmethod
    def list_domains(self) -> list[str]:
        """Names of all defined domains, running or not."""
        ...

    @abstractmethod
    def domain_state(self, name: str) -> DomainState | None:
        """Current state of a domain, or None if it is not defined."""
        ...

    @abstractmethod
    def start_domain(self, name: str) -> None:
        ...

    @abstractmethod
    def shutdown_domain(self, name: str) -> None:
        ...

    def disk_exists(self, path: Path) -> bool:
        return Path(path).exists()

    def check_prerequisites(self) -> list[str]:
        """Return the names of missing host tools (none by default)."""
        return []
