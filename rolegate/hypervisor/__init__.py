"""Hypervisor adapters for the virtualization control plane."""

from rolegate.hypervisor.base import CommandResult, DomainSpec, HypervisorAdapter
from rolegate.hypervisor.virsh import VirshAdapter

__all__ = [
    "CommandResult",
    "DomainSpec",
    "HypervisorAdapter",
    "VirshAdapter",
]
