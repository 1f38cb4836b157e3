"""Process-wide adapter and orchestrator instances for the CLI and service."""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

from rolegate.hypervisor import VirshAdapter
from rolegate.orchestrator import ProvisioningOrchestrator

T = TypeVar("T")


class LazySingleton(Generic[T]):
    """Create a singleton lazily from a factory function."""

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._instance: T | None = None

    def get(self) -> T:
        if self._instance is None:
            self._instance = self._factory()
        return self._instance

    def set(self, instance: T) -> None:
        """Install a ready-made instance (tests, alternative adapters)."""
        self._instance = instance

    def reset(self) -> None:
        self._instance = None


_adapter = LazySingleton(VirshAdapter)
_orchestrator = LazySingleton(lambda: ProvisioningOrchestrator(_adapter.get()))


def get_orchestrator() -> ProvisioningOrchestrator:
    return _orchestrator.get()


def set_orchestrator(orchestrator: ProvisioningOrchestrator) -> None:
    _orchestrator.set(orchestrator)


def reset() -> None:
    _adapter.reset()
    _orchestrator.reset()
