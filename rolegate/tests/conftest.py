from __future__ import annotations

from pathlib import Path

import pytest

from rolegate import registry
from rolegate.config import settings
from rolegate.errors import ResourceConflict
from rolegate.hypervisor.base import DomainSpec, HypervisorAdapter
from rolegate.orchestrator import ProvisioningOrchestrator
from rolegate.schemas import DomainState


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Redirect every host path rolegate touches into tmp_path."""
    monkeypatch.setattr(settings, "cfg_root", tmp_path / "cfg")
    monkeypatch.setattr(settings, "images_dir", tmp_path / "images")
    monkeypatch.setattr(settings, "state_dir", tmp_path / "state")
    monkeypatch.setattr(settings, "templates_file", tmp_path / "templates.json")
    monkeypatch.setattr(settings, "lan_net", "lan-net")
    registry.reset()
    yield
    registry.reset()


class FakeAdapter(HypervisorAdapter):
    """In-memory hypervisor that records every call.

    ``fail_on`` maps a method name to the exception it should raise.
    ``destroy_warnings`` maps a destroy method name to the warning it returns.
    """

    def __init__(self, networks=("lan-net",)):
        self.networks: set[str] = set(networks)
        self.disks: set[str] = set()
        self.domains: dict[str, DomainSpec] = {}
        self.running: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}
        self.destroy_warnings: dict[str, str] = {}
        self.missing_tools: list[str] = []

    def _call(self, method: str, arg) -> None:
        self.calls.append((method, str(arg)))
        if method in self.fail_on:
            raise self.fail_on[method]

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def network_exists(self, name):
        return name in self.networks

    def define_and_start_isolated_network(self, name):
        self._call("define_and_start_isolated_network", name)
        if name in self.networks:
            raise ResourceConflict(f"Network '{name}' already exists")
        self.networks.add(name)

    def destroy_network(self, name):
        self._call("destroy_network", name)
        if "destroy_network" in self.destroy_warnings:
            return self.destroy_warnings["destroy_network"]
        self.networks.discard(name)
        return None

    def create_overlay_disk(self, template_path, overlay_path):
        self._call("create_overlay_disk", overlay_path)
        self.disks.add(str(overlay_path))

    def delete_overlay_disk(self, path):
        self._call("delete_overlay_disk", path)
        if "delete_overlay_disk" in self.destroy_warnings:
            return self.destroy_warnings["delete_overlay_disk"]
        self.disks.discard(str(path))
        return None

    def define_and_start_domain(self, spec):
        self._call("define_and_start_domain", spec.name)
        self.domains[spec.name] = spec
        self.running.add(spec.name)

    def domain_exists(self, name):
        return name in self.domains

    def destroy_domain(self, name):
        self._call("destroy_domain", name)
        if "destroy_domain" in self.destroy_warnings:
            return self.destroy_warnings["destroy_domain"]
        self.domains.pop(name, None)
        self.running.discard(name)
        return None

    def list_domains(self):
        return list(self.domains)

    def domain_state(self, name):
        if name not in self.domains:
            return None
        return DomainState.RUNNING if name in self.running else DomainState.SHUT_OFF

    def start_domain(self, name):
        self._call("start_domain", name)
        self.running.add(name)

    def shutdown_domain(self, name):
        self._call("shutdown_domain", name)
        self.running.discard(name)

    def disk_exists(self, path):
        return str(path) in self.disks

    def check_prerequisites(self):
        return list(self.missing_tools)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def template_disk(tmp_path) -> Path:
    path = tmp_path / "templates" / "debian12.qcow2"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"QFI\xfb")
    return path


@pytest.fixture
def orchestrator(fake_adapter) -> ProvisioningOrchestrator:
    orch = ProvisioningOrchestrator(fake_adapter)
    registry.set_orchestrator(orch)
    return orch
