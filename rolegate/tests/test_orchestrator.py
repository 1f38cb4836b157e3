"""Tests for the provisioning orchestrator and its rollback guarantees."""

from __future__ import annotations

import json
import signal
from pathlib import Path

import pytest

from rolegate.config import settings
from rolegate.egress import parse_config
from rolegate.errors import (
    ExternalCommandFailure,
    FilesystemFailure,
    ProvisioningCancelled,
    ResourceConflict,
    ValidationError,
)
from rolegate.ledger import OwnershipLedger, ProvisionedResource, ResourceKind
from rolegate.orchestrator import ProvisioningOrchestrator
from rolegate.schemas import (
    AppVmRequest,
    DomainState,
    GatewayMode,
    GatewayTemplate,
    ProvisionRequest,
    ProxyChain,
    ProxyHop,
    VmKind,
)
from rolegate.templates import TemplateRegistry


def command_failure(message: str = "virt-install failed") -> ExternalCommandFailure:
    return ExternalCommandFailure(["virt-install", "--name", "work-gw"], 1, "ERROR    internal error", message)


def _request(template_disk, role="work", **overrides) -> ProvisionRequest:
    values = dict(
        role=role,
        egress={"mode": "PROXY_CHAIN", "hops": [{"kind": "SOCKS5", "host": "10.0.0.5", "port": 1080}]},
        template=str(template_disk),
    )
    values.update(overrides)
    return ProvisionRequest(**values)


def _role_dir(role="work"):
    return settings.cfg_root / role


def _ledger_file(role="work"):
    return settings.state_dir / f"{role}.ledger.json"


class TestProvision:
    def test_happy_path(self, orchestrator, fake_adapter, template_disk):
        result = orchestrator.provision(_request(template_disk))

        assert result.state == "committed"
        assert result.network == "work-inet"
        assert result.domain == "work-gw"
        assert result.network_reused is False
        assert result.disk_path == str(settings.images_dir / "work-gw.qcow2")
        assert fake_adapter.call_names() == [
            "define_and_start_isolated_network",
            "create_overlay_disk",
            "define_and_start_domain",
        ]

        spec = fake_adapter.domains["work-gw"]
        assert spec.networks == ["lan-net", "work-inet"]
        assert spec.shared_dir == _role_dir()
        assert spec.shared_mount_tag == "proxy"
        assert spec.ram_mb == 1024

        values = parse_config((_role_dir() / "proxy.conf").read_text())
        assert values["PROXY_1_HOST"] == "10.0.0.5"
        assert (_role_dir() / "apply-proxy.sh").is_file()
        assert not _ledger_file().exists()

    def test_metadata_written(self, orchestrator, template_disk):
        orchestrator.provision(_request(template_disk))
        meta = orchestrator.role_dirs.load_meta("work")
        assert meta.gateway_mode is GatewayMode.PROXY_CHAIN
        assert meta.upstream_network == "lan-net"

    def test_existing_network_is_reused(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.networks.add("work-inet")
        result = orchestrator.provision(_request(template_disk))
        assert result.network_reused is True
        assert "define_and_start_isolated_network" not in fake_adapter.call_names()

    def test_template_from_registry(self, fake_adapter, template_disk):
        registry = TemplateRegistry()
        registry.add(GatewayTemplate(id="deb", path=str(template_disk), os_variant="debian11", default_ram_mb=2048))
        orchestrator = ProvisioningOrchestrator(fake_adapter, templates=registry)

        orchestrator.provision(_request(template_disk, template="deb"))

        spec = fake_adapter.domains["work-gw"]
        assert spec.ram_mb == 2048
        assert spec.os_variant == "debian11"

    def test_vpn_file_imported(self, orchestrator, template_disk, tmp_path):
        wg = tmp_path / "wg_work.conf"
        wg.write_text("[Interface]\nAddress = 10.8.0.2/32\n")
        result = orchestrator.provision(_request(
            template_disk,
            egress={"mode": "WIREGUARD", "config_file": "wg_work.conf"},
            import_files=[str(wg)],
        ))
        assert (_role_dir() / "wg_work.conf").read_text() == wg.read_text()
        assert str(_role_dir() / "wg_work.conf") in result.files


class TestValidation:
    def test_invalid_role_name_has_no_side_effects(self, orchestrator, fake_adapter, template_disk):
        with pytest.raises(ValidationError):
            orchestrator.provision(_request(template_disk, role="Work 1"))
        assert fake_adapter.calls == []
        assert not settings.cfg_root.exists()
        assert not settings.state_dir.exists()

    def test_too_many_hops(self, orchestrator, fake_adapter, template_disk):
        # Built without validation, as a caller bypassing the schema would
        chain = ProxyChain.model_construct(hops=[ProxyHop(host=f"10.0.0.{i}", port=1080) for i in range(9)])
        request = _request(template_disk).model_copy(update={"egress": chain})
        with pytest.raises(ValidationError, match="Maximum 8 proxy hops"):
            orchestrator.provision(request)
        assert fake_adapter.calls == []
        assert not settings.cfg_root.exists()

    def test_missing_template(self, orchestrator, fake_adapter, tmp_path):
        with pytest.raises(ValidationError, match="Template disk does not exist"):
            orchestrator.provision(_request(tmp_path / "missing.qcow2"))
        assert fake_adapter.calls == []

    def test_missing_upstream_network(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.networks.clear()
        with pytest.raises(ValidationError, match="lan-net"):
            orchestrator.provision(_request(template_disk))
        assert fake_adapter.calls == []

    def test_upstream_must_differ_from_role_network(self, orchestrator, template_disk):
        with pytest.raises(ValidationError):
            orchestrator.provision(_request(template_disk, upstream_network="work-inet"))

    def test_existing_domain_conflicts(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.domains["work-gw"] = object()
        with pytest.raises(ResourceConflict):
            orchestrator.provision(_request(template_disk))
        assert fake_adapter.calls == []

    def test_existing_disk_conflicts(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.disks.add(str(settings.images_dir / "work-gw.qcow2"))
        with pytest.raises(ResourceConflict):
            orchestrator.provision(_request(template_disk))

    def test_stale_ledger_blocks_new_run(self, orchestrator, fake_adapter, template_disk):
        ledger = OwnershipLedger("work", _ledger_file())
        ledger.record(ProvisionedResource(ResourceKind.NETWORK, "work-inet"))
        with pytest.raises(ResourceConflict, match="unfinished run"):
            orchestrator.provision(_request(template_disk))
        assert fake_adapter.calls == []


class TestRollback:
    def test_domain_failure_rolls_back_everything(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()

        with pytest.raises(ExternalCommandFailure, match="internal error") as exc_info:
            orchestrator.provision(_request(template_disk))

        assert exc_info.value.rollback_failures == []
        assert fake_adapter.call_names()[-2:] == ["delete_overlay_disk", "destroy_network"]
        assert "work-inet" not in fake_adapter.networks
        assert fake_adapter.disks == set()
        assert not (_role_dir() / "proxy.conf").exists()
        assert not (_role_dir() / "apply-proxy.sh").exists()
        assert not _ledger_file().exists()

    def test_reused_network_left_untouched(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.networks.add("work-inet")
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()

        with pytest.raises(ExternalCommandFailure):
            orchestrator.provision(_request(template_disk))

        assert "destroy_network" not in fake_adapter.call_names()
        assert "work-inet" in fake_adapter.networks
        assert fake_adapter.disks == set()

    def test_preexisting_user_files_survive(self, orchestrator, fake_adapter, template_disk):
        role_dir = _role_dir()
        role_dir.mkdir(parents=True)
        user_file = role_dir / "wg_work.conf"
        user_file.write_text("[Interface]\n")
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()

        with pytest.raises(ExternalCommandFailure):
            orchestrator.provision(_request(
                template_disk, egress={"mode": "WIREGUARD", "config_file": "wg_work.conf"},
            ))

        assert user_file.exists()
        assert role_dir.is_dir()
        assert not (role_dir / "proxy.conf").exists()

    def test_imported_files_removed(self, orchestrator, fake_adapter, template_disk, tmp_path):
        wg = tmp_path / "wg_work.conf"
        wg.write_text("[Interface]\n")
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()

        with pytest.raises(ExternalCommandFailure):
            orchestrator.provision(_request(
                template_disk,
                egress={"mode": "WIREGUARD", "config_file": "wg_work.conf"},
                import_files=[str(wg)],
            ))

        assert not (_role_dir() / "wg_work.conf").exists()
        assert wg.exists()

    def test_disk_failure_only_undoes_network(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.fail_on["create_overlay_disk"] = command_failure("Failed to create overlay disk")

        with pytest.raises(ExternalCommandFailure, match="overlay disk"):
            orchestrator.provision(_request(template_disk))

        assert fake_adapter.call_names() == [
            "define_and_start_isolated_network",
            "create_overlay_disk",
            "destroy_network",
        ]
        assert not settings.cfg_root.exists()

    def test_config_write_failure(self, orchestrator, fake_adapter, template_disk, monkeypatch):
        def broken_write(role, spec, role_dir):
            raise FilesystemFailure(role_dir, "Failed to stage file (read-only file system)")

        monkeypatch.setattr(orchestrator.compiler, "write", broken_write)

        with pytest.raises(FilesystemFailure, match="read-only"):
            orchestrator.provision(_request(template_disk))

        assert fake_adapter.call_names()[-2:] == ["delete_overlay_disk", "destroy_network"]

    def test_network_vanishing_before_domain(self, orchestrator, fake_adapter, template_disk, monkeypatch):
        real_write = orchestrator.compiler.write

        def write_then_lose_network(role, spec, role_dir):
            files = real_write(role, spec, role_dir)
            fake_adapter.networks.discard("work-inet")
            return files

        monkeypatch.setattr(orchestrator.compiler, "write", write_then_lose_network)

        with pytest.raises(ExternalCommandFailure, match="disappeared"):
            orchestrator.provision(_request(template_disk))
        assert "define_and_start_domain" not in fake_adapter.call_names()
        assert fake_adapter.disks == set()

    def test_undo_failures_attached_to_original_error(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()
        fake_adapter.destroy_warnings["delete_overlay_disk"] = "Failed to delete overlay disk: busy"

        with pytest.raises(ExternalCommandFailure) as exc_info:
            orchestrator.provision(_request(template_disk))

        error = exc_info.value
        assert len(error.rollback_failures) == 1
        assert error.rollback_failures[0].resource.startswith("disk ")
        assert "rollback incomplete" in str(error)
        # Later undo steps still ran
        assert "work-inet" not in fake_adapter.networks
        # The failed step stays claimed for a later retry
        data = json.loads(_ledger_file().read_text())
        assert [r["kind"] for r in data["resources"]] == ["disk"]

    def test_undo_exception_does_not_stop_rollback(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()
        fake_adapter.fail_on["delete_overlay_disk"] = RuntimeError("boom")

        with pytest.raises(ExternalCommandFailure) as exc_info:
            orchestrator.provision(_request(template_disk))

        assert "boom" in exc_info.value.rollback_failures[0].message
        assert "work-inet" not in fake_adapter.networks


class TestCancellation:
    def test_cancel_between_steps(self, orchestrator, fake_adapter, template_disk):
        real_create = fake_adapter.create_overlay_disk

        def create_and_cancel(template_path, overlay_path):
            real_create(template_path, overlay_path)
            orchestrator.cancel()

        fake_adapter.create_overlay_disk = create_and_cancel

        with pytest.raises(ProvisioningCancelled):
            orchestrator.provision(_request(template_disk))

        assert fake_adapter.disks == set()
        assert "work-inet" not in fake_adapter.networks
        assert "define_and_start_domain" not in fake_adapter.call_names()

    def test_signal_triggers_rollback(self, orchestrator, fake_adapter, template_disk):
        def interrupted(template_path, overlay_path):
            fake_adapter.disks.add(str(overlay_path))
            signal.raise_signal(signal.SIGTERM)

        fake_adapter.create_overlay_disk = interrupted
        previous = signal.getsignal(signal.SIGTERM)

        with pytest.raises(ProvisioningCancelled, match="SIGTERM"):
            orchestrator.provision(_request(template_disk))

        assert "work-inet" not in fake_adapter.networks
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_keyboard_interrupt_rolls_back(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.fail_on["define_and_start_domain"] = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            orchestrator.provision(_request(template_disk))

        assert fake_adapter.disks == set()
        assert not (_role_dir() / "proxy.conf").exists()

    def test_cancel_without_run_is_dropped(self, orchestrator, template_disk):
        assert orchestrator.cancel() == []
        assert orchestrator.cancel("work") == []
        result = orchestrator.provision(_request(template_disk))
        assert result.state == "committed"

    def test_cancel_targets_one_run(self, orchestrator, fake_adapter, template_disk):
        real_create = fake_adapter.create_overlay_disk
        nested = []

        def create(template_path, overlay_path):
            real_create(template_path, overlay_path)
            if Path(overlay_path).name == "alpha-gw.qcow2":
                assert orchestrator.cancel("alpha") == ["alpha"]
                # A run started after the cancel must neither clear nor inherit it
                nested.append(orchestrator.provision(_request(template_disk, role="beta")))

        fake_adapter.create_overlay_disk = create

        with pytest.raises(ProvisioningCancelled, match="alpha"):
            orchestrator.provision(_request(template_disk, role="alpha"))

        assert nested[0].state == "committed"
        assert "beta-gw" in fake_adapter.domains
        assert "alpha-gw" not in fake_adapter.domains
        assert "alpha-inet" not in fake_adapter.networks
        assert fake_adapter.disks == {str(settings.images_dir / "beta-gw.qcow2")}
        assert orchestrator.active_roles() == []

    def test_cancel_all_runs(self, orchestrator, fake_adapter, template_disk):
        real_create = fake_adapter.create_overlay_disk
        signalled = []

        def create(template_path, overlay_path):
            real_create(template_path, overlay_path)
            signalled.extend(orchestrator.cancel())

        fake_adapter.create_overlay_disk = create

        with pytest.raises(ProvisioningCancelled):
            orchestrator.provision(_request(template_disk))
        assert signalled == ["work"]

    def test_second_run_for_same_role_rejected(self, orchestrator, fake_adapter, template_disk):
        real_create = fake_adapter.create_overlay_disk
        conflicts = []

        def create(template_path, overlay_path):
            real_create(template_path, overlay_path)
            assert orchestrator.active_roles() == ["work"]
            with pytest.raises(ResourceConflict, match="already has a run") as exc_info:
                orchestrator.provision(_request(template_disk))
            conflicts.append(exc_info.value)

        fake_adapter.create_overlay_disk = create

        result = orchestrator.provision(_request(template_disk))

        assert result.state == "committed"
        assert len(conflicts) == 1
        assert fake_adapter.call_names().count("create_overlay_disk") == 1


class TestStaleAndState:
    def test_rollback_stale(self, orchestrator, fake_adapter, template_disk):
        fake_adapter.networks.add("work-inet")
        disk = settings.images_dir / "work-gw.qcow2"
        fake_adapter.disks.add(str(disk))
        ledger = OwnershipLedger("work", _ledger_file())
        ledger.record(ProvisionedResource(ResourceKind.NETWORK, "work-inet"))
        ledger.record(ProvisionedResource(ResourceKind.DISK, str(disk)))

        resources, failures = orchestrator.rollback_stale("work")

        assert [r.kind for r in resources] == [ResourceKind.NETWORK, ResourceKind.DISK]
        assert failures == []
        assert fake_adapter.call_names() == ["delete_overlay_disk", "destroy_network"]
        assert not _ledger_file().exists()

    def test_rollback_stale_nothing_to_do(self, orchestrator):
        assert orchestrator.rollback_stale("work") == ([], [])

    def test_runtime_state(self, orchestrator, fake_adapter, template_disk):
        state = orchestrator.runtime_state("work")
        assert not state.provisioned
        assert state.network == "work-inet"

        orchestrator.provision(_request(template_disk))
        state = orchestrator.runtime_state("work")
        assert state.provisioned
        assert state.role_dir_exists
        assert not state.stale_ledger

    def test_runtime_state_is_live(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk))
        fake_adapter.domains.clear()
        assert orchestrator.runtime_state("work").domain_exists is False


class TestReconfigure:
    def test_switches_mode(self, orchestrator, template_disk):
        orchestrator.provision(_request(template_disk))
        orchestrator.reconfigure("work", {"mode": "WIREGUARD", "config_file": "wg_work.conf"})

        values = parse_config((_role_dir() / "proxy.conf").read_text())
        assert values["GATEWAY_MODE"] == "WIREGUARD"
        assert "PROXY_1_HOST" not in values
        assert orchestrator.role_dirs.load_meta("work").gateway_mode is GatewayMode.WIREGUARD

    def test_unknown_role(self, orchestrator):
        with pytest.raises(ValidationError, match="no configuration directory"):
            orchestrator.reconfigure("work", {"mode": "WIREGUARD", "config_file": "wg.conf"})


class TestAppVms:
    @pytest.fixture
    def provisioned(self, orchestrator, template_disk):
        orchestrator.provision(_request(template_disk, app_template=str(template_disk)))
        return orchestrator

    def test_create_app_vm(self, provisioned, fake_adapter):
        result = provisioned.create_app_vm(AppVmRequest(role="work"))

        assert result.state == "committed"
        assert result.domain == "work-app-1"
        assert result.number == 1
        assert result.disk_path == str(settings.images_dir / "work-app-1-overlay.qcow2")
        spec = fake_adapter.domains["work-app-1"]
        assert spec.networks == ["work-inet"]
        assert spec.shared_dir is None
        assert spec.ram_mb == 2048
        assert spec.vcpus == 2
        assert provisioned.role_dirs.load_meta("work").app_vm_count == 1
        assert not (settings.state_dir / "work.app-1.ledger.json").exists()

    def test_numbers_increase(self, provisioned, fake_adapter):
        first = provisioned.create_app_vm(AppVmRequest(role="work"))
        # Deleting a VM outside rolegate does not free its number
        fake_adapter.domains.pop(first.domain)
        fake_adapter.disks.discard(first.disk_path)

        second = provisioned.create_app_vm(AppVmRequest(role="work", ram_mb=4096))

        assert second.domain == "work-app-2"
        assert fake_adapter.domains["work-app-2"].ram_mb == 4096

    def test_next_number_skips_existing_disk(self, provisioned, fake_adapter):
        fake_adapter.disks.add(str(settings.images_dir / "work-app-1-overlay.qcow2"))
        assert provisioned.next_app_number("work") == 2

    def test_requires_provisioned_role(self, orchestrator, fake_adapter, template_disk):
        with pytest.raises(ValidationError, match="provision the role first"):
            orchestrator.create_app_vm(AppVmRequest(role="work", template=str(template_disk)))
        assert fake_adapter.calls == []

    def test_requires_template(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk))
        with pytest.raises(ValidationError, match="No app template"):
            orchestrator.create_app_vm(AppVmRequest(role="work"))

    def test_failure_rolls_back_disk(self, provisioned, fake_adapter):
        fake_adapter.fail_on["define_and_start_domain"] = command_failure()

        with pytest.raises(ExternalCommandFailure):
            provisioned.create_app_vm(AppVmRequest(role="work"))

        assert fake_adapter.call_names()[-1] == "delete_overlay_disk"
        assert str(settings.images_dir / "work-app-1-overlay.qcow2") not in fake_adapter.disks
        # The role network belongs to the gateway run and stays
        assert "work-inet" in fake_adapter.networks
        assert "work-gw" in fake_adapter.domains
        assert not (settings.state_dir / "work.app-1.ledger.json").exists()
        assert provisioned.role_dirs.load_meta("work").app_vm_count == 0

    def test_interrupted_app_run_blocks_and_rolls_back(self, provisioned, fake_adapter):
        disk = settings.images_dir / "work-app-1-overlay.qcow2"
        fake_adapter.disks.add(str(disk))
        ledger = OwnershipLedger("work", settings.state_dir / "work.app-1.ledger.json")
        ledger.record(ProvisionedResource(ResourceKind.DISK, str(disk)))

        assert provisioned.runtime_state("work").stale_ledger
        with pytest.raises(ResourceConflict, match="unfinished run"):
            provisioned.create_app_vm(AppVmRequest(role="work"))

        resources, failures = provisioned.rollback_stale("work")

        assert [r.name for r in resources] == [str(disk)]
        assert failures == []
        assert str(disk) not in fake_adapter.disks
        assert not provisioned.runtime_state("work").stale_ledger


class TestVmLifecycle:
    def test_list_role_vms(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk, app_template=str(template_disk)))
        orchestrator.create_app_vm(AppVmRequest(role="work"))
        orchestrator.create_app_vm(AppVmRequest(role="work"))
        orchestrator.provision(_request(template_disk, role="work-app"))
        fake_adapter.running.discard("work-app-2")

        vms = orchestrator.list_role_vms("work")

        assert [vm.name for vm in vms] == ["work-gw", "work-app-1", "work-app-2"]
        assert vms[0].kind is VmKind.GATEWAY
        assert vms[0].number is None
        assert vms[2].number == 2
        assert [vm.state for vm in vms] == [DomainState.RUNNING, DomainState.RUNNING, DomainState.SHUT_OFF]

    def test_start_and_stop(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk))

        orchestrator.stop_vm("work-gw")
        assert fake_adapter.domain_state("work-gw") is DomainState.SHUT_OFF
        orchestrator.stop_vm("work-gw")
        orchestrator.start_vm("work-gw")
        orchestrator.start_vm("work-gw")

        assert [name for name in fake_adapter.call_names() if name.endswith("_domain")][-2:] == [
            "shutdown_domain",
            "start_domain",
        ]
        assert fake_adapter.call_names().count("shutdown_domain") == 1
        assert fake_adapter.call_names().count("start_domain") == 1

    def test_foreign_domain_rejected(self, orchestrator, fake_adapter):
        fake_adapter.domains["win11"] = object()
        with pytest.raises(ValidationError, match="not a gateway or app VM"):
            orchestrator.start_vm("win11")
        assert "start_domain" not in fake_adapter.call_names()

    def test_missing_domain(self, orchestrator):
        with pytest.raises(ValidationError, match="does not exist"):
            orchestrator.stop_vm("work-gw")


class TestTeardown:
    def test_removes_everything(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk, app_template=str(template_disk)))
        orchestrator.create_app_vm(AppVmRequest(role="work"))
        user_file = _role_dir() / "wg_work.conf"
        user_file.write_text("[Interface]\n")

        result = orchestrator.teardown("work")

        assert result.failures == []
        destroyed = [arg for name, arg in fake_adapter.calls if name == "destroy_domain"]
        assert destroyed == ["work-app-1", "work-gw"]
        assert fake_adapter.call_names()[-1] == "destroy_network"
        assert fake_adapter.domains == {}
        assert fake_adapter.disks == set()
        assert "work-inet" not in fake_adapter.networks
        assert "lan-net" in fake_adapter.networks
        assert not (_role_dir() / "proxy.conf").exists()
        assert not (_role_dir() / "role-meta.json").exists()
        assert user_file.exists()

    def test_purge_removes_role_dir(self, orchestrator, template_disk):
        orchestrator.provision(_request(template_disk))
        (_role_dir() / "wg_work.conf").write_text("[Interface]\n")

        result = orchestrator.teardown("work", purge=True)

        assert result.failures == []
        assert not _role_dir().exists()

    def test_continues_past_failures(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk))
        fake_adapter.destroy_warnings["destroy_domain"] = "Failed to undefine domain 'work-gw': busy"

        result = orchestrator.teardown("work")

        assert result.failures == ["domain work-gw: Failed to undefine domain 'work-gw': busy"]
        assert fake_adapter.disks == set()
        assert "work-inet" not in fake_adapter.networks

    def test_other_roles_untouched(self, orchestrator, fake_adapter, template_disk):
        orchestrator.provision(_request(template_disk))
        orchestrator.provision(_request(template_disk, role="work-app"))

        orchestrator.teardown("work")

        assert list(fake_adapter.domains) == ["work-app-gw"]
        assert "work-app-inet" in fake_adapter.networks

    def test_nothing_to_remove(self, orchestrator, fake_adapter):
        result = orchestrator.teardown("work")
        assert result.removed == []
        assert result.failures == []
        assert fake_adapter.calls == []
