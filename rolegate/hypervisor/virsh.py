"""Libvirt adapter driving virsh, virt-install and qemu-img.

Every operation is a blocking external process invoked with an argv list,
never through a shell, and bounded by settings.command_timeout. User
supplied values only ever appear as discrete arguments or XML-escaped text.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from xml.sax.saxutils import escape as xml_escape

from rolegate.config import settings
from rolegate.errors import ExternalCommandFailure, ResourceConflict, ValidationError
from rolegate.hypervisor.base import CommandResult, DomainSpec, HypervisorAdapter
from rolegate.hypervisor.cmd import run_cmd
from rolegate.schemas import DomainState

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("virsh", "virt-install", "qemu-img")

# Substrings libvirt uses when the target object is already gone
_ABSENT_MARKERS = (
    "not found",
    "no network with matching name",
    "no domain with matching name",
    "failed to get domain",
    "failed to get network",
    "is not active",
    "not running",
)


def _is_absent(result: CommandResult) -> bool:
    text = result.output.lower()
    return any(marker in text for marker in _ABSENT_MARKERS)


class VirshAdapter(HypervisorAdapter):
    """Hypervisor adapter for a local libvirt/QEMU host."""

    def __init__(self, uri: str | None = None, timeout: float | None = None):
        self._uri = uri or settings.libvirt_uri
        self._timeout = timeout

    def _run(self, cmd: list[str]) -> CommandResult:
        return run_cmd(cmd, timeout=self._timeout)

    def _virsh(self, *args: str) -> CommandResult:
        return self._run(["virsh", "-c", self._uri, *args])

    @staticmethod
    def _discard_partial(undo, target) -> None:
        """Best-effort removal of what a failed create step left behind."""
        warning = undo(target)
        if warning:
            logger.warning(f"Cleanup after failed create incomplete: {warning}")

    def check_prerequisites(self) -> list[str]:
        missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
        if missing:
            logger.warning(f"Missing host tools: {', '.join(missing)}")
        return missing

    # --- Networks ---

    def network_exists(self, name: str) -> bool:
        return self._virsh("net-info", name).success

    @staticmethod
    def _isolated_network_xml(name: str) -> str:
        # No <forward> element: guests on this network only reach each other
        # and the gateway.
        return (
            "<network>\n"
            f"  <name>{xml_escape(name)}</name>\n"
            "  <bridge stp='on' delay='0'/>\n"
            "</network>\n"
        )

    def define_and_start_isolated_network(self, name: str) -> None:
        """Define, autostart and start an isolated network.

        If a later sub-step fails or the process is interrupted (signal,
        KeyboardInterrupt), the definition made here is undone before the
        exception propagates, so the caller never owns a half-made network.
        """
        if self.network_exists(name):
            raise ResourceConflict(f"Network '{name}' already exists")

        fd, xml_path = tempfile.mkstemp(prefix=f"net-{name}-", suffix=".xml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(self._isolated_network_xml(name))

            define = None
            try:
                define = self._virsh("net-define", xml_path)
                define.check(f"Failed to define network '{name}'")
                self._virsh("net-autostart", name).check(f"Failed to set autostart for network '{name}'")
                self._virsh("net-start", name).check(f"Failed to start network '{name}'")
            except BaseException:
                # Nothing to undo only when net-define itself reported failure
                if define is None or define.success:
                    self._discard_partial(self.destroy_network, name)
                raise
        finally:
            try:
                os.unlink(xml_path)
            except OSError:
                pass

        logger.info(f"Created isolated network {name}")

    def destroy_network(self, name: str) -> str | None:
        destroy = self._virsh("net-destroy", name)
        if not destroy.success and not _is_absent(destroy):
            logger.warning(f"net-destroy {name} failed: {destroy.output}")
        undefine = self._virsh("net-undefine", name)
        if undefine.success or _is_absent(undefine):
            logger.info(f"Removed network {name}")
            return None
        return f"Failed to undefine network '{name}': {undefine.output}"

    # --- Disks ---

    def create_overlay_disk(self, template_path: Path, overlay_path: Path) -> None:
        template_path = Path(template_path)
        overlay_path = Path(overlay_path)
        if not template_path.is_file():
            raise ValidationError(f"Template disk does not exist: {template_path}")
        if overlay_path.exists():
            raise ResourceConflict(f"Overlay disk already exists: {overlay_path}")

        cmd = [
            "qemu-img", "create",
            "-f", "qcow2",
            "-F", "qcow2",
            "-b", str(template_path),
            str(overlay_path),
        ]
        try:
            self._run(cmd).check("Failed to create overlay disk")
        except BaseException:
            # The overlay did not exist above; whatever qemu-img left is ours
            self._discard_partial(self.delete_overlay_disk, overlay_path)
            raise
        logger.info(f"Created overlay disk: {overlay_path} (backing {template_path})")

    def delete_overlay_disk(self, path: Path) -> str | None:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return None
        except OSError as e:
            return f"Failed to delete overlay disk {path}: {e}"
        logger.info(f"Deleted overlay disk: {path}")
        return None

    # --- Domains ---

    def domain_exists(self, name: str) -> bool:
        return self._virsh("dominfo", name).success

    def build_virt_install_args(self, spec: DomainSpec) -> list[str]:
        """Assemble the virt-install argv for a gateway or app domain."""
        args = [
            "virt-install",
            "--connect", self._uri,
            "--name", spec.name,
            "--memory", str(spec.ram_mb),
            "--vcpus", str(spec.vcpus),
            "--import",
            "--disk", f"path={spec.disk_path},format=qcow2",
        ]
        for network in spec.networks:
            args.extend(["--network", f"network={network},model=virtio"])
        if spec.shared_dir is not None:
            args.extend([
                "--filesystem",
                f"source={spec.shared_dir},target={spec.shared_mount_tag},accessmode=mapped",
            ])
        args.extend(["--os-variant", spec.os_variant, "--noautoconsole"])
        return args

    def define_and_start_domain(self, spec: DomainSpec) -> None:
        # virt-install splits its options on commas
        for value in (str(spec.disk_path), str(spec.shared_dir or ""), *spec.networks):
            if "," in value:
                raise ValidationError(f"Value must not contain ',': {value!r}")
        if self.domain_exists(spec.name):
            raise ResourceConflict(f"Domain '{spec.name}' already exists")

        try:
            result = self._run(self.build_virt_install_args(spec))
            if not result.success:
                raise ExternalCommandFailure(
                    result.command,
                    result.returncode,
                    result.output,
                    f"Failed to create domain '{spec.name}'",
                )
        except BaseException:
            # virt-install may leave a defined domain behind on late failures
            # or when it is killed mid-run
            if self.domain_exists(spec.name):
                self._discard_partial(self.destroy_domain, spec.name)
            raise
        logger.info(f"Defined and started domain {spec.name}")

    def destroy_domain(self, name: str) -> str | None:
        destroy = self._virsh("destroy", name)
        if not destroy.success and not _is_absent(destroy):
            logger.warning(f"virsh destroy {name} failed: {destroy.output}")
        undefine = self._virsh("undefine", name)
        if undefine.success or _is_absent(undefine):
            logger.info(f"Removed domain {name}")
            return None
        return f"Failed to undefine domain '{name}': {undefine.output}"

    def list_domains(self) -> list[str]:
        result = self._virsh("list", "--all", "--name").check("Failed to list domains")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def domain_state(self, name: str) -> DomainState | None:
        result = self._virsh("domstate", name)
        if not result.success:
            return None
        return DomainState.from_virsh(result.stdout)

    def start_domain(self, name: str) -> None:
        self._virsh("start", name).check(f"Failed to start domain '{name}'")
        logger.info(f"Started domain {name}")

    def shutdown_domain(self, name: str) -> None:
        # Graceful: the guest's ACPI handler does the actual power-off
        self._virsh("shutdown", name).check(f"Failed to shut down domain '{name}'")
        logger.info(f"Requested shutdown of domain {name}")
