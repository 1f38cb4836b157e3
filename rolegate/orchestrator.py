"""Provisioning orchestrator.

Materializes a role end to end: private network, overlay disk, generated
egress configuration, gateway domain. App VMs are added behind the gateway
on the role network the same way. The control plane has no transactions,
so every resource a run creates is claimed in an ownership ledger the
moment it exists, and any failure, cancellation or signal before commit
undoes exactly those resources in reverse order.
"""

from __future__ import annotations

import logging
import re
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from rolegate.config import settings
from rolegate.egress import (
    APPLY_SCRIPT_FILENAME,
    CONFIG_FILENAME,
    SHARED_MOUNT_TAG,
    CompiledEgress,
    EgressCompiler,
)
from rolegate.errors import (
    ExternalCommandFailure,
    ProvisioningCancelled,
    ResourceConflict,
    RoleGateError,
    RollbackPartialFailure,
    ValidationError,
)
from rolegate.hypervisor.base import DomainSpec, HypervisorAdapter
from rolegate.ledger import (
    OwnershipLedger,
    ProvisionedResource,
    ResourceKind,
    ledger_path,
    role_ledger_paths,
)
from rolegate.metrics import provision_duration, provision_failures, rollback_step_failures
from rolegate.naming import (
    APP_DISK_SUFFIX,
    APP_DOMAIN_INFIX,
    app_disk_filename,
    app_domain_name,
    gateway_domain_name,
    overlay_disk_filename,
    parse_domain_name,
    role_network_name,
    validate_role_name,
)
from rolegate.role_dir import ROLE_META_FILENAME, RoleDirectoryManager
from rolegate.schemas import (
    AppVmRequest,
    AppVmResult,
    DomainState,
    GatewayMode,
    GatewayTemplate,
    ProvisionRequest,
    ProvisionResult,
    RoleMeta,
    RoleRuntimeState,
    TeardownResult,
    VmInfo,
    VmKind,
    coerce_egress_spec,
)
from rolegate.state_machine import AppVmStateMachine, ProvisionState, ProvisionStateMachine
from rolegate.templates import TemplateRegistry

logger = logging.getLogger(__name__)

_CANCEL_SIGNALS = tuple(
    sig for sig in (
        getattr(signal, "SIGINT", None),
        getattr(signal, "SIGTERM", None),
        getattr(signal, "SIGHUP", None),
    )
    if sig is not None
)


@dataclass
class ProvisionPlan:
    """Validated, fully resolved inputs of one provisioning run."""
    role: str
    network: str
    domain: str
    disk_path: Path
    role_dir: Path
    upstream_network: str
    template: GatewayTemplate
    ram_mb: int
    vcpus: int
    os_variant: str
    egress: Any
    import_files: list[Path] = field(default_factory=list)
    app_template: str | None = None


@dataclass
class AppVmPlan:
    """Validated inputs of one app VM run."""
    role: str
    number: int
    network: str
    domain: str
    disk_path: Path
    template: GatewayTemplate
    ram_mb: int
    vcpus: int
    os_variant: str
    meta: RoleMeta | None = None


@dataclass
class ProvisionRun:
    """Cancellation and rollback state of one in-flight run."""
    role: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    rolling_back: bool = False

    def cancel(self) -> None:
        self.cancel_event.set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ProvisioningCancelled(f"Provisioning of {self.role} cancelled")


class ProvisioningOrchestrator:
    """Sequences hypervisor and compiler calls as one undoable unit.

    One orchestrator may serve many roles concurrently. Each run has its own
    cancellation state, and a role admits only one run (provision, app VM,
    rollback or teardown) at a time.
    """

    def __init__(
        self,
        adapter: HypervisorAdapter,
        role_dirs: RoleDirectoryManager | None = None,
        compiler: EgressCompiler | None = None,
        templates: TemplateRegistry | None = None,
        images_dir: Path | None = None,
        state_dir: Path | None = None,
    ):
        self.adapter = adapter
        self.role_dirs = role_dirs or RoleDirectoryManager()
        self.compiler = compiler or EgressCompiler()
        self._templates = templates
        self._images_dir = Path(images_dir) if images_dir is not None else None
        self._state_dir = Path(state_dir) if state_dir is not None else None
        self._runs: dict[str, ProvisionRun] = {}
        self._runs_lock = threading.Lock()

    @property
    def images_dir(self) -> Path:
        return self._images_dir if self._images_dir is not None else Path(settings.images_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir if self._state_dir is not None else Path(settings.state_dir)

    @property
    def templates(self) -> TemplateRegistry:
        if self._templates is None:
            self._templates = TemplateRegistry.load()
        return self._templates

    def overlay_path(self, role: str) -> Path:
        return self.images_dir / overlay_disk_filename(role)

    def app_overlay_path(self, role: str, number: int) -> Path:
        return self.images_dir / app_disk_filename(role, number)

    def ledger_file(self, role: str, run: str | None = None) -> Path:
        return ledger_path(self.state_dir, role, run)

    # --- Runs and cancellation ---

    @contextmanager
    def _exclusive_run(self, role: str) -> Iterator[ProvisionRun]:
        """Register a run for *role*; a role admits one run at a time."""
        run = ProvisionRun(role)
        with self._runs_lock:
            if role in self._runs:
                raise ResourceConflict(f"Role '{role}' already has a run in progress")
            self._runs[role] = run
        try:
            yield run
        finally:
            with self._runs_lock:
                self._runs.pop(role, None)

    def active_roles(self) -> list[str]:
        """Snapshot of roles with a run in flight."""
        with self._runs_lock:
            return sorted(self._runs)

    def cancel(self, role: str | None = None) -> list[str]:
        """Request abort at the next step boundary.

        Args:
            role: Cancel only this role's run. None cancels every run in
                flight (the CLI has at most one).

        Returns:
            Roles whose runs were asked to stop. A request for a role with
            no run in flight is dropped rather than carried to a later run.
        """
        with self._runs_lock:
            if role is None:
                runs = list(self._runs.values())
            else:
                runs = [self._runs[role]] if role in self._runs else []
        for run in runs:
            run.cancel()
            logger.info(f"Cancellation requested for {run.role}")
        return [run.role for run in runs]

    @contextmanager
    def _signals_as_cancellation(self, run: ProvisionRun) -> Iterator[None]:
        """Turn termination signals into ProvisioningCancelled for this run.

        Signal handlers can only be installed from the main thread; runs in
        worker threads rely on cancel() instead.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _handler(signum, frame):
            name = signal.Signals(signum).name
            if run.rolling_back:
                logger.warning(f"Ignoring {name} while rollback is in progress")
                return
            raise ProvisioningCancelled(f"Provisioning interrupted by {name}")

        previous = {}
        for sig in _CANCEL_SIGNALS:
            try:
                previous[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError):
                continue
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    @contextmanager
    def _undo_on_failure(
        self,
        run: ProvisionRun,
        machine: ProvisionStateMachine,
        ledger: OwnershipLedger,
        started: float,
    ) -> Iterator[None]:
        """Commit the ledger if the block completes, otherwise roll it back."""
        with self._signals_as_cancellation(run):
            try:
                yield
                ledger.discard()
            except BaseException as e:
                failed_state = machine.state
                machine.advance(ProvisionState.ABORTING)
                logger.error(f"Run for {run.role} failed at {failed_state.value}: {e}")
                failures = self.rollback(ledger, run)
                machine.advance(ProvisionState.ROLLED_BACK)
                if isinstance(e, RoleGateError):
                    e.rollback_failures.extend(failures)
                provision_failures.labels(state=failed_state.value, error=type(e).__name__).inc()
                provision_duration.labels(outcome="rolled_back").observe(time.monotonic() - started)
                raise

    @staticmethod
    def _reject(machine: ProvisionStateMachine, role: str, e: RoleGateError) -> None:
        machine.advance(ProvisionState.ABORTING)
        machine.advance(ProvisionState.ROLLED_BACK)
        provision_failures.labels(state=ProvisionState.VALIDATING.value, error=type(e).__name__).inc()
        logger.warning(f"Run for {role!r} rejected: {e}")

    # --- Validation (no side effects) ---

    def _resolve_template(self, ref: str) -> GatewayTemplate:
        template = self.templates.resolve(ref)
        if not Path(template.path).is_file():
            raise ValidationError(f"Template disk does not exist: {template.path}")
        return template

    def _check_no_unfinished_run(self, role: str) -> None:
        if role_ledger_paths(self.state_dir, role):
            raise ResourceConflict(
                f"Role '{role}' has an unfinished run; roll it back before provisioning again"
            )

    def validate(self, request: ProvisionRequest) -> ProvisionPlan:
        """Check every precondition and resolve defaults.

        Raises ValidationError or ResourceConflict before anything is
        created.
        """
        role = validate_role_name(request.role)
        egress = coerce_egress_spec(request.egress)
        network = role_network_name(role)
        domain = gateway_domain_name(role)
        disk_path = self.overlay_path(role)

        template = self._resolve_template(request.template)

        upstream = request.upstream_network or settings.lan_net
        if upstream == network:
            raise ValidationError("Upstream network must differ from the role network")
        if not self.adapter.network_exists(upstream):
            raise ValidationError(
                f"Upstream network '{upstream}' does not exist in libvirt"
            )

        self._check_no_unfinished_run(role)
        if self.adapter.domain_exists(domain):
            raise ResourceConflict(f"Domain '{domain}' already exists")
        if self.adapter.disk_exists(disk_path):
            raise ResourceConflict(f"Overlay disk already exists: {disk_path}")

        import_files = [Path(p) for p in request.import_files]
        for source in import_files:
            self.role_dirs.check_import(role, source)

        return ProvisionPlan(
            role=role,
            network=network,
            domain=domain,
            disk_path=disk_path,
            role_dir=self.role_dirs.role_dir(role),
            upstream_network=upstream,
            template=template,
            ram_mb=request.ram_mb or max(template.default_ram_mb, settings.gateway_ram_mb),
            vcpus=request.vcpus or settings.gateway_vcpus,
            os_variant=request.os_variant or template.os_variant,
            egress=egress,
            import_files=import_files,
            app_template=request.app_template,
        )

    # --- Gateway provisioning ---

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        """Provision a role, or leave no trace of the attempt.

        Returns:
            ProvisionResult once the run is committed.

        Raises:
            ValidationError / ResourceConflict: before any side effect.
            ExternalCommandFailure / FilesystemFailure / ProvisioningCancelled:
                after a full rollback; undo problems are attached as
                ``rollback_failures``.
        """
        machine = ProvisionStateMachine()
        started = time.monotonic()

        with self._exclusive_run(request.role) as run:
            try:
                plan = self.validate(request)
            except RoleGateError as e:
                self._reject(machine, request.role, e)
                raise

            logger.info(f"Provisioning role {plan.role} ({plan.egress.mode}) from {plan.template.path}")
            ledger = OwnershipLedger(plan.role, self.ledger_file(plan.role))

            with self._undo_on_failure(run, machine, ledger, started):
                run.check_cancelled()
                network_reused = self._ensure_network(plan, ledger)
                machine.advance(ProvisionState.NETWORK_READY)

                run.check_cancelled()
                self._create_disk(Path(plan.template.path), plan.disk_path, ledger)
                machine.advance(ProvisionState.DISK_READY)

                run.check_cancelled()
                written = self._write_config(plan, ledger)
                machine.advance(ProvisionState.CONFIG_WRITTEN)

                run.check_cancelled()
                self._create_domain(self._gateway_domain_spec(plan), plan.network, ledger)
                machine.advance(ProvisionState.DOMAIN_READY)

                written.extend(self._save_meta(plan, ledger))
                machine.advance(ProvisionState.COMMITTED)

        provision_duration.labels(outcome="committed").observe(time.monotonic() - started)
        logger.info(f"Role {plan.role} committed (network {'reused' if network_reused else 'created'})")
        return ProvisionResult(
            role=plan.role,
            network=plan.network,
            domain=plan.domain,
            disk_path=str(plan.disk_path),
            role_dir=str(plan.role_dir),
            network_reused=network_reused,
            files=[str(p) for p in written],
            state=machine.state.value,
        )

    def _ensure_network(self, plan: ProvisionPlan, ledger: OwnershipLedger) -> bool:
        """Reuse the role network if present; otherwise create and claim it.

        Returns:
            True if an existing network was reused.
        """
        if self.adapter.network_exists(plan.network):
            logger.info(f"Reusing existing network {plan.network}")
            return True
        self.adapter.define_and_start_isolated_network(plan.network)
        ledger.record(ProvisionedResource(ResourceKind.NETWORK, plan.network))
        return False

    def _create_disk(self, template_path: Path, disk_path: Path, ledger: OwnershipLedger) -> None:
        self.adapter.create_overlay_disk(template_path, disk_path)
        ledger.record(ProvisionedResource(ResourceKind.DISK, str(disk_path)))

    def _write_config(self, plan: ProvisionPlan, ledger: OwnershipLedger) -> list[Path]:
        role_dir, _ = self.role_dirs.ensure_role_dir(plan.role)
        written: list[Path] = []
        for source in plan.import_files:
            dest = self.role_dirs.import_file(plan.role, source)
            if dest is not None:
                ledger.add_files(str(role_dir), [dest])
                written.append(dest)
        files = self.compiler.write(plan.role, plan.egress, role_dir)
        ledger.add_files(str(role_dir), files)
        written.extend(files)
        return written

    @staticmethod
    def _gateway_domain_spec(plan: ProvisionPlan) -> DomainSpec:
        return DomainSpec(
            name=plan.domain,
            ram_mb=plan.ram_mb,
            vcpus=plan.vcpus,
            disk_path=plan.disk_path,
            networks=[plan.upstream_network, plan.network],
            shared_dir=plan.role_dir,
            os_variant=plan.os_variant,
            shared_mount_tag=SHARED_MOUNT_TAG,
        )

    def _create_domain(self, spec: DomainSpec, network: str, ledger: OwnershipLedger) -> None:
        # External actors may have removed the network since it was checked
        if not self.adapter.network_exists(network):
            raise ExternalCommandFailure(
                ["virsh", "net-info", network],
                None,
                "",
                f"Network '{network}' disappeared before the domain was defined",
            )
        self.adapter.define_and_start_domain(spec)
        ledger.record(ProvisionedResource(ResourceKind.DOMAIN, spec.name))

    def _save_meta(self, plan: ProvisionPlan, ledger: OwnershipLedger) -> list[Path]:
        meta = RoleMeta(
            role_name=plan.role,
            gateway_mode=GatewayMode(plan.egress.mode),
            template_path=str(plan.template.path),
            os_variant=plan.os_variant,
            ram_mb=plan.ram_mb,
            vcpus=plan.vcpus,
            upstream_network=plan.upstream_network,
            app_template=plan.app_template,
        )
        try:
            path = self.role_dirs.save_meta(meta)
        except RoleGateError as e:
            # The gateway is up; missing metadata is not worth tearing it down
            logger.warning(f"Failed to save role metadata for {plan.role}: {e}")
            return []
        ledger.add_files(str(plan.role_dir), [path])
        return [path]

    # --- App VMs ---

    def _app_numbers(self, role: str, meta: RoleMeta | None = None) -> set[int]:
        """App VM numbers in use by domains, overlay disks or metadata."""
        numbers: set[int] = set()
        for name in self.adapter.list_domains():
            parsed = parse_domain_name(name)
            if parsed is not None and parsed[0] == role and parsed[1] is not None:
                numbers.add(parsed[1])
        pattern = re.compile(rf"^{re.escape(role + APP_DOMAIN_INFIX)}([1-9][0-9]*){re.escape(APP_DISK_SUFFIX)}$")
        if self.images_dir.is_dir():
            for path in self.images_dir.glob(f"{role}{APP_DOMAIN_INFIX}*{APP_DISK_SUFFIX}"):
                match = pattern.match(path.name)
                if match:
                    numbers.add(int(match.group(1)))
        if meta is not None:
            numbers.update(range(1, meta.app_vm_count + 1))
        return numbers

    def next_app_number(self, role: str, meta: RoleMeta | None = None) -> int:
        """Lowest number above every app VM the role has had."""
        number = max(self._app_numbers(role, meta), default=0) + 1
        while self.adapter.disk_exists(self.app_overlay_path(role, number)):
            number += 1
        return number

    def validate_app_vm(self, request: AppVmRequest) -> AppVmPlan:
        """Check app VM preconditions and resolve defaults. No side effects."""
        role = validate_role_name(request.role)
        network = role_network_name(role)
        if not self.adapter.network_exists(network):
            raise ValidationError(f"Role '{role}' has no network '{network}'; provision the role first")
        self._check_no_unfinished_run(role)

        meta = self.role_dirs.load_meta(role)
        ref = request.template or (meta.app_template if meta else None)
        if not ref:
            raise ValidationError(f"No app template given and none configured for role '{role}'")
        template = self._resolve_template(ref)

        number = self.next_app_number(role, meta)
        return AppVmPlan(
            role=role,
            number=number,
            network=network,
            domain=app_domain_name(role, number),
            disk_path=self.app_overlay_path(role, number),
            template=template,
            ram_mb=request.ram_mb or max(template.default_ram_mb, settings.app_ram_mb),
            vcpus=request.vcpus or settings.app_vcpus,
            os_variant=request.os_variant or template.os_variant,
            meta=meta,
        )

    def create_app_vm(self, request: AppVmRequest) -> AppVmResult:
        """Add an app VM whose only NIC is on the role network.

        Same guarantees as provision(): everything the run created is undone
        if it does not commit.
        """
        machine = AppVmStateMachine()
        started = time.monotonic()

        with self._exclusive_run(request.role) as run:
            try:
                plan = self.validate_app_vm(request)
            except RoleGateError as e:
                self._reject(machine, request.role, e)
                raise

            logger.info(f"Creating app VM {plan.domain} from {plan.template.path}")
            ledger = OwnershipLedger(plan.role, self.ledger_file(plan.role, f"app-{plan.number}"))
            machine.advance(ProvisionState.NETWORK_READY)

            with self._undo_on_failure(run, machine, ledger, started):
                run.check_cancelled()
                self._create_disk(Path(plan.template.path), plan.disk_path, ledger)
                machine.advance(ProvisionState.DISK_READY)

                run.check_cancelled()
                spec = DomainSpec(
                    name=plan.domain,
                    ram_mb=plan.ram_mb,
                    vcpus=plan.vcpus,
                    disk_path=plan.disk_path,
                    networks=[plan.network],
                    os_variant=plan.os_variant,
                )
                self._create_domain(spec, plan.network, ledger)
                machine.advance(ProvisionState.DOMAIN_READY)

                self._record_app_number(plan)
                machine.advance(ProvisionState.COMMITTED)

        provision_duration.labels(outcome="committed").observe(time.monotonic() - started)
        logger.info(f"App VM {plan.domain} committed")
        return AppVmResult(
            role=plan.role,
            domain=plan.domain,
            number=plan.number,
            disk_path=str(plan.disk_path),
            network=plan.network,
            state=machine.state.value,
        )

    def _record_app_number(self, plan: AppVmPlan) -> None:
        if plan.meta is None or plan.meta.app_vm_count >= plan.number:
            return
        plan.meta.app_vm_count = plan.number
        try:
            self.role_dirs.save_meta(plan.meta)
        except RoleGateError as e:
            logger.warning(f"Failed to update role metadata for {plan.role}: {e}")

    # --- Role VMs ---

    def list_role_vms(self, role: str) -> list[VmInfo]:
        """Gateway and app VMs of a role, gateway first, with live state."""
        role = validate_role_name(role)
        vms = []
        for name in self.adapter.list_domains():
            parsed = parse_domain_name(name)
            if parsed is None or parsed[0] != role:
                continue
            number = parsed[1]
            vms.append(VmInfo(
                name=name,
                role=role,
                kind=VmKind.GATEWAY if number is None else VmKind.APP,
                number=number,
                state=self.adapter.domain_state(name) or DomainState.UNKNOWN,
            ))
        return sorted(vms, key=lambda vm: (vm.kind != VmKind.GATEWAY, vm.number or 0))

    def _owned_domain(self, name: str) -> DomainState:
        if parse_domain_name(name) is None:
            raise ValidationError(f"'{name}' is not a gateway or app VM name")
        state = self.adapter.domain_state(name)
        if state is None:
            raise ValidationError(f"Domain '{name}' does not exist")
        return state

    def start_vm(self, name: str) -> None:
        if self._owned_domain(name) == DomainState.RUNNING:
            logger.info(f"Domain {name} is already running")
            return
        self.adapter.start_domain(name)

    def stop_vm(self, name: str) -> None:
        """Ask a VM to shut down gracefully."""
        if self._owned_domain(name) == DomainState.SHUT_OFF:
            logger.info(f"Domain {name} is already shut off")
            return
        self.adapter.shutdown_domain(name)

    # --- Teardown ---

    def teardown(self, role: str, purge: bool = False) -> TeardownResult:
        """Remove a committed role: app VMs, gateway, disks, network.

        Generated files (proxy.conf, apply-proxy.sh, role-meta.json) are
        removed from the role directory; user files stay unless *purge* is
        set, which deletes the directory. Every step is attempted even if
        earlier ones fail.
        """
        role = validate_role_name(role)
        result = TeardownResult(role=role)

        def attempt(description: str, undo: Callable[..., str | None], *args: Any) -> None:
            try:
                warning = undo(*args)
            except Exception as e:
                warning = f"{type(e).__name__}: {e}"
            if warning:
                logger.warning(f"Teardown of {description} incomplete: {warning}")
                result.failures.append(f"{description}: {warning}")
            else:
                result.removed.append(description)

        with self._exclusive_run(role):
            logger.info(f"Tearing down role {role}")
            meta = self.role_dirs.load_meta(role)
            numbers = sorted(self._app_numbers(role, meta), reverse=True)

            # App VMs hang off the role network, so they go before it
            for number in numbers:
                name = app_domain_name(role, number)
                if self.adapter.domain_exists(name):
                    attempt(f"domain {name}", self.adapter.destroy_domain, name)
            gateway = gateway_domain_name(role)
            if self.adapter.domain_exists(gateway):
                attempt(f"domain {gateway}", self.adapter.destroy_domain, gateway)

            disks = [self.app_overlay_path(role, n) for n in numbers] + [self.overlay_path(role)]
            for disk in disks:
                if self.adapter.disk_exists(disk):
                    attempt(f"disk {disk}", self.adapter.delete_overlay_disk, disk)

            network = role_network_name(role)
            if self.adapter.network_exists(network):
                attempt(f"network {network}", self.adapter.destroy_network, network)

            role_dir = self.role_dirs.role_dir(role)
            if purge:
                if role_dir.exists():
                    attempt(f"config_dir {role_dir}", self.role_dirs.remove_role_dir, role)
            else:
                generated = [
                    role_dir / name
                    for name in (CONFIG_FILENAME, APPLY_SCRIPT_FILENAME, ROLE_META_FILENAME)
                    if (role_dir / name).exists()
                ]
                if generated:
                    attempt(
                        f"config_dir {role_dir}",
                        lambda: "; ".join(self.role_dirs.remove_files(generated)) or None,
                    )

            if not result.failures:
                # Nothing left for an interrupted run's ledger to point at
                for path in role_ledger_paths(self.state_dir, role):
                    path.unlink(missing_ok=True)

        for failure in result.failures:
            rollback_step_failures.labels(kind=failure.split(" ", 1)[0]).inc()
        logger.info(f"Role {role} torn down ({len(result.removed)} removed, {len(result.failures)} failed)")
        return result

    # --- Rollback ---

    def rollback(self, ledger: OwnershipLedger, run: ProvisionRun | None = None) -> list[RollbackPartialFailure]:
        """Undo every claimed resource, newest first.

        Every step is attempted even if earlier ones fail. Resources whose
        undo failed stay in the ledger (and its file) for a later retry.
        """
        failures: list[RollbackPartialFailure] = []
        remaining: list[ProvisionedResource] = []
        if run is not None:
            run.rolling_back = True
        try:
            for resource in ledger.in_undo_order():
                try:
                    warning = self._undo(resource)
                except Exception as e:
                    warning = f"{type(e).__name__}: {e}"
                if warning:
                    logger.warning(f"Rollback of {resource.describe()} incomplete: {warning}")
                    rollback_step_failures.labels(kind=resource.kind.value).inc()
                    failures.append(RollbackPartialFailure(resource.describe(), warning))
                    remaining.insert(0, resource)
                else:
                    logger.info(f"Rolled back {resource.describe()}")
        finally:
            if run is not None:
                run.rolling_back = False
        ledger.retain(remaining)
        return failures

    def _undo(self, resource: ProvisionedResource) -> str | None:
        if resource.kind == ResourceKind.DOMAIN:
            return self.adapter.destroy_domain(resource.name)
        if resource.kind == ResourceKind.DISK:
            return self.adapter.delete_overlay_disk(Path(resource.name))
        if resource.kind == ResourceKind.CONFIG_DIR:
            warnings = self.role_dirs.remove_files(resource.files)
            return "; ".join(warnings) or None
        if resource.kind == ResourceKind.NETWORK:
            return self.adapter.destroy_network(resource.name)
        return f"Unknown resource kind {resource.kind}"

    def rollback_stale(self, role: str) -> tuple[list[ProvisionedResource], list[RollbackPartialFailure]]:
        """Roll back what interrupted runs of *role* left in their ledgers.

        Covers the gateway run and any app VM runs.

        Returns:
            Tuple of (resources found in the ledgers, undo failures)
        """
        role = validate_role_name(role)
        resources: list[ProvisionedResource] = []
        failures: list[RollbackPartialFailure] = []
        with self._exclusive_run(role):
            for path in role_ledger_paths(self.state_dir, role):
                ledger = OwnershipLedger.load(path)
                if ledger is None:
                    continue
                logger.info(f"Rolling back {len(ledger)} resources left by an interrupted run ({path.name})")
                resources.extend(ledger.resources)
                failures.extend(self.rollback(ledger))
        return resources, failures

    # --- Queries and reconfiguration ---

    def runtime_state(self, role: str) -> RoleRuntimeState:
        """Query the live state of a role's resources. Never cached."""
        role = validate_role_name(role)
        disk_path = self.overlay_path(role)
        return RoleRuntimeState(
            role=role,
            network=role_network_name(role),
            domain=gateway_domain_name(role),
            disk_path=str(disk_path),
            network_exists=self.adapter.network_exists(role_network_name(role)),
            disk_exists=self.adapter.disk_exists(disk_path),
            domain_exists=self.adapter.domain_exists(gateway_domain_name(role)),
            role_dir_exists=self.role_dirs.role_dir(role).is_dir(),
            stale_ledger=bool(role_ledger_paths(self.state_dir, role)),
        )

    def render(self, role: str, egress: Any) -> CompiledEgress:
        """Compile a role's artifacts without writing them."""
        return self.compiler.compile(validate_role_name(role), egress)

    def reconfigure(self, role: str, egress: Any, import_files: list[str] | None = None) -> list[Path]:
        """Replace an existing role's egress configuration.

        The whole document is regenerated from *egress*; nothing from the
        previous variant is carried over. The running gateway picks the new
        configuration up at its next boot.
        """
        role = validate_role_name(role)
        egress = coerce_egress_spec(egress)
        role_dir = self.role_dirs.role_dir(role)
        if not role_dir.is_dir():
            raise ValidationError(f"Role '{role}' has no configuration directory at {role_dir}")
        written = []
        with self._exclusive_run(role):
            for source in import_files or []:
                dest = self.role_dirs.import_file(role, Path(source))
                if dest is not None:
                    written.append(dest)
            written.extend(self.compiler.write(role, egress, role_dir))

            meta = self.role_dirs.load_meta(role)
            if meta is not None and meta.gateway_mode != GatewayMode(egress.mode):
                logger.info(f"Role {role} gateway mode {meta.gateway_mode.value} -> {egress.mode}")
                meta.gateway_mode = GatewayMode(egress.mode)
                self.role_dirs.save_meta(meta)
        return written
