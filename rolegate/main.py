"""Rolegate HTTP service.

A thin FastAPI surface over the provisioning orchestrator:
- Provision roles, add app VMs, tear roles down and roll back interrupted runs
- Start and stop a role's VMs
- Preview generated configuration without side effects
- Report live role state and reachability of proxy endpoints
- Expose Prometheus metrics
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query, Response

from rolegate.config import settings
from rolegate.errors import (
    ExternalCommandFailure,
    ProvisioningCancelled,
    ResourceConflict,
    RoleGateError,
    ValidationError,
)
from rolegate.logging_config import setup_logging
from rolegate.metrics import get_metrics
from rolegate.probe import check_tcp
from rolegate.registry import get_orchestrator
from rolegate.schemas import (
    AppVmRequest,
    AppVmResult,
    EgressSpec,
    GatewayTemplate,
    ProbeRequest,
    ProbeResult,
    ProvisionRequest,
    ProvisionResult,
    RenderResponse,
    RoleRuntimeState,
    RollbackResponse,
    TeardownResult,
    VmInfo,
)
from rolegate.version import __version__, get_commit

setup_logging()
logger = logging.getLogger(__name__)


def _http_error(e: RoleGateError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, (ResourceConflict, ProvisioningCancelled)):
        status = 409
    elif isinstance(e, ExternalCommandFailure):
        status = 502
    else:
        # FilesystemFailure and anything unexpected
        status = 500
    detail = {"error": type(e).__name__, "message": e.message}
    if e.rollback_failures:
        detail["rollback_failures"] = [str(f) for f in e.rollback_failures]
    return HTTPException(status_code=status, detail=detail)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Report missing host tools at startup; they only fail requests later."""
    logger.info(f"Rolegate {__version__} starting (libvirt {settings.libvirt_uri})")
    missing = await asyncio.to_thread(get_orchestrator().adapter.check_prerequisites)
    if missing:
        logger.warning(f"Missing host prerequisites: {', '.join(missing)}")
    yield
    logger.info("Rolegate shutting down")


app = FastAPI(
    title="Rolegate",
    version=__version__,
    lifespan=lifespan,
)


# --- Health Endpoints ---

@app.get("/health")
def health():
    """Basic health check."""
    return {
        "status": "ok",
        "commit": get_commit(),
        "active_roles": get_orchestrator().active_roles(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/info")
def info():
    """Return service version and effective configuration."""
    return {
        "version": __version__,
        "commit": get_commit(),
        "libvirt_uri": settings.libvirt_uri,
        "lan_net": settings.lan_net,
        "cfg_root": str(settings.cfg_root),
        "images_dir": str(settings.images_dir),
    }


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


# --- Role Endpoints ---

@app.post("/roles", response_model=ProvisionResult)
async def provision_role(request: ProvisionRequest) -> ProvisionResult:
    """Provision a role end to end.

    Only one run per role may be in flight; a second request for the same
    role is rejected with 409 rather than queued.
    """
    logger.info(f"Provision request: role={request.role}, mode={request.egress.mode}")
    try:
        return await asyncio.to_thread(get_orchestrator().provision, request)
    except RoleGateError as e:
        raise _http_error(e) from e


@app.get("/roles")
async def list_roles():
    """List roles that have a configuration directory."""
    orchestrator = get_orchestrator()
    roles = await asyncio.to_thread(orchestrator.role_dirs.list_roles)
    return {"roles": roles}


@app.delete("/roles/{role}", response_model=TeardownResult)
async def teardown_role(role: str, purge: bool = Query(default=False)) -> TeardownResult:
    """Delete a role's VMs, disks and network; ``purge`` also drops its directory."""
    try:
        return await asyncio.to_thread(get_orchestrator().teardown, role, purge)
    except RoleGateError as e:
        raise _http_error(e) from e


@app.get("/roles/{role}/status", response_model=RoleRuntimeState)
async def role_status(role: str) -> RoleRuntimeState:
    """Live state of a role's network, disk and domain."""
    try:
        return await asyncio.to_thread(get_orchestrator().runtime_state, role)
    except RoleGateError as e:
        raise _http_error(e) from e


@app.post("/roles/{role}/render", response_model=RenderResponse)
def render_role(role: str, egress: EgressSpec) -> RenderResponse:
    """Preview the configuration document and apply script for a role."""
    try:
        compiled = get_orchestrator().render(role, egress)
    except RoleGateError as e:
        raise _http_error(e) from e
    return RenderResponse(role=role, config=compiled.config, apply_script=compiled.apply_script)


@app.post("/roles/{role}/rollback", response_model=RollbackResponse)
async def rollback_role(role: str) -> RollbackResponse:
    """Undo the resources left behind by interrupted runs of a role."""
    try:
        resources, failures = await asyncio.to_thread(get_orchestrator().rollback_stale, role)
    except RoleGateError as e:
        raise _http_error(e) from e
    failed = {f.resource for f in failures}
    return RollbackResponse(
        role=role,
        undone=[r.describe() for r in resources if r.describe() not in failed],
        failures=[str(f) for f in failures],
    )


@app.post("/roles/{role}/cancel")
def cancel_role(role: str):
    """Ask the role's in-flight run to stop at its next step and roll back."""
    return {"role": role, "cancelled": bool(get_orchestrator().cancel(role))}


# --- VM Endpoints ---

@app.post("/apps", response_model=AppVmResult)
async def create_app_vm(request: AppVmRequest) -> AppVmResult:
    """Add an app VM on a role's private network."""
    try:
        return await asyncio.to_thread(get_orchestrator().create_app_vm, request)
    except RoleGateError as e:
        raise _http_error(e) from e


@app.get("/roles/{role}/vms", response_model=list[VmInfo])
async def list_role_vms(role: str) -> list[VmInfo]:
    try:
        return await asyncio.to_thread(get_orchestrator().list_role_vms, role)
    except RoleGateError as e:
        raise _http_error(e) from e


@app.post("/vms/{name}/start")
async def start_vm(name: str):
    try:
        await asyncio.to_thread(get_orchestrator().start_vm, name)
    except RoleGateError as e:
        raise _http_error(e) from e
    return {"name": name, "action": "start"}


@app.post("/vms/{name}/stop")
async def stop_vm(name: str):
    """Request a graceful shutdown; the guest powers off on its own time."""
    try:
        await asyncio.to_thread(get_orchestrator().stop_vm, name)
    except RoleGateError as e:
        raise _http_error(e) from e
    return {"name": name, "action": "stop"}


@app.get("/templates", response_model=list[GatewayTemplate])
def list_templates() -> list[GatewayTemplate]:
    try:
        return get_orchestrator().templates.list()
    except RoleGateError as e:
        raise _http_error(e) from e


# --- Diagnostics ---

@app.post("/probe", response_model=ProbeResult)
async def probe(request: ProbeRequest) -> ProbeResult:
    """Check TCP reachability of a proxy or VPN endpoint from the host."""
    return await asyncio.to_thread(check_tcp, request.host, request.port, request.timeout)
