"""Provisioning request/response schemas.

These Pydantic models define the declarative egress description (a closed
tagged union keyed on ``mode``) and the data exchanged with callers of the
orchestrator, the CLI and the HTTP service.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from rolegate.errors import ValidationError

MAX_PROXY_HOPS = 8


class GatewayMode(str, Enum):
    """Egress path of a gateway VM, as written to GATEWAY_MODE."""
    PROXY_CHAIN = "PROXY_CHAIN"
    WIREGUARD = "WIREGUARD"
    OPENVPN = "OPENVPN"


class ProxyKind(str, Enum):
    """Protocol of a single proxy hop."""
    SOCKS5 = "SOCKS5"
    HTTP = "HTTP"


class ChainStrategy(str, Enum):
    """proxychains traversal strategy."""
    STRICT = "strict_chain"


def _reject_control_chars(value: str | None, field: str) -> str | None:
    if value is None:
        return None
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
        raise ValueError(f"{field} must not contain control characters")
    return value


def _validate_relative_filename(value: str, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{field} cannot be empty")
    _reject_control_chars(value, field)
    if "\\" in value:
        raise ValueError(f"{field} must be a POSIX relative path")
    path = PurePosixPath(value)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"{field} must be relative to the role directory: {value!r}")
    return str(path)


# --- Egress specification ---

class ProxyHop(BaseModel):
    """One hop of a proxy chain. Hops are traversed head to tail."""
    index: int | None = Field(default=None, ge=1, le=MAX_PROXY_HOPS)  # 1-based position
    kind: ProxyKind = ProxyKind.SOCKS5
    host: str
    port: int = Field(ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    label: str | None = None

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Host cannot be empty")
        if any(ch.isspace() for ch in value):
            raise ValueError("Host must not contain whitespace")
        return _reject_control_chars(value, "host")

    @field_validator("username", "password", "label")
    @classmethod
    def _check_text(cls, value: str | None, info) -> str | None:
        # Blank optional fields mean "not set"
        if value == "":
            return None
        return _reject_control_chars(value, info.field_name)


class ProxyChain(BaseModel):
    mode: Literal["PROXY_CHAIN"] = "PROXY_CHAIN"
    strategy: ChainStrategy = ChainStrategy.STRICT
    hops: list[ProxyHop]

    @field_validator("hops")
    @classmethod
    def _check_hop_count(cls, hops: list[ProxyHop]) -> list[ProxyHop]:
        if not hops:
            raise ValueError("Proxy chain requires at least one hop")
        if len(hops) > MAX_PROXY_HOPS:
            raise ValueError(f"Maximum {MAX_PROXY_HOPS} proxy hops allowed (got {len(hops)})")
        return hops

    @model_validator(mode="after")
    def _assign_positions(self) -> "ProxyChain":
        for position, hop in enumerate(self.hops, start=1):
            if hop.index is None:
                hop.index = position
            elif hop.index != position:
                raise ValueError(
                    f"Hop index {hop.index} does not match its position {position} in the chain"
                )
        return self


class WireGuard(BaseModel):
    mode: Literal["WIREGUARD"] = "WIREGUARD"
    config_file: str
    interface_name: str = Field(default="wg0", pattern=r"^[A-Za-z0-9_.-]{1,15}$")
    route_all: bool | None = None  # None leaves the guest default in effect

    @field_validator("config_file")
    @classmethod
    def _check_config_file(cls, value: str) -> str:
        return _validate_relative_filename(value, "config_file")


class OpenVpn(BaseModel):
    mode: Literal["OPENVPN"] = "OPENVPN"
    config_file: str
    auth_file: str | None = None
    route_all: bool | None = None

    @field_validator("config_file")
    @classmethod
    def _check_config_file(cls, value: str) -> str:
        return _validate_relative_filename(value, "config_file")

    @field_validator("auth_file")
    @classmethod
    def _check_auth_file(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return _validate_relative_filename(value, "auth_file")


EgressSpec = Annotated[Union[ProxyChain, WireGuard, OpenVpn], Field(discriminator="mode")]

_egress_adapter: TypeAdapter = TypeAdapter(EgressSpec)


def _format_pydantic_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def coerce_egress_spec(spec: Any) -> ProxyChain | WireGuard | OpenVpn:
    """Validate an egress spec given as a model or a mapping.

    Models are dumped and validated again, so a spec assembled with
    ``model_construct`` or mutated after construction cannot bypass the
    invariants. Raises ``ValidationError``.
    """
    if isinstance(spec, BaseModel):
        spec = spec.model_dump(mode="json")
    try:
        return _egress_adapter.validate_python(spec)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid egress spec: {_format_pydantic_error(e)}") from e


# --- Provisioning ---

class ProvisionRequest(BaseModel):
    """Caller -> Orchestrator: materialize a role end to end."""
    role: str  # Validated by the orchestrator, never normalized
    egress: EgressSpec
    template: str  # Template id from the registry, or a qcow2 path
    upstream_network: str | None = None  # Defaults to settings.lan_net
    ram_mb: int | None = Field(default=None, ge=128)
    vcpus: int | None = Field(default=None, ge=1)
    os_variant: str | None = None
    # Host files (e.g. VPN configs) copied into the role directory before compiling
    import_files: list[str] = Field(default_factory=list)
    # Default template for the role's app VMs, remembered in role-meta.json
    app_template: str | None = None


class ProvisionResult(BaseModel):
    """Orchestrator -> Caller: committed role."""
    role: str
    network: str
    domain: str
    disk_path: str
    role_dir: str
    network_reused: bool = False
    files: list[str] = Field(default_factory=list)
    state: str = "committed"


class RoleRuntimeState(BaseModel):
    """Live view of a role's resources, queried on demand."""
    role: str
    network: str
    domain: str
    disk_path: str
    network_exists: bool
    disk_exists: bool
    domain_exists: bool
    role_dir_exists: bool = False
    stale_ledger: bool = False  # A crashed run left resources to roll back

    @property
    def provisioned(self) -> bool:
        return self.network_exists and self.disk_exists and self.domain_exists


class AppVmRequest(BaseModel):
    """Caller -> Orchestrator: add an app VM behind a role's gateway."""
    role: str
    template: str | None = None  # Falls back to the role's app_template
    ram_mb: int | None = Field(default=None, ge=256)
    vcpus: int | None = Field(default=None, ge=1)
    os_variant: str | None = None


class AppVmResult(BaseModel):
    role: str
    domain: str
    number: int
    disk_path: str
    network: str
    state: str = "committed"


class DomainState(str, Enum):
    """Domain state as reported by `virsh domstate`."""
    RUNNING = "running"
    PAUSED = "paused"
    SHUT_OFF = "shut off"
    UNKNOWN = "unknown"

    @classmethod
    def from_virsh(cls, text: str) -> "DomainState":
        value = text.strip().lower()
        if value == "shutoff":
            value = "shut off"
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class VmKind(str, Enum):
    GATEWAY = "gateway"
    APP = "app"


class VmInfo(BaseModel):
    """A domain that belongs to a role."""
    name: str
    role: str
    kind: VmKind
    number: int | None = None  # App VMs only
    state: DomainState = DomainState.UNKNOWN


class TeardownResult(BaseModel):
    role: str
    removed: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class RenderResponse(BaseModel):
    """Generated artifacts for a role, without side effects."""
    role: str
    config: str
    apply_script: str


class RollbackResponse(BaseModel):
    role: str
    undone: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class ProbeRequest(BaseModel):
    host: str
    port: int = Field(ge=1, le=65535)
    timeout: float | None = Field(default=None, gt=0)


class ProbeResult(BaseModel):
    host: str
    port: int
    reachable: bool
    error: str | None = None


# --- Persistent metadata ---

class RoleMeta(BaseModel):
    """Per-role metadata stored as role-meta.json in the role directory."""
    version: int = 1
    role_name: str
    gateway_mode: GatewayMode
    template_path: str
    os_variant: str
    ram_mb: int
    vcpus: int
    upstream_network: str
    app_template: str | None = None
    app_vm_count: int = 0  # Highest app VM number handed out so far
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GatewayTemplate(BaseModel):
    """A qcow2 template a gateway overlay can be backed by."""
    id: str
    label: str = ""
    path: str
    os_variant: str = "debian12"
    default_ram_mb: int = Field(default=1024, ge=128)
    notes: str | None = None
