"""Egress compiler: (role, EgressSpec) -> proxy.conf + apply-proxy.sh.

The configuration document is a key=value file sourced by the guest's
apply script. Values are shell-quoted when they contain anything beyond
a conservative safe set; empty values are written bare (``KEY=``).
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rolegate.egress.apply_script import (
    APPLY_SCRIPT_FILENAME,
    CONFIG_FILENAME,
    SHARED_MOUNT_PREFIX,
    render_apply_script,
)
from rolegate.egress.vpn_files import describe_vpn_file
from rolegate.errors import FilesystemFailure
from rolegate.naming import validate_role_name
from rolegate.role_dir import commit_atomic, stage_atomic, stage_copy
from rolegate.schemas import (
    GatewayMode,
    OpenVpn,
    ProxyChain,
    ProxyKind,
    WireGuard,
    coerce_egress_spec,
)

logger = logging.getLogger(__name__)

_LEGACY_FAMILIES = {
    ProxyKind.SOCKS5: "SOCKS5",
    ProxyKind.HTTP: "HTTP",
}


def format_value(value: Any) -> str:
    """Format a document value; None and "" become an empty value."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    return shlex.quote(text) if text else ""


def _entry(key: str, value: Any = None) -> str:
    return f"{key}={format_value(value)}"


@dataclass
class CompiledEgress:
    """Rendered artifacts for one role."""
    role: str
    mode: GatewayMode
    config: str
    apply_script: str


class EgressCompiler:
    """Turns a declarative egress spec into guest runtime artifacts."""

    def render_config(self, role: str, spec: Any) -> str:
        role = validate_role_name(role)
        spec = coerce_egress_spec(spec)

        lines = [f"# Proxy config for role: {role}", _entry("GATEWAY_MODE", spec.mode)]
        if isinstance(spec, ProxyChain):
            lines.append(_entry("CHAIN_STRATEGY", spec.strategy.value))
            lines.append(_entry("PROXY_COUNT", len(spec.hops)))
        else:
            lines.append(_entry("CHAIN_STRATEGY"))
            lines.append(_entry("PROXY_COUNT", 0))
        lines.append("")

        lines.extend(self._proxy_chain_lines(spec))
        lines.append("")
        lines.extend(self._legacy_lines(spec))
        lines.append("")
        lines.append("# VPN / other modes")
        lines.extend(self._wireguard_lines(spec))
        lines.extend(self._openvpn_lines(spec))
        return "\n".join(lines) + "\n"

    def _proxy_chain_lines(self, spec) -> list[str]:
        if not isinstance(spec, ProxyChain):
            return []
        lines = ["# Proxy chain configuration"]
        for hop in spec.hops:
            prefix = f"PROXY_{hop.index}_"
            lines.extend([
                _entry(prefix + "TYPE", hop.kind.value),
                _entry(prefix + "HOST", hop.host),
                _entry(prefix + "PORT", hop.port),
                _entry(prefix + "USER", hop.username),
                _entry(prefix + "PASS", hop.password),
                _entry(prefix + "LABEL", hop.label),
            ])
        return lines

    def _legacy_lines(self, spec) -> list[str]:
        # Hop 1 mirrored into the single-proxy fields read by older guests
        first = spec.hops[0] if isinstance(spec, ProxyChain) else None
        lines = [
            "# First proxy (for compatibility)",
            _entry("ACTIVE_PROTOCOL", first.kind.value if first else None),
        ]
        for kind, family in _LEGACY_FAMILIES.items():
            active = first is not None and first.kind == kind
            lines.extend([
                _entry(f"{family}_HOST", first.host if active else None),
                _entry(f"{family}_PORT", first.port if active else None),
                _entry(f"{family}_USER", first.username if active else None),
                _entry(f"{family}_PASS", first.password if active else None),
            ])
        return lines

    def _wireguard_lines(self, spec) -> list[str]:
        if not isinstance(spec, WireGuard):
            return [_entry("WG_CONFIG_PATH"), _entry("WG_INTERFACE_NAME")]
        lines = [
            _entry("WG_CONFIG_PATH", guest_path(spec.config_file)),
            _entry("WG_INTERFACE_NAME", spec.interface_name),
        ]
        if spec.route_all is not None:
            lines.append(_entry("WG_ROUTE_ALL_TRAFFIC", spec.route_all))
        return lines

    def _openvpn_lines(self, spec) -> list[str]:
        if not isinstance(spec, OpenVpn):
            return [_entry("OPENVPN_CONFIG_PATH"), _entry("OPENVPN_AUTH_FILE")]
        lines = [
            _entry("OPENVPN_CONFIG_PATH", guest_path(spec.config_file)),
            _entry("OPENVPN_AUTH_FILE", guest_path(spec.auth_file) if spec.auth_file else None),
        ]
        if spec.route_all is not None:
            lines.append(_entry("OPENVPN_ROUTE_ALL_TRAFFIC", spec.route_all))
        return lines

    def render_apply_script(self, role: str) -> str:
        return render_apply_script(role)

    def compile(self, role: str, spec: Any) -> CompiledEgress:
        """Validate and render both artifacts without touching the filesystem."""
        spec = coerce_egress_spec(spec)
        return CompiledEgress(
            role=role,
            mode=GatewayMode(spec.mode),
            config=self.render_config(role, spec),
            apply_script=self.render_apply_script(role),
        )

    def write(self, role: str, spec: Any, role_dir: Path) -> list[Path]:
        """Compile and write both artifacts into *role_dir*.

        Everything is rendered (and therefore validated) before the
        directory is touched. Each file is staged next to its target and
        renamed into place, so the guest never sees a partial document. If
        the second rename fails, the first file is rolled back to its
        previous content (or removed if it is new).

        Returns:
            Paths of the files written, config document first.
        """
        compiled = self.compile(role, spec)
        role_dir = Path(role_dir)
        config_path = role_dir / CONFIG_FILENAME
        script_path = role_dir / APPLY_SCRIPT_FILENAME

        try:
            role_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemFailure(role_dir, f"Failed to create role directory ({e})") from e

        staged = []
        backups: dict[Path, Path] = {}
        committed: list[Path] = []
        try:
            staged.append((stage_atomic(config_path, compiled.config, mode=0o644), config_path))
            staged.append((stage_atomic(script_path, compiled.apply_script, mode=0o755), script_path))
            for _, target in staged:
                if target.is_file():
                    backups[target] = stage_copy(target, target)
            for tmp_path, target in staged:
                commit_atomic(tmp_path, target)
                committed.append(target)
        except FilesystemFailure:
            # A half-written pair is unusable by the guest: put the previous
            # pair back, or remove the new half if there was none
            self._restore(committed, backups)
            raise
        finally:
            for tmp_path in [tmp for tmp, _ in staged] + list(backups.values()):
                tmp_path.unlink(missing_ok=True)

        self._warn_missing_vpn_files(coerce_egress_spec(spec), role_dir)
        logger.info(f"Wrote {CONFIG_FILENAME} and {APPLY_SCRIPT_FILENAME} for role {role} ({compiled.mode.value})")
        return [config_path, script_path]

    @staticmethod
    def _restore(committed: list[Path], backups: dict[Path, Path]) -> None:
        for target in committed:
            backup = backups.get(target)
            try:
                if backup is None:
                    target.unlink(missing_ok=True)
                else:
                    commit_atomic(backup, target)
            except (OSError, FilesystemFailure) as e:
                logger.error(f"Could not restore {target} after a failed write: {e}")

    @staticmethod
    def _warn_missing_vpn_files(spec, role_dir: Path) -> None:
        names: list[str] = []
        if isinstance(spec, WireGuard):
            names.append(spec.config_file)
        elif isinstance(spec, OpenVpn):
            names.append(spec.config_file)
            if spec.auth_file:
                names.append(spec.auth_file)
        for name in names:
            path = role_dir / name
            if not path.is_file():
                logger.warning(f"{name} is referenced by the egress config but not present in {role_dir}")
                continue
            description = describe_vpn_file(path)
            if description:
                logger.info(f"{name}: endpoint {description}")


def guest_path(filename: str) -> str:
    """In-guest path of a file in the role directory."""
    return str(SHARED_MOUNT_PREFIX / filename)
