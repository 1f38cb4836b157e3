"""Parse a generated proxy.conf back into structured form."""

from __future__ import annotations

import re
import shlex
from pathlib import PurePosixPath

from rolegate.egress.apply_script import SHARED_MOUNT_PREFIX
from rolegate.errors import ValidationError
from rolegate.schemas import OpenVpn, ProxyChain, ProxyHop, WireGuard, coerce_egress_spec

_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


def parse_config(text: str) -> dict[str, str]:
    """Parse a key=value document. Comments and blank lines are skipped."""
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not _KEY_RE.match(key):
            raise ValidationError(f"Line {lineno}: not a KEY=value entry: {raw!r}")
        try:
            tokens = shlex.split(value) if value else []
        except ValueError as e:
            raise ValidationError(f"Line {lineno}: bad quoting for {key}: {e}") from e
        values[key] = tokens[0] if tokens else ""
    return values


def _optional(values: dict[str, str], key: str) -> str | None:
    return values.get(key) or None


def hops_from_config(values: dict[str, str]) -> list[ProxyHop]:
    """Recover the proxy chain, in order, from parsed document values."""
    count = values.get("PROXY_COUNT", "")
    if not count.isdigit():
        raise ValidationError(f"PROXY_COUNT is not a number: {count!r}")
    hops = []
    for i in range(1, int(count) + 1):
        prefix = f"PROXY_{i}_"
        try:
            hops.append(ProxyHop(
                index=i,
                kind=values.get(prefix + "TYPE", ""),
                host=values.get(prefix + "HOST", ""),
                port=values.get(prefix + "PORT", ""),
                username=_optional(values, prefix + "USER"),
                password=_optional(values, prefix + "PASS"),
                label=_optional(values, prefix + "LABEL"),
            ))
        except ValueError as e:
            raise ValidationError(f"Proxy {i} is incomplete or invalid: {e}") from e
    return hops


def _relative_to_mount(path: str) -> str:
    return str(PurePosixPath(path).relative_to(SHARED_MOUNT_PREFIX))


def _optional_bool(values: dict[str, str], key: str) -> bool | None:
    if key not in values:
        return None
    return values[key].lower() == "true"


def spec_from_config(text: str) -> ProxyChain | WireGuard | OpenVpn:
    """Rebuild the egress spec a document was compiled from."""
    values = parse_config(text)
    mode = values.get("GATEWAY_MODE", "")
    try:
        if mode == "PROXY_CHAIN":
            return ProxyChain(
                strategy=values.get("CHAIN_STRATEGY") or "strict_chain",
                hops=hops_from_config(values),
            )
        if mode == "WIREGUARD":
            return coerce_egress_spec({
                "mode": mode,
                "config_file": _relative_to_mount(values.get("WG_CONFIG_PATH", "")),
                "interface_name": values.get("WG_INTERFACE_NAME") or "wg0",
                "route_all": _optional_bool(values, "WG_ROUTE_ALL_TRAFFIC"),
            })
        if mode == "OPENVPN":
            auth = _optional(values, "OPENVPN_AUTH_FILE")
            return coerce_egress_spec({
                "mode": mode,
                "config_file": _relative_to_mount(values.get("OPENVPN_CONFIG_PATH", "")),
                "auth_file": _relative_to_mount(auth) if auth else None,
                "route_all": _optional_bool(values, "OPENVPN_ROUTE_ALL_TRAFFIC"),
            })
    except ValueError as e:
        if isinstance(e, ValidationError):
            raise
        raise ValidationError(f"Invalid {mode} document: {e}") from e
    raise ValidationError(f"Unknown GATEWAY_MODE: {mode!r}")
