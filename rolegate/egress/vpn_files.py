"""Summaries of user-supplied WireGuard and OpenVPN files.

Used to show which endpoint a role's VPN file points at. Only the fields
needed for display are extracted; the files themselves are consumed by the
guest unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class WireGuardPeer:
    endpoint: str | None = None
    allowed_ips: str | None = None
    name: str | None = None  # From the preceding comment, else the endpoint host


@dataclass
class WireGuardSummary:
    interface_address: str | None = None
    interface_dns: str | None = None
    peers: list[WireGuardPeer] = field(default_factory=list)

    def display_name(self) -> str:
        if self.peers:
            peer = self.peers[0]
            if peer.name:
                return peer.name
            if peer.endpoint:
                return peer.endpoint
        return "WireGuard Config"


@dataclass
class OpenVpnRemote:
    host: str
    port: int | None = None
    protocol: str | None = None


@dataclass
class OpenVpnSummary:
    remotes: list[OpenVpnRemote] = field(default_factory=list)
    protocol: str | None = None
    dev_type: str | None = None

    def display_name(self) -> str:
        if self.remotes:
            remote = self.remotes[0]
            return f"{remote.host}:{remote.port}" if remote.port else remote.host
        return "OpenVPN Config"


def parse_wireguard(text: str) -> WireGuardSummary:
    summary = WireGuardSummary()
    peer: WireGuardPeer | None = None
    last_comment = ""

    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#"):
            last_comment = line.lstrip("#").strip()
            continue
        if not line:
            continue

        section = line.lower()
        if section in ("[interface]", "[peer]"):
            if peer is not None:
                summary.peers.append(peer)
                peer = None
            if section == "[peer]":
                peer = WireGuardPeer(name=last_comment or None)
            last_comment = ""
            continue

        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == "address":
            summary.interface_address = value
        elif key == "dns":
            summary.interface_dns = value
        elif key == "endpoint" and peer is not None:
            peer.endpoint = value
            if peer.name is None:
                peer.name = value.rsplit(":", 1)[0]
        elif key == "allowedips" and peer is not None:
            peer.allowed_ips = value

    if peer is not None:
        summary.peers.append(peer)
    return summary


def parse_openvpn(text: str) -> OpenVpnSummary:
    summary = OpenVpnSummary()
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        parts = line.split()
        directive = parts[0].lower()
        if directive == "remote" and len(parts) >= 2:
            remote = OpenVpnRemote(host=parts[1])
            if len(parts) >= 3 and parts[2].isdigit():
                remote.port = int(parts[2])
            if len(parts) >= 4:
                remote.protocol = parts[3]
            summary.remotes.append(remote)
        elif directive == "proto" and len(parts) >= 2:
            summary.protocol = parts[1]
        elif directive == "dev" and len(parts) >= 2:
            summary.dev_type = parts[1]
    return summary


def describe_vpn_file(path: Path) -> str | None:
    """Display name for a VPN file in a role directory, by extension."""
    path = Path(path)
    if not path.is_file():
        return None
    text = path.read_text(errors="replace")
    if path.suffix == ".conf":
        return parse_wireguard(text).display_name()
    if path.suffix == ".ovpn":
        return parse_openvpn(text).display_name()
    return None
