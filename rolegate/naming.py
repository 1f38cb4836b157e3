"""Centralized naming conventions for role resources.

All components that construct network, domain or disk names MUST use these
functions. External inspection tooling relies on the exact formats.
"""

import re

from rolegate.errors import ValidationError

ROLE_NAME_PATTERN = re.compile(r"^[a-z0-9_-]+$")
ROLE_NAME_MAX_LEN = 32

# Suffixes of the derived libvirt resources
NETWORK_SUFFIX = "-inet"
DOMAIN_SUFFIX = "-gw"
DISK_EXTENSION = ".qcow2"
APP_DOMAIN_INFIX = "-app-"
APP_DISK_SUFFIX = "-overlay.qcow2"

_APP_DOMAIN_PATTERN = re.compile(r"^(?P<role>[a-z0-9_-]+)-app-(?P<number>[1-9][0-9]*)$")


def validate_role_name(name: str) -> str:
    """Validate a role name and return it unchanged.

    Invalid names are rejected, never rewritten.
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Role name cannot be empty")
    if not ROLE_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid role name {name!r}: use only lowercase letters, numbers, "
            "underscores, and hyphens"
        )
    if len(name) > ROLE_NAME_MAX_LEN:
        raise ValidationError(f"Role name must be {ROLE_NAME_MAX_LEN} characters or less")
    return name


def role_network_name(role: str) -> str:
    """Private per-role network: ``<role>-inet``."""
    return f"{validate_role_name(role)}{NETWORK_SUFFIX}"


def gateway_domain_name(role: str) -> str:
    """Gateway VM domain: ``<role>-gw``."""
    return f"{validate_role_name(role)}{DOMAIN_SUFFIX}"


def overlay_disk_filename(role: str) -> str:
    """Overlay disk file: ``<domain>.qcow2``."""
    return f"{gateway_domain_name(role)}{DISK_EXTENSION}"


def app_domain_name(role: str, number: int) -> str:
    """App VM domain: ``<role>-app-<n>``, numbered from 1."""
    if number < 1:
        raise ValidationError(f"App VM number must be positive (got {number})")
    return f"{validate_role_name(role)}{APP_DOMAIN_INFIX}{number}"


def app_disk_filename(role: str, number: int) -> str:
    """App VM overlay file: ``<role>-app-<n>-overlay.qcow2``."""
    return f"{app_domain_name(role, number)}{APP_DISK_SUFFIX}"


def parse_domain_name(domain_name: str) -> tuple[str, int | None] | None:
    """Recover (role, app number) from a domain name this tool would create.

    Gateways yield ``(role, None)``. Returns None for foreign domains.
    """
    if domain_name.endswith(DOMAIN_SUFFIX):
        role = domain_name[: -len(DOMAIN_SUFFIX)]
        number = None
    else:
        match = _APP_DOMAIN_PATTERN.match(domain_name)
        if match is None:
            return None
        role, number = match.group("role"), int(match.group("number"))
    if not role or len(role) > ROLE_NAME_MAX_LEN or not ROLE_NAME_PATTERN.match(role):
        return None
    return role, number
