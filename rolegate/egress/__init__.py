"""Egress configuration compiler and guest-side artifacts."""

from rolegate.egress.apply_script import (
    APPLY_SCRIPT_FILENAME,
    CONFIG_FILENAME,
    SHARED_MOUNT_PREFIX,
    SHARED_MOUNT_TAG,
    render_apply_script,
)
from rolegate.egress.compiler import CompiledEgress, EgressCompiler, guest_path
from rolegate.egress.parser import hops_from_config, parse_config, spec_from_config

__all__ = [
    "APPLY_SCRIPT_FILENAME",
    "CONFIG_FILENAME",
    "SHARED_MOUNT_PREFIX",
    "SHARED_MOUNT_TAG",
    "CompiledEgress",
    "EgressCompiler",
    "guest_path",
    "hops_from_config",
    "parse_config",
    "render_apply_script",
    "spec_from_config",
]
