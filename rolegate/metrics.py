"""Prometheus metrics for rolegate.

Exposes provisioning, hypervisor command and rollback metrics. The
/metrics endpoint serves these in Prometheus exposition format.
"""
from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

hypervisor_command_duration = Histogram(
    "rolegate_hypervisor_command_seconds",
    "Duration of hypervisor commands (virsh, virt-install, qemu-img)",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

provision_duration = Histogram(
    "rolegate_provision_seconds",
    "Duration of role provisioning runs",
    ["outcome"],
    buckets=(1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

provision_failures = Counter(
    "rolegate_provision_failures_total",
    "Provisioning runs that ended in rollback",
    ["state", "error"],
)

rollback_step_failures = Counter(
    "rolegate_rollback_step_failures_total",
    "Undo steps that could not be completed",
    ["kind"],
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
