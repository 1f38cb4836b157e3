"""Blocking command runner for hypervisor tooling."""

from __future__ import annotations

import logging
import subprocess
import time

from rolegate.config import settings
from rolegate.hypervisor.base import CommandResult
from rolegate.metrics import hypervisor_command_duration

logger = logging.getLogger(__name__)


def run_cmd(cmd: list[str], timeout: float | None = None) -> CommandResult:
    """Run a command without a shell and capture its output.

    Args:
        cmd: Command and arguments as discrete tokens
        timeout: Seconds before the command is killed (defaults to
            settings.command_timeout)

    Returns:
        CommandResult. A missing binary or a timeout is reported as a
        failed result rather than an exception so callers decide whether
        it is fatal.
    """
    if timeout is None:
        timeout = settings.command_timeout
    operation = cmd[1] if len(cmd) > 1 and cmd[0] == "virsh" else cmd[0]
    start = time.monotonic()
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        hypervisor_command_duration.labels(operation=operation, status="missing").observe(
            time.monotonic() - start
        )
        logger.error(f"Command not found: {cmd[0]}")
        return CommandResult(cmd, 127, "", f"{cmd[0]}: command not found")
    except subprocess.TimeoutExpired:
        hypervisor_command_duration.labels(operation=operation, status="timeout").observe(
            time.monotonic() - start
        )
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return CommandResult(cmd, None, "", f"timed out after {timeout}s", timed_out=True)

    status = "success" if proc.returncode == 0 else "error"
    hypervisor_command_duration.labels(operation=operation, status=status).observe(
        time.monotonic() - start
    )
    if proc.returncode != 0:
        logger.debug(f"Command exited {proc.returncode}: {' '.join(cmd)}: {proc.stderr.strip()}")
    return CommandResult(cmd, proc.returncode, proc.stdout or "", proc.stderr or "")
