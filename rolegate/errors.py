"""Error taxonomy for role provisioning.

Validation and conflict errors are raised before any resource is touched.
External command and filesystem failures are raised mid-sequence and always
trigger a rollback before they reach the caller. Rollback problems never
replace the original error; they are attached to it as
``RollbackPartialFailure`` records.
"""

from __future__ import annotations

from dataclasses import dataclass


class RoleGateError(Exception):
    """Base class for all provisioning errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.rollback_failures: list[RollbackPartialFailure] = []

    def __str__(self) -> str:
        if not self.rollback_failures:
            return self.message
        details = "; ".join(str(f) for f in self.rollback_failures)
        return f"{self.message} (rollback incomplete: {details})"


class ValidationError(RoleGateError, ValueError):
    """Bad role name, out-of-range hop count or port, missing required field."""


class ResourceConflict(RoleGateError):
    """A network, disk or domain that must not exist already exists."""


class ExternalCommandFailure(RoleGateError):
    """A hypervisor command failed, timed out, or could not be executed."""

    def __init__(self, command: list[str], returncode: int | None, output: str, message: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        summary = message or f"Command failed: {' '.join(self.command)}"
        if output:
            summary = f"{summary}: {output.strip()}"
        super().__init__(summary)


class FilesystemFailure(RoleGateError):
    """Writing the role directory or one of its files failed."""

    def __init__(self, path, message: str):
        self.path = str(path)
        super().__init__(f"{message}: {self.path}")


class ProvisioningCancelled(RoleGateError):
    """Provisioning was aborted by the user or by a process signal."""


@dataclass
class RollbackPartialFailure:
    """An undo step that could not be completed during rollback."""

    resource: str
    message: str

    def __str__(self) -> str:
        return f"{self.resource}: {self.message}"
