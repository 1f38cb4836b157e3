"""Provisioning run state machine.

Run lifecycle:
    validating -> network_ready -> disk_ready -> config_written
        -> domain_ready -> committed
    any non-terminal state -> aborting -> rolled_back

App VM runs skip config_written.
"""

from __future__ import annotations

from enum import Enum


class ProvisionState(str, Enum):
    VALIDATING = "validating"
    NETWORK_READY = "network_ready"
    DISK_READY = "disk_ready"
    CONFIG_WRITTEN = "config_written"
    DOMAIN_READY = "domain_ready"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ROLLED_BACK = "rolled_back"


class InvalidTransition(RuntimeError):
    """Raised when the orchestrator attempts an illegal state change."""


class ProvisionStateMachine:
    """Centralized transition rules for a provisioning run."""

    VALID_TRANSITIONS: dict[ProvisionState, set[ProvisionState]] = {
        ProvisionState.VALIDATING: {ProvisionState.NETWORK_READY, ProvisionState.ABORTING},
        ProvisionState.NETWORK_READY: {ProvisionState.DISK_READY, ProvisionState.ABORTING},
        ProvisionState.DISK_READY: {ProvisionState.CONFIG_WRITTEN, ProvisionState.ABORTING},
        ProvisionState.CONFIG_WRITTEN: {ProvisionState.DOMAIN_READY, ProvisionState.ABORTING},
        ProvisionState.DOMAIN_READY: {ProvisionState.COMMITTED, ProvisionState.ABORTING},
        ProvisionState.ABORTING: {ProvisionState.ROLLED_BACK},
        ProvisionState.COMMITTED: set(),
        ProvisionState.ROLLED_BACK: set(),
    }

    TERMINAL_STATES: set[ProvisionState] = {
        ProvisionState.COMMITTED,
        ProvisionState.ROLLED_BACK,
    }

    def __init__(self) -> None:
        self.state = ProvisionState.VALIDATING
        self.history: list[ProvisionState] = [self.state]

    @classmethod
    def can_transition(cls, current: ProvisionState, target: ProvisionState) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, state: ProvisionState) -> bool:
        return state in cls.TERMINAL_STATES

    def advance(self, target: ProvisionState) -> ProvisionState:
        if not self.can_transition(self.state, target):
            raise InvalidTransition(f"Cannot move from {self.state.value} to {target.value}")
        self.state = target
        self.history.append(target)
        return target


class AppVmStateMachine(ProvisionStateMachine):
    """App VM runs write no configuration: the disk is followed by the domain.

    network_ready here means the role network was found, not created.
    """

    VALID_TRANSITIONS: dict[ProvisionState, set[ProvisionState]] = {
        ProvisionState.VALIDATING: {ProvisionState.NETWORK_READY, ProvisionState.ABORTING},
        ProvisionState.NETWORK_READY: {ProvisionState.DISK_READY, ProvisionState.ABORTING},
        ProvisionState.DISK_READY: {ProvisionState.DOMAIN_READY, ProvisionState.ABORTING},
        ProvisionState.DOMAIN_READY: {ProvisionState.COMMITTED, ProvisionState.ABORTING},
        ProvisionState.ABORTING: {ProvisionState.ROLLED_BACK},
        ProvisionState.COMMITTED: set(),
        ProvisionState.ROLLED_BACK: set(),
    }
