"""Exception hierarchy for kloud.

All kloud exceptions inherit from KloudError, so callers can catch every
orchestrator failure with a single except clause. Each error can carry the
operation, machine id, provider and last known machine state it happened in;
the orchestrator fills these in before the error reaches the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

if TYPE_CHECKING:
    from kloud.machinestate import MachineState


class KloudError(Exception):
    """Base exception for all kloud errors."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.operation: str | None = None
        self.machine_id: str | None = None
        self.provider: str | None = None
        self.state: MachineState | None = None

    def with_context(
        self,
        *,
        operation: str | None = None,
        machine_id: str | None = None,
        provider: str | None = None,
        state: MachineState | None = None,
    ) -> Self:
        """Fill in context fields that are not set yet."""
        self.operation = self.operation or operation
        self.machine_id = self.machine_id or machine_id
        self.provider = self.provider or provider
        self.state = self.state or state
        return self

    def __str__(self) -> str:
        context = [
            f"{key}={value}"
            for key, value in (
                ("operation", self.operation),
                ("provider", self.provider),
                ("machine_id", self.machine_id),
                ("state", self.state),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ProviderNotFoundError(KloudError):
    """Raised when no provider is registered under the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Provider '{name}' not found")


class ConfigurationError(KloudError):
    """Raised for invalid configuration or missing required options."""


class RemoteNotFoundError(KloudError):
    """Raised when a resource does not exist on the remote side.

    This is an expected condition: destructive operations treat it as
    success and Info uses it to tell Stopped from Terminated.
    """

    def __init__(self, kind: str, ref: str) -> None:
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} '{ref}' not found")


class RemoteAPIError(KloudError):
    """Raised for any other failure reported by the remote cloud API."""


class ReconcileTimeoutError(KloudError):
    """Raised when the desired state is not observed within the polling budget."""

    def __init__(
        self,
        desired_state: MachineState,
        last_state: MachineState | None,
        attempts: int,
    ) -> None:
        self.desired_state = desired_state
        self.last_state = last_state
        self.attempts = attempts
        super().__init__(
            f"Timed out waiting for state {desired_state} after {attempts} attempts, "
            f"last observed state: {last_state}"
        )
        self.state = last_state


class LockingInvariantViolation(KloudError):
    """Raised when the id lock table is found in an inconsistent state."""


class EventerNotFoundError(KloudError):
    """Raised when no eventer is registered for an operation id."""

    def __init__(self, op_id: str) -> None:
        self.op_id = op_id
        super().__init__(f"No eventer registered for operation '{op_id}'")


__all__ = [
    "KloudError",
    "ProviderNotFoundError",
    "ConfigurationError",
    "RemoteNotFoundError",
    "RemoteAPIError",
    "ReconcileTimeoutError",
    "LockingInvariantViolation",
    "EventerNotFoundError",
]
