"""Contracts between the orchestrator, its providers and its collaborators."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from kloud.eventer import Eventer
from kloud.machinestate import MachineState


class Operation(StrEnum):
    BUILD = "build"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    DESTROY = "destroy"
    INFO = "info"

    @property
    def final_state(self) -> MachineState:
        """State the machine is in once the operation succeeded."""
        return _FINAL_STATES[self]

    @property
    def initial_state(self) -> MachineState:
        """State reported while the operation is starting."""
        return _INITIAL_STATES[self]


_FINAL_STATES = {
    Operation.BUILD: MachineState.RUNNING,
    Operation.START: MachineState.RUNNING,
    Operation.STOP: MachineState.STOPPED,
    Operation.RESTART: MachineState.RUNNING,
    Operation.DESTROY: MachineState.TERMINATED,
    Operation.INFO: MachineState.UNKNOWN,
}

_INITIAL_STATES = {
    Operation.BUILD: MachineState.BUILDING,
    Operation.START: MachineState.STARTING,
    Operation.STOP: MachineState.STOPPING,
    Operation.RESTART: MachineState.REBOOTING,
    Operation.DESTROY: MachineState.TERMINATING,
    Operation.INFO: MachineState.UNKNOWN,
}


@dataclass(frozen=True, slots=True)
class MachineOptions:
    """Input of every provider operation.

    ``credential`` and ``builder`` are provider specific and opaque to the
    orchestrator. ``eventer`` must be set by the time a provider sees the
    options; :class:`kloud.Kloud` creates one when it is missing.
    """

    machine_id: str
    instance_name: str = ""
    username: str = ""
    image_name: str = ""
    instance_id: str = ""
    credential: Mapping[str, Any] = field(default_factory=dict)
    builder: Mapping[str, Any] = field(default_factory=dict)
    eventer: Eventer | None = None


@dataclass(frozen=True, slots=True)
class ProviderArtifact:
    """Durable result of a successful Build or Start."""

    instance_id: str
    instance_name: str
    ip_address: str = ""
    username: str = ""


@dataclass(frozen=True, slots=True)
class InfoArtifact:
    state: MachineState
    name: str


@runtime_checkable
class Provider(Protocol):
    """A cloud backend able to drive one machine through its lifecycle.

    Every lifecycle method pushes progress to ``options.eventer`` while it
    runs and raises a :class:`kloud.exceptions.KloudError` on failure.
    """

    @property
    def name(self) -> str: ...

    async def build(self, options: MachineOptions) -> ProviderArtifact:
        """Create a new machine and wait until it is running."""
        ...

    async def start(self, options: MachineOptions) -> ProviderArtifact:
        """Bring a stopped machine back and wait until it is running."""
        ...

    async def stop(self, options: MachineOptions) -> None:
        """Stop a running machine and wait until it is stopped."""
        ...

    async def restart(self, options: MachineOptions) -> None:
        """Reboot a running machine and wait until it is running again."""
        ...

    async def destroy(self, options: MachineOptions) -> None:
        """Remove the machine for good. Destroying a missing machine succeeds."""
        ...

    async def info(self, options: MachineOptions) -> InfoArtifact:
        """Sample the current state once, without polling."""
        ...


@dataclass(frozen=True, slots=True)
class MachineData:
    """What a storage keeps per machine."""

    machine_id: str
    provider: str
    state: MachineState
    artifact: ProviderArtifact | None = None


@runtime_checkable
class Storage(Protocol):
    def get(self, machine_id: str) -> MachineData | None: ...

    def update(self, data: MachineData) -> None: ...

    def delete(self, machine_id: str) -> None: ...


@runtime_checkable
class Deployer(Protocol):
    async def deploy(self, artifact: ProviderArtifact, options: MachineOptions) -> None:
        """Post-provisioning setup of a freshly built machine."""
        ...


__all__ = [
    "Deployer",
    "InfoArtifact",
    "MachineData",
    "MachineOptions",
    "Operation",
    "Provider",
    "ProviderArtifact",
    "Storage",
]
