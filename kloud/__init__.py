"""kloud - Drive cloud machines through their lifecycle.

Example:

    from kloud import Kloud, MachineOptions
    from kloud.providers.memory import Memory, create_provider

    provider, _ = create_provider("memory", Memory())
    kloud = Kloud([provider])

    artifact = await kloud.build("memory", MachineOptions(machine_id="m-1", instance_name="web"))
    await kloud.stop("memory", MachineOptions(
        machine_id="m-1", instance_name="web", instance_id=artifact.instance_id,
    ))
"""

from kloud.config import create_kloud, load_config, resolve_provider
from kloud.constants import VERSION as __version__
from kloud.eventer import Event, EventError, Eventer
from kloud.exceptions import (
    ConfigurationError,
    EventerNotFoundError,
    KloudError,
    LockingInvariantViolation,
    ProviderNotFoundError,
    ReconcileTimeoutError,
    RemoteAPIError,
    RemoteNotFoundError,
)
from kloud.idlock import IdLock, LockHandle
from kloud.kloud import Kloud
from kloud.machinestate import MachineState, to_state
from kloud.observability import LogConfig, setup_logging, teardown_logging
from kloud.protocol import (
    Deployer,
    InfoArtifact,
    MachineData,
    MachineOptions,
    Operation,
    Provider,
    ProviderArtifact,
    Storage,
)
from kloud.storage import MemoryStorage
from kloud.waitstate import WaitConfig, WaitState, interpolate

__all__ = [
    "__version__",
    # Orchestrator
    "Kloud",
    "create_kloud",
    "load_config",
    "resolve_provider",
    # Contract
    "Operation",
    "MachineOptions",
    "ProviderArtifact",
    "InfoArtifact",
    "MachineData",
    "Provider",
    "Storage",
    "Deployer",
    "MemoryStorage",
    # State & progress
    "MachineState",
    "to_state",
    "Event",
    "EventError",
    "Eventer",
    "WaitConfig",
    "WaitState",
    "interpolate",
    "IdLock",
    "LockHandle",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Errors
    "KloudError",
    "ProviderNotFoundError",
    "ConfigurationError",
    "RemoteNotFoundError",
    "RemoteAPIError",
    "ReconcileTimeoutError",
    "LockingInvariantViolation",
    "EventerNotFoundError",
]
