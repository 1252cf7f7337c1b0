"""Shared pieces of provider implementations.

Every provider reports progress the same way and waits on remote state the
same way; :class:`BaseProvider` holds both so backends only describe what
they wait for.
"""

from __future__ import annotations

from dataclasses import dataclass

from kloud.eventer import Event, Eventer
from kloud.exceptions import ConfigurationError
from kloud.machinestate import MachineState
from kloud.observability.logger import BoundLogger, logger
from kloud.protocol import MachineOptions
from kloud.waitstate import StateFunc, WaitConfig, WaitState


@dataclass(frozen=True, slots=True)
class Progress:
    """Pushes progress events of one operation to its eventer.

    Created per call, so concurrent operations on one provider instance
    never share a push target.
    """

    eventer: Eventer
    machine_id: str
    username: str
    log: BoundLogger

    def __call__(self, message: str, percentage: int, status: MachineState) -> None:
        self.log.info(
            "{machine_id} - {username} ==> {message}",
            machine_id=self.machine_id, username=self.username, message=message,
        )
        self.eventer.push(Event(message=message, percentage=percentage, status=status))


class BaseProvider:
    """Name, logger, progress reporting and waiting for a provider."""

    def __init__(self, name: str, *, wait: WaitConfig | None = None) -> None:
        self._name = name
        self.wait_config = wait or WaitConfig()
        self.log = logger.bind(component="provider", provider=name)

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r})"

    @staticmethod
    def require_eventer(options: MachineOptions) -> Eventer:
        if options.eventer is None:
            raise ConfigurationError("Eventer is not defined")
        return options.eventer

    def progress(self, options: MachineOptions) -> Progress:
        return Progress(
            eventer=self.require_eventer(options),
            machine_id=options.machine_id,
            username=options.username,
            log=self.log.bind(machine_id=options.machine_id),
        )

    async def wait_for(
        self,
        state_func: StateFunc,
        desired: MachineState,
        *,
        start: int,
        finish: int,
    ) -> int:
        return await WaitState(state_func, desired, start, finish, config=self.wait_config).wait()


__all__ = ["BaseProvider", "Progress"]
