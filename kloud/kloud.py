"""The orchestrator: routes lifecycle operations to providers.

:class:`Kloud` owns the provider registry, the per-operation eventers and the
id lock that keeps two operations from running on one machine at once.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterable
from dataclasses import replace
from functools import partial

from kloud.constants import DEFAULT_MAX_EVENTS
from kloud.eventer import Event, EventError, Eventer
from kloud.exceptions import (
    ConfigurationError,
    EventerNotFoundError,
    KloudError,
    ProviderNotFoundError,
    ReconcileTimeoutError,
    RemoteAPIError,
)
from kloud.idlock import IdLock
from kloud.machinestate import MachineState
from kloud.observability.logger import BoundLogger, logger
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

type Result = ProviderArtifact | InfoArtifact | None


class Kloud:
    """Lifecycle orchestrator.

    Example:
        kloud = Kloud([provider])
        artifact = await kloud.build("memory", MachineOptions(machine_id="m-1", instance_name="web"))

        # or in the background, polling progress
        op_id = kloud.submit("memory", "stop", options)
        print(kloud.event(op_id))
    """

    def __init__(
        self,
        providers: Iterable[Provider] = (),
        *,
        storage: Storage | None = None,
        deployer: Deployer | None = None,
        idlock: IdLock | None = None,
        max_events: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self.log = logger.bind(component="kloud")
        self.storage: Storage = storage if storage is not None else MemoryStorage()
        self.deployer = deployer
        self.max_events = max_events
        self._idlock = idlock or IdLock()
        self._lock = threading.Lock()
        self._providers: dict[str, Provider] = {}
        self._eventers: dict[str, Eventer] = {}
        self._tasks: dict[str, asyncio.Task[Result]] = {}
        for provider in providers:
            self.register(provider)

    # =========================================================================
    # Providers
    # =========================================================================

    def register(self, provider: Provider) -> None:
        if not isinstance(provider, Provider):
            raise ConfigurationError(f"{provider!r} does not implement the Provider protocol")
        with self._lock:
            if provider.name in self._providers:
                raise ConfigurationError(f"Provider '{provider.name}' is already registered")
            self._providers[provider.name] = provider
        self.log.debug("Registered provider {name}", name=provider.name)

    def get_provider(self, name: str) -> Provider:
        with self._lock:
            provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    @property
    def providers(self) -> dict[str, Provider]:
        with self._lock:
            return dict(self._providers)

    # =========================================================================
    # Eventers
    # =========================================================================

    def new_eventer(self, op_id: str | None = None) -> Eventer:
        eventer = Eventer(op_id, max_events=self.max_events)
        self.register_eventer(eventer)
        return eventer

    def register_eventer(self, eventer: Eventer) -> None:
        with self._lock:
            if eventer.id in self._eventers:
                raise ConfigurationError(f"Eventer '{eventer.id}' is already registered")
            self._eventers[eventer.id] = eventer

    def get_eventer(self, op_id: str) -> Eventer:
        with self._lock:
            eventer = self._eventers.get(op_id)
        if eventer is None:
            raise EventerNotFoundError(op_id)
        return eventer

    def remove_eventer(self, op_id: str) -> None:
        with self._lock:
            self._eventers.pop(op_id, None)
            self._tasks.pop(op_id, None)

    @property
    def eventers(self) -> list[str]:
        with self._lock:
            return list(self._eventers)

    def event(self, op_id: str) -> Event | None:
        """Latest event of an operation."""
        return self.get_eventer(op_id).latest()

    def drain(self, op_id: str) -> list[Event]:
        """Events of an operation; forgets the operation once it has finished."""
        eventer = self.get_eventer(op_id)
        events = eventer.events()
        if eventer.closed:
            self.remove_eventer(op_id)
        return events

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        provider_name: str,
        operation: Operation | str,
        options: MachineOptions,
    ) -> Result:
        """Run one operation and wait for it.

        The operation's eventer is registered while it runs and removed
        when it returns.
        """
        op, provider = self._resolve(provider_name, operation, options)
        options, eventer = self._attach_eventer(options)
        try:
            return await self._run(provider, op, options, eventer)
        finally:
            self.remove_eventer(eventer.id)

    def submit(
        self,
        provider_name: str,
        operation: Operation | str,
        options: MachineOptions,
    ) -> str:
        """Start an operation in the background and return its operation id.

        Must be called from a running event loop. The eventer stays
        registered after completion until :meth:`drain` hands out the
        terminal event.
        """
        loop = asyncio.get_running_loop()
        op, provider = self._resolve(provider_name, operation, options)
        options, eventer = self._attach_eventer(options)
        task = loop.create_task(
            self._run(provider, op, options, eventer),
            name=f"kloud-{op}-{eventer.id}",
        )
        task.add_done_callback(partial(self._task_done, eventer, op))
        with self._lock:
            self._tasks[eventer.id] = task
        return eventer.id

    async def wait(self, op_id: str) -> Result:
        """Wait for a submitted operation and return its result."""
        with self._lock:
            task = self._tasks.get(op_id)
        if task is None:
            raise EventerNotFoundError(op_id)
        return await task

    def cancel(self, op_id: str) -> bool:
        """Stop waiting on a submitted operation.

        Remote side effects already requested are not undone and may
        still complete.
        """
        with self._lock:
            task = self._tasks.get(op_id)
        return task.cancel() if task is not None else False

    async def shutdown(self) -> None:
        """Cancel every submitted operation that is still running."""
        with self._lock:
            tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def build(self, provider_name: str, options: MachineOptions) -> ProviderArtifact:
        return await self.execute(provider_name, Operation.BUILD, options)  # type: ignore[return-value]

    async def start(self, provider_name: str, options: MachineOptions) -> ProviderArtifact:
        return await self.execute(provider_name, Operation.START, options)  # type: ignore[return-value]

    async def stop(self, provider_name: str, options: MachineOptions) -> None:
        await self.execute(provider_name, Operation.STOP, options)

    async def restart(self, provider_name: str, options: MachineOptions) -> None:
        await self.execute(provider_name, Operation.RESTART, options)

    async def destroy(self, provider_name: str, options: MachineOptions) -> None:
        await self.execute(provider_name, Operation.DESTROY, options)

    async def info(self, provider_name: str, options: MachineOptions) -> InfoArtifact:
        return await self.execute(provider_name, Operation.INFO, options)  # type: ignore[return-value]

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _operation(operation: Operation | str) -> Operation:
        try:
            return Operation(operation)
        except ValueError as e:
            raise ConfigurationError(f"Unknown operation '{operation}'") from e

    def _resolve(
        self,
        provider_name: str,
        operation: Operation | str,
        options: MachineOptions,
    ) -> tuple[Operation, Provider]:
        try:
            return self._operation(operation), self.get_provider(provider_name)
        except KloudError as e:
            e.with_context(operation=str(operation), machine_id=options.machine_id, provider=provider_name)
            raise

    def _attach_eventer(self, options: MachineOptions) -> tuple[MachineOptions, Eventer]:
        if options.eventer is None:
            eventer = self.new_eventer()
            return replace(options, eventer=eventer), eventer
        if options.eventer.closed:
            raise ConfigurationError(f"Eventer '{options.eventer.id}' is already closed")
        self.register_eventer(options.eventer)
        return options, options.eventer

    def _task_done(self, eventer: Eventer, op: Operation, task: asyncio.Task[Result]) -> None:
        if task.cancelled():
            # cancelled before _run got to seal the eventer
            if not eventer.closed:
                self._cancelled(eventer, op)
            return
        # errors are reported through the eventer and Kloud.wait
        task.exception()

    def _cancelled(self, eventer: Eventer, op: Operation) -> None:
        self._fail(
            eventer,
            ReconcileTimeoutError(op.final_state, self._last_state(eventer), 0),
            "stopped waiting, the remote operation may still complete",
        )

    async def _run(
        self,
        provider: Provider,
        op: Operation,
        options: MachineOptions,
        eventer: Eventer,
    ) -> Result:
        log = self.log.bind(provider=provider.name, operation=op.value, machine_id=options.machine_id)
        log.info("{op} requested", op=op)
        try:
            if op is Operation.INFO:
                # read-only; takes no machine lock
                result: Result = await provider.info(options)
            else:
                async with self._idlock.lock(options.machine_id):
                    result = await self._dispatch(provider, op, options)
                    await self._after(provider, op, options, result, eventer, log)
        except asyncio.CancelledError:
            self._cancelled(eventer, op)
            log.warning("{op} cancelled", op=op)
            raise
        except KloudError as e:
            e.with_context(
                operation=op.value,
                machine_id=options.machine_id,
                provider=provider.name,
                state=self._last_state(eventer),
            )
            self._fail(eventer, e)
            log.error("{op} failed: {error}", op=op, error=e)
            raise
        except Exception as e:
            error = RemoteAPIError(str(e) or type(e).__name__).with_context(
                operation=op.value,
                machine_id=options.machine_id,
                provider=provider.name,
                state=self._last_state(eventer),
            )
            self._fail(eventer, error)
            log.exception("{op} failed: {error}", op=op, error=e)
            raise error from e

        status = result.state if isinstance(result, InfoArtifact) else op.final_state
        eventer.push(Event(message=f"{op} finished", percentage=100, status=status))
        eventer.close()
        log.info("{op} finished", op=op)
        return result

    @staticmethod
    async def _dispatch(provider: Provider, op: Operation, options: MachineOptions) -> Result:
        match op:
            case Operation.BUILD:
                return await provider.build(options)
            case Operation.START:
                return await provider.start(options)
            case Operation.STOP:
                await provider.stop(options)
            case Operation.RESTART:
                await provider.restart(options)
            case Operation.DESTROY:
                await provider.destroy(options)
            case Operation.INFO:
                return await provider.info(options)
        return None

    async def _after(
        self,
        provider: Provider,
        op: Operation,
        options: MachineOptions,
        result: Result,
        eventer: Eventer,
        log: BoundLogger,
    ) -> None:
        """Storage and deployer hooks; failures are logged, never raised."""
        artifact = result if isinstance(result, ProviderArtifact) else None
        try:
            match op:
                case Operation.DESTROY:
                    self.storage.delete(options.machine_id)
                case Operation.BUILD | Operation.START | Operation.STOP | Operation.RESTART:
                    self.storage.update(
                        MachineData(
                            machine_id=options.machine_id,
                            provider=provider.name,
                            state=op.final_state,
                            artifact=artifact,
                        )
                    )
        except Exception:
            log.exception("Storage update after {op} failed", op=op)

        if op is Operation.BUILD and artifact is not None and self.deployer is not None:
            eventer.push(
                Event(message=f"Deploying {artifact.instance_name}", percentage=90, status=MachineState.BUILDING)
            )
            try:
                await self.deployer.deploy(artifact, options)
            except Exception:
                log.exception("Deployer failed for {instance}", instance=artifact.instance_id)

    @staticmethod
    def _last_state(eventer: Eventer) -> MachineState | None:
        latest = eventer.latest()
        return latest.status if latest is not None else None

    @staticmethod
    def _fail(eventer: Eventer, error: KloudError, message: str | None = None) -> None:
        latest = eventer.latest()
        eventer.push(
            Event(
                message=message or error.message,
                percentage=latest.percentage if latest else 0,
                status=latest.status if latest else MachineState.UNKNOWN,
                error=EventError.from_exception(error),
            )
        )
        eventer.close()


__all__ = ["Kloud"]
