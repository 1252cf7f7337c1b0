"""Lifecycle operations for clouds exposing a :class:`ComputeAPI`.

Stopping a machine snapshots it into a backup image named after the
instance and deletes the server; starting it recreates the server from that
image and deletes the backup. A missing server with a backup image is
therefore Stopped, and a missing server without one is Terminated.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from kloud.constants import DEFAULT_KEY_NAME
from kloud.exceptions import ConfigurationError, RemoteNotFoundError
from kloud.machinestate import MachineState, StatusVocabulary, to_state
from kloud.protocol import InfoArtifact, MachineOptions, ProviderArtifact
from kloud.providers.base import BaseProvider, Progress
from kloud.providers.types import ComputeAPI, KeyPair, Server, find_by_name, has_id
from kloud.waitstate import StateFunc, WaitConfig

type ClientFactory = Callable[[MachineOptions], Awaitable[ComputeAPI]]

NOVA_VOCABULARY: StatusVocabulary = {
    "ACTIVE": MachineState.RUNNING,
    "BUILD": MachineState.BUILDING,
    "REBUILD": MachineState.BUILDING,
    "RESIZE": MachineState.BUILDING,
    "VERIFY_RESIZE": MachineState.BUILDING,
    "REVERT_RESIZE": MachineState.BUILDING,
    "PASSWORD": MachineState.RUNNING,
    "MIGRATING": MachineState.RUNNING,
    "REBOOT": MachineState.REBOOTING,
    "HARD_REBOOT": MachineState.REBOOTING,
    "SHUTOFF": MachineState.STOPPED,
    "STOPPED": MachineState.STOPPED,
    "SUSPENDED": MachineState.STOPPED,
    "PAUSED": MachineState.STOPPED,
    "SHELVED": MachineState.STOPPED,
    "SHELVED_OFFLOADED": MachineState.STOPPED,
    "DELETED": MachineState.TERMINATED,
    "SOFT_DELETED": MachineState.TERMINATED,
    "UNKNOWN": MachineState.UNKNOWN,
}


@dataclass(frozen=True, slots=True)
class ComputeSettings:
    """Defaults a compute provider falls back to when options omit them.

    Attributes:
        default_image: Image id or name used by Build.
        default_flavor: Flavor id used by Build and Start.
        key_name: Name of the key pair injected into every server.
        public_key: Public key registered when ``key_name`` is missing.
    """

    default_image: str
    default_flavor: str
    key_name: str = DEFAULT_KEY_NAME
    public_key: str = ""


class ComputeProvider(BaseProvider):
    """Provider for any cloud reachable through a :class:`ComputeAPI`."""

    def __init__(
        self,
        name: str,
        connect: ClientFactory,
        settings: ComputeSettings,
        *,
        vocabulary: StatusVocabulary = NOVA_VOCABULARY,
        wait: WaitConfig | None = None,
    ) -> None:
        super().__init__(name, wait=wait)
        self._connect = connect
        self.settings = settings
        self.vocabulary = vocabulary

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self, options: MachineOptions) -> AsyncIterator[tuple[ComputeAPI, Progress]]:
        push = self.progress(options)
        api = await self._connect(options)
        try:
            yield api, push
        finally:
            await api.close()

    def _state(self, server: Server) -> MachineState:
        return to_state(server.status, self.vocabulary)

    def _flavor(self, options: MachineOptions) -> str:
        return str(options.builder.get("flavor") or self.settings.default_flavor)

    @staticmethod
    def _server_id(options: MachineOptions) -> str:
        if not options.instance_id:
            raise ConfigurationError("instance id is empty")
        return options.instance_id

    @staticmethod
    def _instance_name(options: MachineOptions) -> str:
        if not options.instance_name:
            raise ConfigurationError("server name is empty")
        return options.instance_name

    async def _ensure_key(self, api: ComputeAPI) -> KeyPair:
        key = await api.show_key(self.settings.key_name)
        if key is not None:
            return key
        if not self.settings.public_key:
            raise ConfigurationError(
                f"key pair '{self.settings.key_name}' does not exist and no public key is configured"
            )
        self.log.info("Creating key pair {name}", name=self.settings.key_name)
        return await api.create_key(self.settings.key_name, self.settings.public_key)

    async def _delete_server(self, api: ComputeAPI, server_id: str) -> None:
        try:
            await api.delete_server(server_id)
        except RemoteNotFoundError:
            self.log.debug("Server {id} is already gone", id=server_id)

    def _running_probe(
        self,
        api: ComputeAPI,
        server_id: str,
        push: Progress,
        status: MachineState,
        label: str,
    ) -> tuple[StateFunc, Callable[[], Server | None]]:
        """Probe for "server is running", plus access to the last server seen."""
        seen: list[Server] = []

        async def state_func(percentage: int) -> MachineState:
            server = await api.server(server_id)
            seen[:] = [server]
            push(
                f"{label} server '{server.name}', current task state: '{server.task_state}'",
                percentage, status,
            )
            return self._state(server)

        return state_func, lambda: seen[0] if seen else None

    def _gone_probe(
        self,
        api: ComputeAPI,
        server_id: str,
        push: Progress,
        gone: MachineState,
        pending: MachineState,
    ) -> StateFunc:
        """Probe reporting ``gone`` once the server no longer exists."""

        async def state_func(percentage: int) -> MachineState:
            try:
                server = await api.server(server_id)
            except RemoteNotFoundError:
                return gone
            push(
                f"Deleting server '{server.name}', current task state: '{server.task_state}'",
                percentage, pending,
            )
            state = self._state(server)
            return pending if state == gone else state

        return state_func

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def build(self, options: MachineOptions) -> ProviderArtifact:
        name = self._instance_name(options)
        async with self._session(options) as (api, push):
            image_ref = (
                options.builder.get("source_image")
                or options.image_name
                or self.settings.default_image
            )
            push(f"Checking for image availability {image_ref}", 10, MachineState.BUILDING)
            image = await api.image(image_ref)

            key = await self._ensure_key(api)

            flavor_id = self._flavor(options)
            if not has_id(await api.flavors(), flavor_id):
                raise ConfigurationError(f"Flavor id '{flavor_id}' doesn't exist")

            push(f"Creating server {name}", 20, MachineState.BUILDING)
            created = await api.create_server(name, image.id, flavor_id, key.name)

            probe, last_seen = self._running_probe(
                api, created.id, push, MachineState.BUILDING, "Starting",
            )
            await self.wait_for(probe, MachineState.RUNNING, start=25, finish=60)
            server = last_seen() or created

            push(f"Server is created {name}", 70, MachineState.BUILDING)
            return ProviderArtifact(
                instance_id=server.id,
                instance_name=server.name,
                ip_address=server.ip_address,
                username=options.username,
            )

    async def start(self, options: MachineOptions) -> ProviderArtifact:
        backup = self._instance_name(options)
        async with self._session(options) as (api, push):
            push("Starting machine", 10, MachineState.STARTING)
            key = await self._ensure_key(api)

            push(f"Checking if backup image '{backup}' exists", 20, MachineState.STARTING)
            image = find_by_name(await api.images(), backup)
            if image is None:
                raise RemoteNotFoundError("backup image", backup)
            push(f"Backup image '{backup}' does exist", 20, MachineState.STARTING)

            push(
                f"Starting server '{backup}' based on image id '{image.id}' image name: {image.name}",
                30, MachineState.STARTING,
            )
            created = await api.create_server(backup, image.id, self._flavor(options), key.name)

            probe, last_seen = self._running_probe(
                api, created.id, push, MachineState.STARTING, "Starting",
            )
            await self.wait_for(probe, MachineState.RUNNING, start=35, finish=60)
            server = last_seen() or created

            push(f"Deleting backup image {image.name} - {image.id}", 80, MachineState.STARTING)
            await api.delete_image(image.id)

            return ProviderArtifact(
                instance_id=server.id,
                instance_name=server.name,
                ip_address=server.ip_address,
                username=options.username,
            )

    async def stop(self, options: MachineOptions) -> None:
        server_id = self._server_id(options)
        backup = self._instance_name(options)
        async with self._session(options) as (api, push):
            push("Stopping machine", 10, MachineState.STOPPING)

            push(
                f"Creating a backup image with name: {backup} for id: {server_id}",
                20, MachineState.STOPPING,
            )
            image_id = await api.create_image(server_id, backup)

            async def snapshot_done(percentage: int) -> MachineState:
                try:
                    server = await api.server(server_id)
                except RemoteNotFoundError:
                    return MachineState.STOPPING
                # an empty task state means the image was taken and uploaded
                if not server.task_state:
                    return MachineState.STOPPING
                push(
                    f"Taking image '{image_id}' of machine, current state: '{server.task_state}'",
                    percentage, MachineState.STOPPING,
                )
                state = self._state(server)
                return MachineState.UNKNOWN if state == MachineState.STOPPING else state

            await self.wait_for(snapshot_done, MachineState.STOPPING, start=30, finish=50)

            push(f"Deleting server: {server_id}", 55, MachineState.STOPPING)
            await self._delete_server(api, server_id)

            gone = self._gone_probe(api, server_id, push, MachineState.STOPPED, MachineState.STOPPING)
            await self.wait_for(gone, MachineState.STOPPED, start=60, finish=80)

    async def restart(self, options: MachineOptions) -> None:
        server_id = self._server_id(options)
        async with self._session(options) as (api, push):
            push("Rebooting machine", 10, MachineState.REBOOTING)
            await api.reboot_server(server_id, hard=False)

            probe, _ = self._running_probe(api, server_id, push, MachineState.REBOOTING, "Rebooting")
            await self.wait_for(probe, MachineState.RUNNING, start=30, finish=70)

    async def destroy(self, options: MachineOptions) -> None:
        async with self._session(options) as (api, push):
            push("Terminating machine", 10, MachineState.TERMINATING)

            if options.instance_id:
                await self._delete_server(api, options.instance_id)
                gone = self._gone_probe(
                    api, options.instance_id, push,
                    MachineState.TERMINATED, MachineState.TERMINATING,
                )
                await self.wait_for(gone, MachineState.TERMINATED, start=30, finish=70)

            if options.instance_name:
                backup = find_by_name(await api.images(), options.instance_name)
                if backup is not None:
                    push(f"Deleting backup image {backup.name} - {backup.id}", 80, MachineState.TERMINATING)
                    try:
                        await api.delete_image(backup.id)
                    except RemoteNotFoundError:
                        self.log.debug("Backup image {id} is already gone", id=backup.id)

    async def info(self, options: MachineOptions) -> InfoArtifact:
        async with self._session(options) as (api, _):
            name = options.instance_name
            self.log.debug("Checking for server info: {id}", id=options.instance_id)
            try:
                if not options.instance_id:
                    raise RemoteNotFoundError("server", "<unset>")
                server = await api.server(options.instance_id)
            except RemoteNotFoundError:
                self.log.debug("Server does not exist, checking if it has a backup image")
                if name and find_by_name(await api.images(), name) is not None:
                    self.log.debug("Image '{name}' does exist, means it's stopped.", name=name)
                    return InfoArtifact(state=MachineState.STOPPED, name=name)
                self.log.debug("Image does not exist, machine is terminated.")
                return InfoArtifact(state=MachineState.TERMINATED, name=name)

            return InfoArtifact(state=self._state(server), name=server.name)


__all__ = ["ClientFactory", "ComputeProvider", "ComputeSettings", "NOVA_VOCABULARY"]
