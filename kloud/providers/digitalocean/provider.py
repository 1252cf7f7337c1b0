"""DigitalOcean droplet lifecycle."""

from __future__ import annotations

from collections.abc import Callable

from kloud.exceptions import ConfigurationError, RemoteAPIError, RemoteNotFoundError
from kloud.machinestate import MachineState, StatusVocabulary, to_state
from kloud.protocol import InfoArtifact, MachineOptions, ProviderArtifact
from kloud.providers.base import BaseProvider, Progress
from kloud.waitstate import StateFunc, WaitConfig

from .client import DigitalOceanClient, Droplet, DropletAPI, get_public_ip, get_token
from .config import DigitalOcean

DROPLET_VOCABULARY: StatusVocabulary = {
    "new": MachineState.BUILDING,
    "active": MachineState.RUNNING,
    "off": MachineState.STOPPED,
    "archive": MachineState.TERMINATED,
}

type ClientFactory = Callable[[str], DropletAPI]


class DigitalOceanProvider(BaseProvider):
    """Provider for DigitalOcean droplets.

    Stop powers the droplet off in place, so Start only powers it back on
    and keeps the droplet id and address.
    """

    def __init__(
        self,
        name: str,
        config: DigitalOcean,
        *,
        client_factory: ClientFactory = DigitalOceanClient,
        wait: WaitConfig | None = None,
    ) -> None:
        super().__init__(name, wait=wait)
        self.config = config
        self._client_factory = client_factory

    def _client(self, options: MachineOptions) -> DropletAPI:
        return self._client_factory(get_token(options.credential, self.config.token))

    def _state(self, droplet: Droplet) -> MachineState:
        return to_state(droplet.get("status", ""), DROPLET_VOCABULARY)

    @staticmethod
    def _droplet_id(options: MachineOptions) -> int:
        if not options.instance_id:
            raise ConfigurationError("instance id is empty")
        try:
            return int(options.instance_id)
        except ValueError as e:
            raise ConfigurationError(f"invalid droplet id '{options.instance_id}'") from e

    async def _ensure_ssh_key(self, client: DropletAPI) -> str:
        if self.config.ssh_key_fingerprint:
            return self.config.ssh_key_fingerprint

        for key in await client.list_ssh_keys():
            if key.get("name") == self.config.key_name:
                return key["fingerprint"]

        if not self.config.public_key:
            raise ConfigurationError(
                f"SSH key '{self.config.key_name}' does not exist and no public key is configured"
            )
        self.log.info("Creating SSH key: {name}", name=self.config.key_name)
        key = await client.create_ssh_key(self.config.key_name, self.config.public_key)
        return key["fingerprint"]

    def _action_probe(
        self,
        client: DropletAPI,
        droplet_id: int,
        action_id: int,
        push: Progress,
        status: MachineState,
        gone: MachineState | None = None,
    ) -> StateFunc:
        """Probe reporting ``status`` until the action completes, then the droplet state."""

        async def state_func(percentage: int) -> MachineState:
            try:
                action = await client.get_action(droplet_id, action_id)
            except RemoteNotFoundError:
                if gone is None:
                    raise
                return gone
            match action.get("status"):
                case "errored":
                    raise RemoteAPIError(f"Droplet action '{action.get('type')}' errored")
                case "completed":
                    pass
                case other:
                    push(f"Waiting for {action.get('type')} to finish, status: '{other}'", percentage, status)
                    return status
            try:
                droplet = await client.get_droplet(droplet_id)
            except RemoteNotFoundError:
                if gone is None:
                    raise
                return gone
            push(f"Droplet '{droplet.get('name')}' is {droplet.get('status')}", percentage, status)
            return self._state(droplet)

        return state_func

    async def _power(
        self,
        options: MachineOptions,
        action: str,
        status: MachineState,
        desired: MachineState,
        gone: MachineState | None = None,
    ) -> None:
        droplet_id = self._droplet_id(options)
        push = self.progress(options)
        async with self._client(options) as client:
            push(f"Requesting {action} for droplet {droplet_id}", 10, status)
            try:
                result = await client.droplet_action(droplet_id, action)
            except RemoteNotFoundError:
                if gone is None:
                    raise
                self.log.debug("Droplet {id} is already gone", id=droplet_id)
                return
            probe = self._action_probe(client, droplet_id, int(result["id"]), push, status, gone)
            await self.wait_for(probe, desired, start=30, finish=70)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def build(self, options: MachineOptions) -> ProviderArtifact:
        if not options.instance_name:
            raise ConfigurationError("droplet name is empty")
        push = self.progress(options)
        async with self._client(options) as client:
            push("Checking SSH key", 10, MachineState.BUILDING)
            fingerprint = await self._ensure_ssh_key(client)

            image = options.builder.get("image") or options.image_name or self.config.default_image
            size = options.builder.get("size") or self.config.size
            region = options.builder.get("region") or self.config.region

            push(f"Creating droplet {options.instance_name}", 20, MachineState.BUILDING)
            created = await client.create_droplet(
                options.instance_name, region, size, image, [fingerprint],
            )
            droplet_id = int(created["id"])
            droplet = created

            async def state_func(percentage: int) -> MachineState:
                nonlocal droplet
                droplet = await client.get_droplet(droplet_id)
                push(
                    f"Starting droplet '{options.instance_name}', current status: '{droplet.get('status')}'",
                    percentage, MachineState.BUILDING,
                )
                return self._state(droplet)

            await self.wait_for(state_func, MachineState.RUNNING, start=25, finish=60)

            push(f"Droplet is created {options.instance_name}", 70, MachineState.BUILDING)
            return ProviderArtifact(
                instance_id=str(droplet_id),
                instance_name=droplet.get("name", options.instance_name),
                ip_address=get_public_ip(droplet),
                username=options.username,
            )

    async def start(self, options: MachineOptions) -> ProviderArtifact:
        await self._power(options, "power_on", MachineState.STARTING, MachineState.RUNNING)
        async with self._client(options) as client:
            droplet = await client.get_droplet(self._droplet_id(options))
        return ProviderArtifact(
            instance_id=str(droplet["id"]),
            instance_name=droplet.get("name", options.instance_name),
            ip_address=get_public_ip(droplet),
            username=options.username,
        )

    async def stop(self, options: MachineOptions) -> None:
        await self._power(
            options, "shutdown", MachineState.STOPPING, MachineState.STOPPED, gone=MachineState.STOPPED,
        )

    async def restart(self, options: MachineOptions) -> None:
        await self._power(options, "reboot", MachineState.REBOOTING, MachineState.RUNNING)

    async def destroy(self, options: MachineOptions) -> None:
        push = self.progress(options)
        if not options.instance_id:
            push("Nothing to terminate", 10, MachineState.TERMINATING)
            return
        droplet_id = self._droplet_id(options)
        async with self._client(options) as client:
            push("Terminating machine", 10, MachineState.TERMINATING)
            try:
                await client.delete_droplet(droplet_id)
            except RemoteNotFoundError:
                self.log.debug("Droplet {id} is already gone", id=droplet_id)
                return

            async def state_func(percentage: int) -> MachineState:
                try:
                    droplet = await client.get_droplet(droplet_id)
                except RemoteNotFoundError:
                    return MachineState.TERMINATED
                push(f"Deleting droplet '{droplet.get('name')}'", percentage, MachineState.TERMINATING)
                state = self._state(droplet)
                return MachineState.TERMINATING if state == MachineState.TERMINATED else state

            await self.wait_for(state_func, MachineState.TERMINATED, start=30, finish=70)

    async def info(self, options: MachineOptions) -> InfoArtifact:
        self.require_eventer(options)
        name = options.instance_name
        async with self._client(options) as client:
            droplet = await self._find_droplet(client, options)
            if droplet is None:
                self.log.debug("Droplet does not exist, checking for a snapshot named {name}", name=name)
                snapshots = await client.list_snapshots()
                if name and any(s.get("name") == name for s in snapshots):
                    return InfoArtifact(state=MachineState.STOPPED, name=name)
                return InfoArtifact(state=MachineState.TERMINATED, name=name)
            return InfoArtifact(state=self._state(droplet), name=droplet.get("name", name))

    async def _find_droplet(self, client: DropletAPI, options: MachineOptions) -> Droplet | None:
        if not options.instance_id:
            return None
        try:
            return await client.get_droplet(self._droplet_id(options))
        except RemoteNotFoundError:
            return None


__all__ = ["DROPLET_VOCABULARY", "DigitalOceanProvider"]
