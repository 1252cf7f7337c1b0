from __future__ import annotations

import itertools
from typing import Any

import pytest

from kloud import Eventer, MachineOptions, MachineState, WaitConfig
from kloud.exceptions import ConfigurationError, RemoteAPIError, RemoteNotFoundError
from kloud.providers.digitalocean import DigitalOcean, DigitalOceanProvider
from kloud.providers.digitalocean.client import get_public_ip, get_token

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

_ACTION_RESULT = {"power_on": "active", "shutdown": "off", "reboot": "active"}


class FakeDroplets:
    """In-memory stand-in for the droplet slice of the DigitalOcean API."""

    def __init__(self) -> None:
        self.tokens: list[str] = []
        self.droplets: dict[int, dict[str, Any]] = {}
        self.pending: dict[int, list[str | None]] = {}
        self.actions: dict[int, dict[str, Any]] = {}
        self.ssh_keys: list[dict[str, Any]] = []
        self.snapshots: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.fail_actions = False
        self.vanish_during_action = False
        self._ids = itertools.count(100)

    def __call__(self, token: str) -> FakeDroplets:
        self.tokens.append(token)
        return self

    async def __aenter__(self) -> FakeDroplets:
        return self

    async def __aexit__(self, *_: Any) -> None:
        pass

    def add_droplet(self, name: str, status: str = "active") -> int:
        droplet_id = next(self._ids)
        self.droplets[droplet_id] = {
            "id": droplet_id,
            "name": name,
            "status": status,
            "networks": {"v4": [
                {"type": "private", "ip_address": "10.10.0.5"},
                {"type": "public", "ip_address": "203.0.113.5"},
            ]},
        }
        return droplet_id

    async def list_ssh_keys(self) -> list[dict[str, Any]]:
        return list(self.ssh_keys)

    async def create_ssh_key(self, name: str, public_key: str) -> dict[str, Any]:
        key = {"id": 1, "name": name, "public_key": public_key, "fingerprint": "fp:new"}
        self.ssh_keys.append(key)
        return key

    async def create_droplet(self, name, region, size, image, ssh_keys) -> dict[str, Any]:
        self.created.append({"name": name, "region": region, "size": size, "image": image, "ssh_keys": ssh_keys})
        droplet_id = self.add_droplet(name, status="new")
        self.pending[droplet_id] = ["new", "active"]
        return dict(self.droplets[droplet_id])

    async def get_droplet(self, droplet_id: int) -> dict[str, Any]:
        if droplet_id not in self.droplets:
            raise RemoteNotFoundError("droplet", str(droplet_id))
        if steps := self.pending.get(droplet_id):
            status = steps.pop(0)
            if status is None:
                del self.droplets[droplet_id]
                raise RemoteNotFoundError("droplet", str(droplet_id))
            self.droplets[droplet_id]["status"] = status
        return dict(self.droplets[droplet_id])

    async def delete_droplet(self, droplet_id: int) -> None:
        if droplet_id not in self.droplets:
            raise RemoteNotFoundError("droplet", str(droplet_id))
        self.pending[droplet_id] = [self.droplets[droplet_id]["status"], None]

    async def droplet_action(self, droplet_id: int, action: str) -> dict[str, Any]:
        if droplet_id not in self.droplets:
            raise RemoteNotFoundError("droplet", str(droplet_id))
        action_id = next(self._ids)
        self.actions[action_id] = {"id": action_id, "type": action, "status": "in-progress", "reads": 0}
        return dict(self.actions[action_id])

    async def get_action(self, droplet_id: int, action_id: int) -> dict[str, Any]:
        if self.vanish_during_action:
            self.droplets.pop(droplet_id, None)
        if droplet_id not in self.droplets:
            raise RemoteNotFoundError("droplet", str(droplet_id))
        action = self.actions[action_id]
        action["reads"] += 1
        if action["reads"] > 1 and action["status"] == "in-progress":
            if self.fail_actions:
                action["status"] = "errored"
            else:
                action["status"] = "completed"
                if droplet_id in self.droplets:
                    self.droplets[droplet_id]["status"] = _ACTION_RESULT[action["type"]]
        return dict(action)

    async def list_snapshots(self) -> list[dict[str, Any]]:
        return list(self.snapshots)


@pytest.fixture
def api() -> FakeDroplets:
    return FakeDroplets()


@pytest.fixture
def do_provider(api: FakeDroplets) -> DigitalOceanProvider:
    config = DigitalOcean(token="do-token", public_key="ssh-ed25519 AAAA do")
    return DigitalOceanProvider(
        "digitalocean", config, client_factory=api, wait=WaitConfig(attempts=5, interval=0),
    )


def options(**kwargs: Any) -> MachineOptions:
    kwargs.setdefault("instance_name", "web")
    return MachineOptions(machine_id="m-1", eventer=Eventer(), **kwargs)


def statuses(opts: MachineOptions) -> set[MachineState]:
    return {e.status for e in opts.eventer.events()}


class TestBuild:
    @pytest.mark.asyncio
    async def test_creates_droplet(self, api, do_provider):
        opts = options(username="root")
        artifact = await do_provider.build(opts)

        assert artifact.ip_address == "203.0.113.5"
        assert artifact.instance_name == "web"
        assert artifact.username == "root"
        assert api.droplets[int(artifact.instance_id)]["status"] == "active"
        assert api.created[0] == {
            "name": "web", "region": "nyc3", "size": "s-1vcpu-1gb",
            "image": "ubuntu-24-04-x64", "ssh_keys": ["fp:new"],
        }
        assert api.tokens == ["do-token"]
        assert opts.eventer.latest().percentage == 70
        assert statuses(opts) == {MachineState.BUILDING}

    @pytest.mark.asyncio
    async def test_builder_overrides(self, api, do_provider):
        await do_provider.build(options(builder={"region": "ams3", "size": "s-2vcpu-4gb", "image": "debian-12-x64"}))
        assert api.created[0]["region"] == "ams3"
        assert api.created[0]["size"] == "s-2vcpu-4gb"
        assert api.created[0]["image"] == "debian-12-x64"

    @pytest.mark.asyncio
    async def test_reuses_registered_key(self, api, do_provider):
        api.ssh_keys.append({"id": 7, "name": "kloud-deployment", "fingerprint": "fp:old"})
        await do_provider.build(options())
        assert api.created[0]["ssh_keys"] == ["fp:old"]
        assert len(api.ssh_keys) == 1

    @pytest.mark.asyncio
    async def test_configured_fingerprint_skips_lookup(self, api):
        provider = DigitalOceanProvider(
            "digitalocean",
            DigitalOcean(token="t", ssh_key_fingerprint="fp:cfg"),
            client_factory=api,
            wait=WaitConfig(attempts=5, interval=0),
        )
        await provider.build(options())
        assert api.created[0]["ssh_keys"] == ["fp:cfg"]

    @pytest.mark.asyncio
    async def test_missing_key_without_public_key(self, api):
        provider = DigitalOceanProvider("digitalocean", DigitalOcean(token="t"), client_factory=api)
        with pytest.raises(ConfigurationError, match="no public key"):
            await provider.build(options())
        assert api.created == []

    @pytest.mark.asyncio
    async def test_credential_token_wins(self, api, do_provider):
        await do_provider.build(options(credential={"token": "machine-token"}))
        assert api.tokens == ["machine-token"]


class TestPower:
    @pytest.mark.asyncio
    async def test_stop(self, api, do_provider):
        droplet_id = api.add_droplet("web")
        opts = options(instance_id=str(droplet_id))
        await do_provider.stop(opts)

        assert api.droplets[droplet_id]["status"] == "off"
        assert statuses(opts) == {MachineState.STOPPING}

    @pytest.mark.asyncio
    async def test_stop_missing_droplet_is_stopped(self, do_provider):
        await do_provider.stop(options(instance_id="999"))

    @pytest.mark.asyncio
    async def test_start(self, api, do_provider):
        droplet_id = api.add_droplet("web", status="off")
        artifact = await do_provider.start(options(instance_id=str(droplet_id)))

        assert artifact.instance_id == str(droplet_id)
        assert artifact.ip_address == "203.0.113.5"
        assert api.droplets[droplet_id]["status"] == "active"

    @pytest.mark.asyncio
    async def test_start_missing_droplet(self, do_provider):
        with pytest.raises(RemoteNotFoundError):
            await do_provider.start(options(instance_id="999"))

    @pytest.mark.asyncio
    async def test_restart(self, api, do_provider):
        droplet_id = api.add_droplet("web")
        opts = options(instance_id=str(droplet_id))
        await do_provider.restart(opts)
        assert statuses(opts) == {MachineState.REBOOTING}

    @pytest.mark.asyncio
    async def test_errored_action(self, api, do_provider):
        api.fail_actions = True
        droplet_id = api.add_droplet("web")
        with pytest.raises(RemoteAPIError, match="reboot"):
            await do_provider.restart(options(instance_id=str(droplet_id)))

    @pytest.mark.asyncio
    async def test_droplet_gone_while_stopping_is_stopped(self, api, do_provider):
        api.vanish_during_action = True
        droplet_id = api.add_droplet("web")
        await do_provider.stop(options(instance_id=str(droplet_id)))
        assert droplet_id not in api.droplets

    @pytest.mark.asyncio
    async def test_droplet_gone_while_rebooting(self, api, do_provider):
        api.vanish_during_action = True
        droplet_id = api.add_droplet("web")
        with pytest.raises(RemoteNotFoundError):
            await do_provider.restart(options(instance_id=str(droplet_id)))

    @pytest.mark.asyncio
    async def test_invalid_droplet_id(self, do_provider):
        with pytest.raises(ConfigurationError, match="invalid droplet id"):
            await do_provider.stop(options(instance_id="not-a-number"))


class TestDestroy:
    @pytest.mark.asyncio
    async def test_deletes_and_waits_until_gone(self, api, do_provider):
        droplet_id = api.add_droplet("web")
        opts = options(instance_id=str(droplet_id))
        await do_provider.destroy(opts)
        assert droplet_id not in api.droplets
        assert statuses(opts) == {MachineState.TERMINATING}

    @pytest.mark.asyncio
    async def test_already_gone(self, do_provider):
        await do_provider.destroy(options(instance_id="999"))

    @pytest.mark.asyncio
    async def test_nothing_to_destroy(self, api, do_provider):
        opts = options()
        await do_provider.destroy(opts)
        assert opts.eventer.latest().message == "Nothing to terminate"
        assert api.tokens == []


class TestInfo:
    @pytest.mark.asyncio
    async def test_running(self, api, do_provider):
        droplet_id = api.add_droplet("web")
        info = await do_provider.info(options(instance_id=str(droplet_id)))
        assert info.state == MachineState.RUNNING
        assert info.name == "web"

    @pytest.mark.asyncio
    async def test_powered_off(self, api, do_provider):
        droplet_id = api.add_droplet("web", status="off")
        info = await do_provider.info(options(instance_id=str(droplet_id)))
        assert info.state == MachineState.STOPPED

    @pytest.mark.asyncio
    async def test_gone_with_snapshot_is_stopped(self, api, do_provider):
        api.snapshots.append({"id": "s-1", "name": "web"})
        info = await do_provider.info(options(instance_id="999"))
        assert info.state == MachineState.STOPPED

    @pytest.mark.asyncio
    async def test_gone_without_snapshot_is_terminated(self, do_provider):
        info = await do_provider.info(options(instance_id="999"))
        assert info.state == MachineState.TERMINATED


    @pytest.mark.asyncio
    async def test_requires_eventer(self, api, do_provider):
        droplet_id = api.add_droplet("web")
        with pytest.raises(ConfigurationError, match="Eventer"):
            await do_provider.info(MachineOptions(machine_id="m-1", instance_id=str(droplet_id)))
        assert api.tokens == []


class TestHelpers:
    def test_get_public_ip(self):
        droplet = {"networks": {"v4": [
            {"type": "private", "ip_address": "10.0.0.2"},
            {"type": "public", "ip_address": "192.0.2.10"},
        ]}}
        assert get_public_ip(droplet) == "192.0.2.10"
        assert get_public_ip({}) == ""

    def test_get_token_fallbacks(self, monkeypatch):
        monkeypatch.setenv("DIGITALOCEAN_TOKEN", "env-token")
        assert get_token({"token": "cred"}, "cfg") == "cred"
        assert get_token({}, "cfg") == "cfg"
        assert get_token({}, None) == "env-token"

    def test_get_token_missing(self, monkeypatch):
        monkeypatch.delenv("DIGITALOCEAN_TOKEN", raising=False)
        with pytest.raises(ConfigurationError, match="DIGITALOCEAN_TOKEN"):
            get_token({}, None)
