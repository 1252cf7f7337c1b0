from __future__ import annotations

import pytest

from kloud import MachineData, MachineState, MemoryStorage, ProviderArtifact, Storage

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


ARTIFACT = ProviderArtifact(instance_id="srv-1", instance_name="web", ip_address="10.0.0.1")


class TestMemoryStorage:
    def test_is_a_storage(self):
        assert isinstance(MemoryStorage(), Storage)

    def test_update_and_get(self):
        storage = MemoryStorage()
        storage.update(MachineData("m-1", "memory", MachineState.RUNNING, ARTIFACT))
        data = storage.get("m-1")
        assert data.state == MachineState.RUNNING
        assert data.artifact == ARTIFACT
        assert len(storage) == 1

    def test_update_without_artifact_keeps_previous(self):
        storage = MemoryStorage()
        storage.update(MachineData("m-1", "memory", MachineState.RUNNING, ARTIFACT))
        storage.update(MachineData("m-1", "memory", MachineState.STOPPED))
        data = storage.get("m-1")
        assert data.state == MachineState.STOPPED
        assert data.artifact == ARTIFACT

    def test_delete(self):
        storage = MemoryStorage()
        storage.update(MachineData("m-1", "memory", MachineState.RUNNING))
        storage.delete("m-1")
        storage.delete("m-1")
        assert storage.get("m-1") is None
        assert len(storage) == 0
