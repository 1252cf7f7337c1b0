from __future__ import annotations

import logging

import pytest

from kloud import Eventer, Kloud, MachineOptions, WaitConfig
from kloud.providers.compute import ComputeProvider
from kloud.providers.memory import Memory, MemoryCloud, create_provider


def _options(machine_id: str = "m-1", **kwargs) -> MachineOptions:
    kwargs.setdefault("instance_name", f"kloud-{machine_id}")
    kwargs.setdefault("username", "tester")
    kwargs.setdefault("eventer", Eventer())
    return MachineOptions(machine_id=machine_id, **kwargs)


@pytest.fixture
def make_options():
    return _options


@pytest.fixture
def fast_wait() -> WaitConfig:
    return WaitConfig(attempts=10, interval=0)


@pytest.fixture
def memory(fast_wait: WaitConfig) -> tuple[ComputeProvider, MemoryCloud]:
    return create_provider("memory", Memory(steps=2), wait=fast_wait)


@pytest.fixture
def provider(memory: tuple[ComputeProvider, MemoryCloud]) -> ComputeProvider:
    return memory[0]


@pytest.fixture
def cloud(memory: tuple[ComputeProvider, MemoryCloud]) -> MemoryCloud:
    return memory[1]


@pytest.fixture
def kloud(provider: ComputeProvider) -> Kloud:
    return Kloud([provider])


@pytest.fixture
def kloud_logs(caplog: pytest.LogCaptureFixture):
    root = logging.getLogger("kloud")
    root.propagate = True
    caplog.set_level(logging.DEBUG, logger="kloud")
    try:
        yield caplog
    finally:
        root.propagate = False
