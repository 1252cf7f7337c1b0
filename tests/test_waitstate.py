from __future__ import annotations

import asyncio

import pytest

from kloud.exceptions import ConfigurationError, ReconcileTimeoutError, RemoteAPIError
from kloud.machinestate import MachineState
from kloud.waitstate import WaitConfig, WaitState, interpolate

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def scripted(*states: MachineState):
    """Probe returning ``states`` in order and recording the percentages it saw."""
    seen: list[int] = []
    remaining = list(states)

    async def state_func(percentage: int) -> MachineState:
        seen.append(percentage)
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return state_func, seen


class TestInterpolate:
    def test_endpoints(self):
        assert interpolate(25, 60, 1, 10) == 25
        assert interpolate(25, 60, 10, 10) == 60

    def test_single_attempt_reports_start(self):
        assert interpolate(30, 70, 1, 1) == 30

    def test_linear_steps(self):
        assert [interpolate(20, 60, k, 5) for k in range(1, 6)] == [20, 30, 40, 50, 60]

    @pytest.mark.parametrize(("start", "finish", "attempts"), [(0, 100, 60), (25, 60, 7), (30, 30, 4), (0, 1, 100)])
    def test_monotonic_and_bounded(self, start, finish, attempts):
        values = [interpolate(start, finish, k, attempts) for k in range(1, attempts + 1)]
        assert values == sorted(values)
        assert all(start <= v <= finish for v in values)

    def test_attempt_past_budget_is_clamped(self):
        assert interpolate(10, 20, 50, 5) == 20


class TestWaitConfig:
    @pytest.mark.parametrize(
        "kwargs", [{"attempts": 0}, {"interval": -1.0}, {"timeout": 0}],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            WaitConfig(**kwargs)

    def test_defaults(self):
        config = WaitConfig()
        assert config.attempts == 60
        assert config.interval == 3.0
        assert config.timeout is None


class TestWaitState:
    @pytest.mark.parametrize(("start", "finish"), [(-1, 50), (60, 50), (0, 101)])
    def test_invalid_window(self, start, finish):
        state_func, _ = scripted(MachineState.RUNNING)
        with pytest.raises(ConfigurationError):
            WaitState(state_func, MachineState.RUNNING, start, finish)

    @pytest.mark.asyncio
    async def test_returns_finish_when_desired_state_is_seen(self):
        state_func, seen = scripted(MachineState.RUNNING)
        result = await WaitState(
            state_func, MachineState.RUNNING, 25, 60, config=WaitConfig(attempts=10, interval=0),
        ).wait()
        assert result == 60
        assert seen == [25]

    @pytest.mark.asyncio
    async def test_passes_interpolated_percentages(self):
        state_func, seen = scripted(
            MachineState.BUILDING, MachineState.BUILDING, MachineState.BUILDING,
            MachineState.BUILDING, MachineState.RUNNING,
        )
        await WaitState(
            state_func, MachineState.RUNNING, 20, 60, config=WaitConfig(attempts=5, interval=0),
        ).wait()
        assert seen == [20, 30, 40, 50, 60]

    @pytest.mark.asyncio
    async def test_sleeps_interval_between_attempts(self):
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        state_func, _ = scripted(MachineState.BUILDING, MachineState.BUILDING, MachineState.RUNNING)
        await WaitState(
            state_func, MachineState.RUNNING,
            config=WaitConfig(attempts=10, interval=2.5), sleep=fake_sleep,
        ).wait()
        assert sleeps == [2.5, 2.5]

    @pytest.mark.asyncio
    async def test_probe_error_propagates_immediately(self):
        calls = 0

        async def state_func(percentage: int) -> MachineState:
            nonlocal calls
            calls += 1
            raise RemoteAPIError("boom")

        with pytest.raises(RemoteAPIError, match="boom"):
            await WaitState(
                state_func, MachineState.RUNNING, config=WaitConfig(attempts=5, interval=0),
            ).wait()
        assert calls == 1

    @pytest.mark.asyncio
    async def test_probe_error_on_second_attempt_stops_polling(self):
        err = RemoteAPIError("server vanished")
        calls = 0

        async def state_func(percentage: int) -> MachineState:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise err
            return MachineState.BUILDING

        with pytest.raises(RemoteAPIError) as exc_info:
            await WaitState(
                state_func, MachineState.RUNNING, config=WaitConfig(attempts=5, interval=0),
            ).wait()
        assert exc_info.value is err
        assert calls == 2

    @pytest.mark.asyncio
    async def test_attempt_budget_exhausted(self):
        state_func, seen = scripted(MachineState.BUILDING)
        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await WaitState(
                state_func, MachineState.RUNNING, 30, 70, config=WaitConfig(attempts=3, interval=0),
            ).wait()

        error = exc_info.value
        assert error.desired_state == MachineState.RUNNING
        assert error.last_state == MachineState.BUILDING
        assert error.state == MachineState.BUILDING
        assert error.attempts == 3
        assert seen == [30, 50, 70]

    @pytest.mark.asyncio
    async def test_timeout_budget_exhausted(self):
        state_func, _ = scripted(MachineState.STOPPING)
        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await asyncio.wait_for(
                WaitState(
                    state_func, MachineState.STOPPED,
                    config=WaitConfig(attempts=100_000, interval=0.01, timeout=0.05),
                ).wait(),
                timeout=5,
            )
        assert exc_info.value.last_state == MachineState.STOPPING
        assert exc_info.value.attempts < 100_000
