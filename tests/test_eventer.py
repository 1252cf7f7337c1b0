from __future__ import annotations

import asyncio
import threading

import pytest
from pydantic import ValidationError

from kloud.eventer import Event, EventError, Eventer
from kloud.exceptions import RemoteAPIError
from kloud.machinestate import MachineState

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def event(n: int) -> Event:
    return Event(message=f"step {n}", percentage=n, status=MachineState.BUILDING)


class TestEvent:
    def test_defaults(self):
        e = Event()
        assert e.message == ""
        assert e.percentage == 0
        assert e.status == MachineState.UNKNOWN
        assert e.error is None
        assert not e.failed

    @pytest.mark.parametrize("percentage", [-1, 101])
    def test_percentage_bounds(self, percentage):
        with pytest.raises(ValidationError):
            Event(percentage=percentage)

    def test_error_from_exception(self):
        error = EventError.from_exception(RemoteAPIError("quota exceeded"))
        assert error.kind == "RemoteAPIError"
        assert error.message == "quota exceeded"
        assert Event(error=error).failed

    def test_frozen(self):
        with pytest.raises(ValidationError):
            event(1).percentage = 5  # type: ignore[misc]


class TestEventer:
    def test_empty(self):
        eventer = Eventer()
        assert eventer.events() == []
        assert eventer.latest() is None
        assert not eventer.closed

    def test_ids_are_unique_unless_given(self):
        assert Eventer().id != Eventer().id
        assert Eventer("op-1").id == "op-1"

    def test_push_order_and_latest(self):
        eventer = Eventer()
        for n in (10, 20, 30):
            eventer.push(event(n))
        assert [e.percentage for e in eventer.events()] == [10, 20, 30]
        assert eventer.latest().message == "step 30"

    def test_events_is_a_snapshot(self):
        eventer = Eventer()
        eventer.push(event(1))
        snapshot = eventer.events()
        eventer.push(event(2))
        assert len(snapshot) == 1
        assert len(eventer.events()) == 2

    def test_bounded_buffer_drops_oldest(self):
        eventer = Eventer(max_events=3)
        for n in range(5):
            eventer.push(event(n))
        assert [e.percentage for e in eventer.events()] == [2, 3, 4]

    def test_push_after_close_is_dropped(self):
        eventer = Eventer()
        eventer.push(event(1))
        eventer.close()
        eventer.push(event(2))
        assert eventer.closed
        assert [e.percentage for e in eventer.events()] == [1]

    def test_close_is_idempotent(self):
        eventer = Eventer()
        eventer.close()
        eventer.close()
        assert eventer.closed


class TestStream:
    @pytest.mark.asyncio
    async def test_replays_then_follows_until_closed(self):
        eventer = Eventer()
        eventer.push(event(1))

        async def consume() -> list[int]:
            return [e.percentage async for e in eventer.stream()]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        eventer.push(event(2))
        await asyncio.sleep(0)
        eventer.push(event(3))
        eventer.close()

        assert await asyncio.wait_for(task, timeout=1) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_closed_eventer_yields_retained_events(self):
        eventer = Eventer()
        eventer.push(event(5))
        eventer.close()
        assert [e.percentage async for e in eventer.stream()] == [5]

    @pytest.mark.asyncio
    async def test_push_from_another_thread(self):
        eventer = Eventer()

        def producer() -> None:
            for n in range(1, 6):
                eventer.push(event(n))
            eventer.close()

        async def consume() -> list[int]:
            return [e.percentage async for e in eventer.stream()]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        thread = threading.Thread(target=producer)
        thread.start()
        result = await asyncio.wait_for(task, timeout=2)
        thread.join()

        assert result == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_several_consumers(self):
        eventer = Eventer()

        async def consume() -> list[int]:
            return [e.percentage async for e in eventer.stream()]

        tasks = [asyncio.create_task(consume()) for _ in range(3)]
        await asyncio.sleep(0)
        eventer.push(event(7))
        eventer.close()

        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
        assert results == [[7], [7], [7]]
