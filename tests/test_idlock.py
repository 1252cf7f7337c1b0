from __future__ import annotations

import asyncio

import pytest

from kloud.exceptions import LockingInvariantViolation
from kloud.idlock import IdLock

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestIdLock:
    @pytest.mark.asyncio
    async def test_same_id_is_mutually_exclusive(self):
        locks = IdLock()
        active = 0
        peak = 0
        counter = 0

        async def worker() -> None:
            nonlocal active, peak, counter
            async with locks.lock("machine"):
                active += 1
                peak = max(peak, active)
                value = counter
                await asyncio.sleep(0)
                counter = value + 1
                active -= 1

        await asyncio.gather(*(worker() for _ in range(20)))

        assert peak == 1
        assert counter == 20
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_distinct_ids_do_not_block(self):
        locks = IdLock()
        release_a = asyncio.Event()
        b_acquired = asyncio.Event()

        async def hold_a() -> None:
            async with locks.lock("a"):
                await release_a.wait()

        async def take_b() -> None:
            async with locks.lock("b"):
                b_acquired.set()

        holder = asyncio.create_task(hold_a())
        await asyncio.sleep(0)
        await asyncio.wait_for(take_b(), timeout=1)
        assert b_acquired.is_set()
        assert "a" in locks

        release_a.set()
        await holder
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_removed_at_zero_refs_and_recreated(self):
        locks = IdLock()
        handle = await locks.acquire("x")
        assert locks.refs("x") == 1
        handle.release()
        assert "x" not in locks

        again = await locks.acquire("x")
        assert locks.refs("x") == 1
        again.release()
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        locks = IdLock()
        handle = await locks.acquire("x")
        handle.release()
        handle.release()
        assert handle.released
        assert locks.refs("x") == 0

    @pytest.mark.asyncio
    async def test_waiters_are_counted(self):
        locks = IdLock()
        handle = await locks.acquire("x")
        waiter = asyncio.create_task(locks.acquire("x"))
        await asyncio.sleep(0)
        assert locks.refs("x") == 2

        handle.release()
        second = await asyncio.wait_for(waiter, timeout=1)
        assert locks.refs("x") == 1
        second.release()
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_drops_its_reference(self):
        locks = IdLock()
        handle = await locks.acquire("x")
        waiter = asyncio.create_task(locks.acquire("x"))
        await asyncio.sleep(0)
        assert locks.refs("x") == 2

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert locks.refs("x") == 1

        handle.release()
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_when_body_raises(self):
        locks = IdLock()
        with pytest.raises(RuntimeError):
            async with locks.lock("x"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_release_of_vanished_entry_is_an_invariant_violation(self):
        locks = IdLock()
        handle = await locks.acquire("x")
        locks._entries.clear()
        with pytest.raises(LockingInvariantViolation):
            handle.release()
