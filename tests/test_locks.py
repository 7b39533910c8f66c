"""Tests for keyed asyncio locks."""

from __future__ import annotations

import asyncio

import pytest

from flowgate.infra.locks import KeyedMutex, LockBusy


class TestAcquireNowait:
    @pytest.mark.asyncio
    async def test_second_holder_fails_fast(self):
        locks = KeyedMutex("test")
        async with locks.acquire_nowait("conn-1"):
            assert locks.locked("conn-1")
            with pytest.raises(LockBusy) as excinfo:
                async with locks.acquire_nowait("conn-1"):
                    pass
            assert excinfo.value.key == "conn-1"

    @pytest.mark.asyncio
    async def test_other_keys_are_independent(self):
        locks = KeyedMutex("test")
        async with locks.acquire_nowait("conn-1"):
            async with locks.acquire_nowait("conn-2"):
                assert locks.locked("conn-2")

    @pytest.mark.asyncio
    async def test_released_on_exception(self):
        locks = KeyedMutex("test")
        with pytest.raises(RuntimeError):
            async with locks.acquire_nowait("conn-1"):
                raise RuntimeError("boom")
        assert not locks.locked("conn-1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_concurrent_tasks_exactly_one_wins(self):
        locks = KeyedMutex("test")
        entered = []

        async def _write(tag: str) -> str:
            async with locks.acquire_nowait("conn-1"):
                entered.append(tag)
                await asyncio.sleep(0.02)
            return tag

        results = await asyncio.gather(_write("a"), _write("b"), return_exceptions=True)
        assert len(entered) == 1
        assert sum(isinstance(r, LockBusy) for r in results) == 1


class TestHold:
    @pytest.mark.asyncio
    async def test_serializes_holders(self):
        locks = KeyedMutex("test")
        order = []

        async def _work(tag: str) -> None:
            async with locks.hold("tenant-1"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(_work("a"), _work("b"), _work("c"))

        # No interleaving: every "in" is immediately followed by its "out"
        for i in range(0, len(order), 2):
            assert order[i].split("-")[0] == order[i + 1].split("-")[0]

    @pytest.mark.asyncio
    async def test_entries_dropped_when_idle(self):
        locks = KeyedMutex("test")

        async def _work() -> None:
            async with locks.hold("tenant-1"):
                await asyncio.sleep(0)

        await asyncio.gather(*(_work() for _ in range(5)))
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiters_share_the_same_lock(self):
        locks = KeyedMutex("test")
        release = asyncio.Event()
        inside = []

        async def _first() -> None:
            async with locks.hold("k"):
                inside.append("first")
                await release.wait()

        async def _second() -> None:
            async with locks.hold("k"):
                inside.append("second")

        t1 = asyncio.create_task(_first())
        await asyncio.sleep(0)
        t2 = asyncio.create_task(_second())
        await asyncio.sleep(0.01)
        assert inside == ["first"]

        release.set()
        await asyncio.gather(t1, t2)
        assert inside == ["first", "second"]
        assert len(locks) == 0
