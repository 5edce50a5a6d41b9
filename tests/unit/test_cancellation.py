import asyncio

import pytest

from parley.cancellation import CancellationToken, OperationCancelled


class TestCancellationToken:
    def test_starts_uncancelled(self):
        token = CancellationToken()
        assert not token.cancelled

        token.cancel()
        token.cancel()
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        async def value():
            return 7

        assert await CancellationToken().guard(value()) == 7

    @pytest.mark.asyncio
    async def test_guard_propagates_exception(self):
        async def boom():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            await CancellationToken().guard(boom())

    @pytest.mark.asyncio
    async def test_cancel_interrupts_blocked_await(self):
        token = CancellationToken()
        blocked = asyncio.Event()
        started = asyncio.Event()

        async def wait_forever():
            started.set()
            await blocked.wait()

        guarded = asyncio.create_task(token.guard(wait_forever()))
        await started.wait()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await guarded

    @pytest.mark.asyncio
    async def test_already_cancelled_fails_fast(self):
        token = CancellationToken()
        token.cancel()
        ran = []

        async def work():
            ran.append(True)

        with pytest.raises(OperationCancelled):
            await token.guard(work())
        assert ran == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(asyncio.TimeoutError):
            await CancellationToken().guard(slow(), timeout=0.01)

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_inner(self):
        token = CancellationToken()
        started = asyncio.Event()
        inner_cancelled = asyncio.Event()

        async def wait_forever():
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                inner_cancelled.set()
                raise

        guarded = asyncio.create_task(token.guard(wait_forever()))
        await started.wait()
        guarded.cancel()

        with pytest.raises(asyncio.CancelledError):
            await guarded
        await asyncio.wait_for(inner_cancelled.wait(), timeout=1)
