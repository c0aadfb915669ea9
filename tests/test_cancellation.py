import asyncio

import pytest

from cancellation import CancellationScope, CancellationToken, OperationCancelled


async def answer_after(seconds: float, value):
    await asyncio.sleep(seconds)
    return value


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_run_returns_the_result(self):
        token = CancellationToken("s1", "load")
        assert await token.run(answer_after(0, 42)) == 42
        assert token.done

    @pytest.mark.asyncio
    async def test_cancelled_before_run(self):
        token = CancellationToken("s1", "load")
        token.cancel()
        with pytest.raises(OperationCancelled):
            await token.run(answer_after(0, 42))

    @pytest.mark.asyncio
    async def test_cancel_while_running(self):
        token = CancellationToken("s1", "load")
        task = asyncio.create_task(token.run(answer_after(10, 42)))
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(OperationCancelled):
            await task

    @pytest.mark.asyncio
    async def test_timeout(self):
        token = CancellationToken("s1", "load")
        with pytest.raises(TimeoutError):
            await token.run(answer_after(10, 42), timeout=0.05)

    @pytest.mark.asyncio
    async def test_result_after_cancel_is_discarded(self):
        token = CancellationToken("s1", "load")

        async def cancel_then_answer():
            token.cancel()
            return 42

        with pytest.raises(OperationCancelled):
            await token.run(cancel_then_answer())

    @pytest.mark.asyncio
    async def test_cancel_lets_a_write_finish(self):
        token = CancellationToken("s1", "update", abortable=False)
        call = asyncio.ensure_future(answer_after(0.05, 42))
        task = asyncio.create_task(token.run(call))
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(OperationCancelled):
            await task
        assert not call.cancelled()
        assert call.result() == 42

    @pytest.mark.asyncio
    async def test_pending_future_is_cancelled_when_already_cancelled(self):
        token = CancellationToken("s1", "load")
        token.cancel()
        call = asyncio.ensure_future(answer_after(10, 42))
        with pytest.raises(OperationCancelled):
            await token.run(call)
        await asyncio.sleep(0)
        assert call.cancelled()


class TestCancellationScope:
    @pytest.mark.asyncio
    async def test_begin_cancels_previous_for_same_key(self):
        scope = CancellationScope("progress")
        first = scope.begin("s1", "load")
        task = asyncio.create_task(first.run(answer_after(10, 1)))
        await asyncio.sleep(0.01)

        second = scope.begin("s1", "update")
        assert first.cancelled
        assert not second.cancelled
        with pytest.raises(OperationCancelled):
            await task

    @pytest.mark.asyncio
    async def test_other_keys_are_left_alone(self):
        scope = CancellationScope("progress")
        first = scope.begin("s1", "load")
        task = asyncio.create_task(first.run(answer_after(0.05, 1)))
        await asyncio.sleep(0.01)

        scope.begin("s2", "load")
        assert not first.cancelled
        assert await task == 1

    def test_finished_token_is_forgotten(self):
        scope = CancellationScope("progress")
        token = scope.begin("s1", "load")
        assert scope.active_keys() == ["s1"]
        scope.finish(token)
        assert scope.active_keys() == []

    def test_finish_keeps_a_newer_token(self):
        scope = CancellationScope("progress")
        old = scope.begin("s1", "load")
        scope.begin("s1", "update")
        scope.finish(old)
        assert scope.active_keys() == ["s1"]

    def test_cancel_all(self):
        scope = CancellationScope("progress")
        tokens = [scope.begin(key, "load") for key in ["a", "b", "c"]]
        scope.cancel_all()
        assert all(t.cancelled for t in tokens)
        assert scope.active_keys() == []
