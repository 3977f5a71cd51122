"""Tests for the task dispatcher: epochs, cancellation, retries and streams."""

import asyncio

import pytest

from kvlens.core.dispatcher import Dispatcher, Task
from kvlens.store.streams import StreamHandle, StreamMessage
from kvlens.util.const import TaskKind, TaskState
from kvlens.util.errors import StreamError
from kvlens.util.types import Result, ErrorInfo


async def collect(dispatcher, count, timeout=2.0):
    """Poll until `count` outcomes arrived."""
    outcomes = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(outcomes) < count and loop.time() < deadline:
        outcomes.extend(dispatcher.poll_completed())
        await asyncio.sleep(0.005)
    return outcomes


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.005)
    return predicate()


def returning(value):
    async def op(ctx):
        return Result(ok=True, value=value)
    return op


class TestTask:
    """Test the task state machine."""

    def test_terminal_states_are_final(self):
        task = Task(id=1, slot="s", epoch=1, kind=TaskKind.READ, operation=returning(1))
        assert task.transition(TaskState.RUNNING)
        assert task.transition(TaskState.COMPLETED)
        assert not task.transition(TaskState.RUNNING)
        assert task.state is TaskState.COMPLETED


class TestSubmit:
    """Test submission, epochs and delivery."""

    @pytest.mark.asyncio
    async def test_epochs_are_monotonic_per_slot(self, dispatcher):
        assert dispatcher.submit("a", TaskKind.READ, returning(1)) == 1
        assert dispatcher.submit("a", TaskKind.READ, returning(2)) == 2
        assert dispatcher.submit("b", TaskKind.READ, returning(3)) == 1
        assert dispatcher.current_epoch("a") == 2
        assert dispatcher.current_epoch("never") == 0

    @pytest.mark.asyncio
    async def test_completed_outcome_is_delivered(self, dispatcher):
        epoch = dispatcher.submit("a", TaskKind.READ, returning("hello"))
        outcomes = await collect(dispatcher, 1)
        assert len(outcomes) == 1
        outcome = outcomes[0]
        assert (outcome.slot, outcome.epoch, outcome.state, outcome.value) == ("a", epoch, TaskState.COMPLETED, "hello")
        assert dispatcher.current_task("a") is None

    @pytest.mark.asyncio
    async def test_plain_return_value_is_wrapped(self, dispatcher):
        async def op(ctx):
            return 42

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].value == 42

    @pytest.mark.asyncio
    async def test_poll_completed_is_empty_when_idle(self, dispatcher):
        assert list(dispatcher.poll_completed()) == []

    @pytest.mark.asyncio
    async def test_operation_receives_connection(self, dispatcher, fake_conn):
        fake_conn.set("k", "v")

        async def op(ctx):
            return await ctx.conn.execute(["GET", "k"])

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].value == b"v"


class TestCancellation:
    """Test supersession and explicit cancel."""

    @pytest.mark.asyncio
    async def test_superseded_task_is_dropped_silently(self, dispatcher):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(ctx):
            started.set()
            await release.wait()
            return Result(ok=True, value="old")

        dispatcher.submit("a", TaskKind.READ, slow)
        await asyncio.wait_for(started.wait(), 1)
        first = dispatcher.current_task("a")

        epoch = dispatcher.submit("a", TaskKind.READ, returning("new"))
        outcomes = await collect(dispatcher, 1)
        release.set()
        await asyncio.sleep(0.02)
        outcomes.extend(dispatcher.poll_completed())

        assert [o.value for o in outcomes] == ["new"]
        assert outcomes[0].epoch == epoch
        assert first.state is TaskState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_bumps_epoch_and_suppresses_result(self, dispatcher):
        started = asyncio.Event()

        async def slow(ctx):
            started.set()
            await asyncio.sleep(10)
            return Result(ok=True, value="never")

        epoch = dispatcher.submit("a", TaskKind.READ, slow)
        await asyncio.wait_for(started.wait(), 1)
        task = dispatcher.current_task("a")

        assert dispatcher.cancel("a") is True
        assert dispatcher.current_epoch("a") == epoch + 1
        assert await wait_for(lambda: task.state is TaskState.CANCELLED)
        assert list(dispatcher.poll_completed()) == []

    @pytest.mark.asyncio
    async def test_cancel_without_live_task(self, dispatcher):
        assert dispatcher.cancel("idle") is False
        assert dispatcher.current_epoch("idle") == 1

    @pytest.mark.asyncio
    async def test_queued_task_cancelled_before_running_never_runs(self, fake_conn):
        d = Dispatcher(fake_conn, workers=1)
        d.start()
        try:
            gate = asyncio.Event()
            ran = []

            async def blocker(ctx):
                await gate.wait()
                return 1

            async def victim(ctx):
                ran.append(True)
                return 2

            d.submit("busy", TaskKind.READ, blocker)
            d.submit("b", TaskKind.READ, victim)
            d.cancel("b")
            gate.set()
            await collect(d, 1)
            await asyncio.sleep(0.02)
            assert ran == []
        finally:
            await d.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_operation(self, fake_conn):
        d = Dispatcher(fake_conn, workers=1)
        d.start()
        started, finished = asyncio.Event(), []

        async def slow(ctx):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(True)
            return Result(ok=True)

        d.submit("s", TaskKind.READ, slow)
        await asyncio.wait_for(started.wait(), 1)
        await d.shutdown()
        await asyncio.sleep(0.3)
        assert finished == []
        assert list(d.poll_completed()) == []

    @pytest.mark.asyncio
    async def test_cancelled_worker_takes_its_operation_down(self, fake_conn):
        d = Dispatcher(fake_conn, workers=1)
        d.start()
        started, finished = asyncio.Event(), []

        async def slow(ctx):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(True)

        d.submit("s", TaskKind.READ, slow)
        await asyncio.wait_for(started.wait(), 1)
        worker = d._worker_tasks[0]
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
        await asyncio.sleep(0.3)
        assert finished == []
        await d.shutdown()


class TestRetries:
    """Test transient-error retries for reads only."""

    @pytest.mark.asyncio
    async def test_read_is_retried_on_transient_error(self, dispatcher, fake_conn):
        fake_conn.set("k", "v")
        fake_conn.fail_next(times=2)

        async def op(ctx):
            return await ctx.conn.execute(["GET", "k"])

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.COMPLETED
        assert outcomes[0].value == b"v"
        assert len(fake_conn.calls) == 3

    @pytest.mark.asyncio
    async def test_read_gives_up_after_retry_limit(self, dispatcher, fake_conn):
        fake_conn.fail_next(times=10)

        async def op(ctx):
            return await ctx.conn.execute(["GET", "k"])

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.FAILED
        assert outcomes[0].error.code == "connection.lost"
        assert len(fake_conn.calls) == dispatcher.retry_limit + 1

    @pytest.mark.asyncio
    async def test_write_is_never_retried(self, dispatcher, fake_conn):
        fake_conn.fail_next(times=2)

        async def op(ctx):
            return await ctx.conn.execute(["SET", "k", "v"])

        dispatcher.submit("a", TaskKind.WRITE, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.FAILED
        assert len(fake_conn.calls) == 1

    @pytest.mark.asyncio
    async def test_protocol_error_is_not_retried(self, dispatcher, fake_conn):
        fake_conn.fail_next(code="protocol.response_error", message="WRONGTYPE")

        async def op(ctx):
            return await ctx.conn.execute(["GET", "k"])

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.FAILED
        assert outcomes[0].error.message == "WRONGTYPE"
        assert len(fake_conn.calls) == 1

    @pytest.mark.asyncio
    async def test_raising_operation_fails_the_task(self, dispatcher):
        async def op(ctx):
            raise RuntimeError("boom")

        dispatcher.submit("a", TaskKind.READ, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.FAILED
        assert outcomes[0].error.code == "task.error"
        assert "boom" in outcomes[0].error.message


class TestPool:
    """Test the worker bound."""

    @pytest.mark.asyncio
    async def test_running_tasks_never_exceed_worker_count(self, fake_conn):
        d = Dispatcher(fake_conn, workers=2)
        d.start()
        try:
            peak = 0
            running = 0

            async def op(ctx):
                nonlocal peak, running
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return 1

            for i in range(6):
                d.submit(f"slot-{i}", TaskKind.READ, op)
            outcomes = await collect(d, 6)
            assert len(outcomes) == 6
            assert peak <= 2
            assert d.stats()["running"] == 0
        finally:
            await d.shutdown()


class TestStreams:
    """Test open-ended stream tasks."""

    @pytest.mark.asyncio
    async def test_stream_items_share_the_epoch(self, dispatcher, fake_conn):
        async def op(ctx):
            return await ctx.conn.open_stream(["SUBSCRIBE", "news"])

        epoch = dispatcher.submit("stream", TaskKind.STREAM, op)
        assert await wait_for(lambda: fake_conn.streams)
        stream = fake_conn.streams[0]
        stream.push(StreamMessage("message", b"one", channel=b"news"))
        stream.push(StreamMessage("message", b"two", channel=b"news"))

        outcomes = await collect(dispatcher, 2)
        assert [o.value.payload for o in outcomes] == [b"one", b"two"]
        assert all(o.partial and o.epoch == epoch and o.state is TaskState.COMPLETED for o in outcomes)
        assert dispatcher.current_task("stream") is not None

    @pytest.mark.asyncio
    async def test_cancel_closes_the_stream(self, dispatcher, fake_conn):
        async def op(ctx):
            return await ctx.conn.open_stream(["MONITOR"])

        dispatcher.submit("stream", TaskKind.STREAM, op)
        assert await wait_for(lambda: fake_conn.streams)
        stream = fake_conn.streams[0]

        dispatcher.cancel("stream")
        assert await wait_for(lambda: stream.closed)
        stream.push(StreamMessage("monitor", "late"))
        await asyncio.sleep(0.02)
        assert list(dispatcher.poll_completed()) == []

    @pytest.mark.asyncio
    async def test_stream_end_fails_once(self, dispatcher, fake_conn):
        async def op(ctx):
            return await ctx.conn.open_stream(["SUBSCRIBE", "news"])

        dispatcher.submit("stream", TaskKind.STREAM, op)
        assert await wait_for(lambda: fake_conn.streams)
        fake_conn.streams[0].push(None)

        outcomes = await collect(dispatcher, 1)
        assert len(outcomes) == 1
        assert outcomes[0].state is TaskState.FAILED
        assert outcomes[0].error.code == "connection.stream_closed"
        assert await wait_for(lambda: fake_conn.streams[0].closed)
        assert dispatcher.current_task("stream") is None

    @pytest.mark.asyncio
    async def test_broken_stream_fails_with_its_error(self, dispatcher):
        async def broken():
            yield StreamMessage("message", b"first")
            raise ConnectionResetError("reset")

        closed = []

        async def closer():
            closed.append(True)

        async def op(ctx):
            return Result(ok=True, value=StreamHandle("test", broken(), closer))

        dispatcher.submit("stream", TaskKind.STREAM, op)
        outcomes = await collect(dispatcher, 2)
        assert outcomes[0].partial
        assert outcomes[1].state is TaskState.FAILED
        assert outcomes[1].error.code == "connection.lost"
        assert await wait_for(lambda: closed == [True])

    @pytest.mark.asyncio
    async def test_failed_open_is_reported(self, dispatcher, fake_conn):
        fake_conn.fail_next(code="protocol.response_error", message="ERR no permission")

        async def op(ctx):
            return await ctx.conn.open_stream(["SUBSCRIBE", "news"])

        dispatcher.submit("stream", TaskKind.STREAM, op)
        outcomes = await collect(dispatcher, 1)
        assert outcomes[0].state is TaskState.FAILED
        assert outcomes[0].error.message == "ERR no permission"


class TestStreamHandle:
    """Test the StreamHandle wrapper itself."""

    @pytest.mark.asyncio
    async def test_errors_are_classified(self):
        async def broken():
            raise OSError("gone")
            yield  # pragma: no cover

        handle = StreamHandle("t", broken(), classify=lambda e, op: ErrorInfo("connection.timeout", str(e)))
        with pytest.raises(StreamError) as exc:
            await handle.__anext__()
        assert exc.value.error.code == "connection.timeout"

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        calls = []

        async def empty():
            return
            yield  # pragma: no cover

        async def closer():
            calls.append(1)

        handle = StreamHandle("t", empty(), closer)
        await handle.close()
        await handle.close()
        assert calls == [1]
        assert handle.closed
        with pytest.raises(StopAsyncIteration):
            await handle.__anext__()
