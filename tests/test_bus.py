"""Tests for the render event bus and the render loop."""

import asyncio
import random

import pytest

from kvlens.core.bus import RenderBus
from kvlens.core.render_loop import RenderLoop
from kvlens.util.const import NoticeKind, TaskKind, TaskState
from kvlens.util.types import Result


def sleeping(value, delay):
    async def op(ctx):
        await asyncio.sleep(delay)
        return Result(ok=True, value=value)
    return op


class TestRenderBus:
    """Test epoch filtering and routing."""

    @pytest.mark.asyncio
    async def test_only_the_newest_epoch_is_applied(self, dispatcher, bus, pump):
        applied = []
        bus.route("slot", lambda o: applied.append(o.value))

        rng = random.Random(7)
        for i in range(6):
            dispatcher.submit("slot", TaskKind.READ, sleeping(i, rng.uniform(0, 0.03)))

        assert await pump(bus, lambda: applied)
        await asyncio.sleep(0.05)
        bus.tick()
        assert applied == [5]

    @pytest.mark.asyncio
    async def test_outcome_in_flight_when_cancelled_is_dropped(self, dispatcher, bus):
        applied = []
        bus.route("slot", applied.append)

        dispatcher.submit("slot", TaskKind.READ, sleeping("late", 0))
        for _ in range(100):
            if dispatcher.current_task("slot") is None:
                break
            await asyncio.sleep(0.005)

        # The worker finished before the cancel; the bus still has to reject it.
        dispatcher.cancel("slot")
        assert bus.tick() == 0
        assert applied == []
        assert bus.dropped == 1

    @pytest.mark.asyncio
    async def test_slots_are_independent(self, dispatcher, bus, pump):
        seen = {}
        bus.route("a", lambda o: seen.setdefault("a", o.value))
        bus.route("b", lambda o: seen.setdefault("b", o.value))

        dispatcher.submit("a", TaskKind.READ, sleeping(1, 0.01))
        dispatcher.submit("b", TaskKind.READ, sleeping(2, 0))

        assert await pump(bus, lambda: len(seen) == 2)
        assert seen == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_handler_failure_becomes_notification(self, dispatcher, bus, pump):
        def explode(outcome):
            raise ValueError("bad reply")

        bus.route("slot", explode)
        dispatcher.submit("slot", TaskKind.READ, sleeping(1, 0))

        notes = []
        assert await pump(bus, lambda: notes.extend(bus.drain_notifications()) or notes)
        assert notes[0].kind is NoticeKind.ERROR
        assert "bad reply" in notes[0].format()
        assert bus.applied == 0

    @pytest.mark.asyncio
    async def test_unrouted_outcomes_are_ignored(self, dispatcher, bus, pump):
        dispatcher.submit("nobody", TaskKind.READ, sleeping(1, 0))
        await asyncio.sleep(0.02)
        assert bus.tick() == 0

    def test_notifications_drain_once(self):
        bus = RenderBus(dispatcher=None)
        bus.notify(NoticeKind.WARN, "slow", title="Scan")
        notes = bus.drain_notifications()
        assert [n.format() for n in notes] == ["Scan: slow"]
        assert notes[0].expires_at > 0
        assert bus.drain_notifications() == []


class StubExplorer:
    key_names = ("a", "b")

    def snapshot(self):
        return self


class StubConsole:
    def __init__(self):
        self.observed = None

    def observe_keys(self, keys):
        self.observed = keys

    def frame(self):
        return "console-frame"


class TestRenderLoop:
    """Test the fixed-rate tick."""

    @pytest.mark.asyncio
    async def test_tick_builds_a_frame(self, dispatcher, bus):
        frames = []
        console = StubConsole()
        loop = RenderLoop(bus, StubExplorer(), console, surface=frames.append)
        bus.notify(NoticeKind.INFO, "hello")

        frame = loop.tick()
        assert frames == [frame]
        assert frame.tick == 0
        assert frame.console == "console-frame"
        assert console.observed == ("a", "b")
        assert [n.msg for n in frame.notifications] == ["hello"]

    @pytest.mark.asyncio
    async def test_surface_errors_do_not_escape(self, dispatcher, bus):
        def broken(frame):
            raise RuntimeError("terminal gone")

        loop = RenderLoop(bus, StubExplorer(), StubConsole(), surface=broken)
        loop.tick()
        assert loop.ticks == 1

    @pytest.mark.asyncio
    async def test_run_ticks_until_stopped(self, dispatcher, bus):
        loop = RenderLoop(bus, StubExplorer(), StubConsole(), fps=100)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.stop()
        await asyncio.wait_for(task, 1)
        assert loop.ticks >= 2

    @pytest.mark.asyncio
    async def test_tick_applies_outcomes(self, dispatcher, bus):
        applied = []
        bus.route("slot", lambda o: applied.append(o.state))
        dispatcher.submit("slot", TaskKind.READ, sleeping(1, 0))
        await asyncio.sleep(0.02)
        RenderLoop(bus, StubExplorer(), StubConsole()).tick()
        assert applied == [TaskState.COMPLETED]
