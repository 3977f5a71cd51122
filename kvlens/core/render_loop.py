"""Fixed-rate render loop: drain outcomes, build a frame, hand it to the UI."""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from .bus import Notification, RenderBus
from ..util.const import DEFAULTS
from ..util.logging import log

if TYPE_CHECKING:
    from ..console.session import ConsoleFrame
    from ..explorer.scanner import ExplorerSnapshot


@dataclass(frozen=True)
class RenderFrame:
    tick: int
    explorer: "ExplorerSnapshot"
    console: "ConsoleFrame"
    notifications: Tuple[Notification, ...]


class RenderLoop:
    """Fixed-rate, single-threaded tick: drain the bus, snapshot state, hand it to the surface."""

    def __init__(self, bus: RenderBus, explorer, console,
                 surface: Optional[Callable[[RenderFrame], None]] = None,
                 fps: int = DEFAULTS["FPS"]) -> None:
        self.bus = bus
        self.explorer = explorer
        self.console = console
        self.surface = surface
        self.fps = fps
        self.ticks = 0
        self._running = False

    def tick(self) -> RenderFrame:
        self.bus.tick()
        explorer = self.explorer.snapshot()
        self.console.observe_keys(explorer.key_names)
        frame = RenderFrame(
            tick=self.ticks,
            explorer=explorer,
            console=self.console.frame(),
            notifications=tuple(self.bus.drain_notifications()),
        )
        self.ticks += 1
        if self.surface is not None:
            try:
                self.surface(frame)
            except Exception as e:
                log("ERROR", "render", "surface_failed", error=str(e))
        return frame

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.fps
        self._running = True
        log("INFO", "render", "loop_started", fps=self.fps)
        while self._running:
            started = loop.time()
            self.tick()
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))
        log("INFO", "render", "loop_stopped", ticks=self.ticks)

    def stop(self) -> None:
        self._running = False
