"""Console application: wires connection, dispatcher, bus, explorer and session together."""

import asyncio
from pathlib import Path
from typing import Optional

from prompt_toolkit.patch_stdout import patch_stdout

from .parser import split_args
from .session import ConsoleSession
from .ui import ConsoleUI
from ..config.schema import AppCfg, DataSourceCfg
from ..core.bus import RenderBus
from ..core.dispatcher import Dispatcher
from ..core.render_loop import RenderLoop
from ..decode import DecoderChain
from ..explorer.scanner import KeyScanner
from ..store.connection import ConnectionManager
from ..store.persist import HistoryStore
from ..util.const import NoticeKind
from ..util.errors import CommandParseError
from ..util.paths import config_home
from ..util.types import Result, ErrorInfo
from ..util.logging import log


class ConsoleApp:
    """Main console application with the render loop ticking beside the prompt."""

    def __init__(self, source: DataSourceCfg, cfg: Optional[AppCfg] = None,
                 home: Optional[Path] = None, ui: Optional[ConsoleUI] = None) -> None:
        self.source = source
        self.cfg = cfg or AppCfg()
        self.home = home or config_home()
        self.ui = ui or ConsoleUI()

        self.connections: Optional[ConnectionManager] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.bus: Optional[RenderBus] = None
        self.scanner: Optional[KeyScanner] = None
        self.session: Optional[ConsoleSession] = None
        self.render_loop: Optional[RenderLoop] = None
        self._render_task: Optional[asyncio.Task] = None
        self._running = False

    async def bootstrap(self, connections: Optional[ConnectionManager] = None) -> Result[None]:
        """Connect to the data source and build the core components."""
        try:
            log("INFO", "console", "bootstrap_start", source=self.source.name)
            self.connections = connections or ConnectionManager(self.source)
            opened = await self.connections.open()
            if not opened.ok:
                return opened

            cfg = self.cfg
            chain = DecoderChain()
            self.dispatcher = Dispatcher(self.connections, workers=cfg.workers, retry_limit=cfg.retry_limit,
                                         retry_backoff_sec=cfg.retry_backoff_sec)
            self.bus = RenderBus(self.dispatcher)
            self.scanner = KeyScanner(self.dispatcher, self.bus, chain, delimiter=cfg.key_delimiter,
                                      batch_size=cfg.scan_size, page_size=cfg.inspect_page_size)
            self.session = ConsoleSession(self.dispatcher, self.bus, chain, history_size=cfg.history_size,
                                          output_max_lines=cfg.output_max_lines,
                                          history_store=HistoryStore(str(self.home / "history.jsonl")))
            self.ui.set_app(self)
            self.render_loop = RenderLoop(self.bus, self.scanner, self.session, surface=self.ui.render,
                                          fps=cfg.fps)
            self.dispatcher.start()
            self._running = True
            log("INFO", "console", "bootstrap_complete")
            return Result(ok=True)
        except Exception as e:
            log("ERROR", "console", "bootstrap_failed", error=str(e))
            return Result(ok=False, error=ErrorInfo("console.bootstrap_failed", str(e)))

    def run(self) -> int:
        """Run the console application; returns a process exit code."""
        return asyncio.run(self._run())

    async def _run(self) -> int:
        bootstrap_result = await self.bootstrap()
        if not bootstrap_result.ok:
            print(f"Failed to connect: {bootstrap_result.error.message}")
            return 1

        with patch_stdout():
            self._render_task = asyncio.create_task(self.render_loop.run())
            self.scanner.start_scan("*")
            self.ui.notify(f"Connected to {self.source.url}. Press F1 or type :help.", NoticeKind.INFO)
            try:
                while self._running:
                    try:
                        line = await self.ui.read_command()
                    except EOFError:
                        break
                    if line:
                        self.execute(line)
                    if self.session.exit_requested:
                        break
            finally:
                await self.shutdown()
        return 0

    def execute(self, line: str) -> None:
        """Route a line: ':'-commands drive the explorer, everything else goes to the session."""
        if not line.startswith(":"):
            self.session.submit_line(line)
            return
        try:
            args = split_args(line[1:])
        except CommandParseError as e:
            self.ui.notify(str(e), NoticeKind.ERROR)
            return
        if not args:
            return
        cmd, rest = args[0].lower(), args[1:]

        if cmd == "scan":
            batch = None
            if len(rest) > 1:
                if not rest[1].isdigit() or int(rest[1]) < 1:
                    self.ui.notify("batch size must be a positive integer", NoticeKind.ERROR)
                    return
                batch = int(rest[1])
            self.scanner.start_scan(rest[0] if rest else "*", batch)
        elif cmd == "filter":
            text = " ".join(rest)
            mode = "pattern" if any(c in text for c in "*?[") else "fuzzy"
            self.scanner.set_filter(text, mode)
            self.ui.notify(f"Filter {'cleared' if not text else f'set ({mode}): {text}'}", NoticeKind.INFO)
        elif cmd == "tree":
            self.ui.print_tree(self.scanner.snapshot())
        elif cmd == "inspect":
            if not rest:
                self.ui.notify("usage: :inspect <key>", NoticeKind.ERROR)
                return
            self.scanner.inspect(rest[0])
        elif cmd == "cancel":
            self.cancel()
        elif cmd == "help":
            self.ui.print_help()
        elif cmd in ("quit", "exit"):
            self.session.exit_requested = True
        else:
            self.ui.notify(f"Unknown command :{cmd} (try :help)", NoticeKind.ERROR)

    def cancel(self) -> None:
        if self.session.cancel_stream():
            return
        if self.scanner.stop():
            self.ui.notify("Scan stopped", NoticeKind.INFO)

    async def shutdown(self) -> None:
        """Stop the render loop, persist history and release the connection."""
        try:
            self._running = False
            if self.render_loop is not None:
                self.render_loop.stop()
            if self._render_task is not None:
                await self._render_task
            if self.session is not None:
                saved = self.session.close()
                if not saved.ok:
                    log("WARN", "console", "history_save_failed", error=saved.error.message)
            if self.dispatcher is not None:
                await self.dispatcher.shutdown()
            if self.connections is not None:
                await self.connections.close()
            log("INFO", "console", "shutdown_complete")
        except Exception as e:
            log("ERROR", "console", "shutdown_error", error=str(e))
