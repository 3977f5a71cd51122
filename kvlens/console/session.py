"""Console session: line parsing, execution through the dispatcher, output and history.

One-shot commands run on the ``console.exec`` slot; SUBSCRIBE, PSUBSCRIBE and
MONITOR open an unbounded stream on ``console.stream`` whose messages arrive
as partial outcomes until the stream is cancelled.  Entering any new line
while a stream is open cancels it first.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Tuple

from .commands import command_name, task_kind
from .completer import ConsoleCompleter
from .format import error_lines, message_to_lines, reply_to_lines
from .history import CommandHistory
from .parser import split_args
from ..core.bus import RenderBus
from ..core.dispatcher import Dispatcher, Outcome, TaskContext
from ..decode import DecoderChain
from ..store.connection import key_to_bytes
from ..store.persist import HistoryStore
from ..util.const import DEFAULTS, NoticeKind, Slot, TaskKind, TaskState
from ..util.errors import CommandParseError, ErrorKind
from ..util.types import Result
from ..util.logging import log


@dataclass(frozen=True)
class CommandResult:
    success: bool
    latency: float
    output_lines: Tuple[str, ...]
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class ConsoleFrame:
    history: Tuple[str, ...]
    output: Tuple[str, ...]
    output_offset: int          # absolute index of output[0] among every line ever written
    streaming: bool
    stream_name: Optional[str]
    pending: bool
    last_result: Optional[CommandResult]


class ConsoleSession:
    """Lives for one connected data source; discarded on disconnect."""

    def __init__(self, dispatcher: Dispatcher, bus: RenderBus, chain: Optional[DecoderChain] = None,
                 history_size: int = DEFAULTS["HISTORY_SIZE"],
                 output_max_lines: int = DEFAULTS["OUTPUT_MAX_LINES"],
                 history_store: Optional[HistoryStore] = None,
                 completer: Optional[ConsoleCompleter] = None) -> None:
        self.dispatcher = dispatcher
        self.bus = bus
        self.chain = chain or DecoderChain()
        self.history = CommandHistory(history_size)
        self.history_store = history_store
        self.completer = completer or ConsoleCompleter()
        self.output: Deque[str] = deque(maxlen=output_max_lines)
        self.written = 0
        self.active_stream_task: Optional[int] = None
        self.stream_name: Optional[str] = None
        self.last_result: Optional[CommandResult] = None
        self.exit_requested = False
        self._exec_command = ""
        self._observed: Optional[Tuple[str, ...]] = None
        self._version = 0
        self._frame: Optional[ConsoleFrame] = None
        self._frame_version = -1

        if history_store is not None:
            self.history.load(history_store.load())

        bus.route(Slot.CONSOLE_EXEC.value, self._on_exec)
        bus.route(Slot.CONSOLE_STREAM.value, self._on_stream)

    @property
    def streaming(self) -> bool:
        return self.active_stream_task is not None

    def _write(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.output.append(line)
            self.written += 1
        self._version += 1

    def submit_line(self, text: str) -> Optional[str]:
        """Run one console line; returns the slot it was submitted on, None if handled locally."""
        line = text.strip()
        if not line:
            return None
        self.history.append(line)
        self.cancel_stream()
        self._write([f"> {line}"])

        try:
            args = split_args(line)
        except CommandParseError as e:
            lines = error_lines(str(e))
            self._write(lines)
            self.last_result = CommandResult(False, 0.0, tuple(lines), ErrorKind.PROTOCOL)
            return None
        if not args:
            return None

        kind = task_kind(args)
        if kind is None:
            self._run_local(command_name(args))
            return None

        wire = [key_to_bytes(a) for a in args]
        if kind is TaskKind.STREAM:
            return self._open_stream(line, wire)

        self._exec_command = command_name(args)

        async def run(ctx: TaskContext) -> Result:
            return await ctx.conn.execute(wire)

        self.dispatcher.submit(Slot.CONSOLE_EXEC.value, kind, run)
        log("DEBUG", "console", "command_submitted", command=self._exec_command, kind=kind.value)
        return Slot.CONSOLE_EXEC.value

    def _open_stream(self, line: str, wire: List[bytes]) -> str:
        async def open_stream(ctx: TaskContext) -> Result:
            return await ctx.conn.open_stream(wire)

        slot = Slot.CONSOLE_STREAM.value
        self.dispatcher.submit(slot, TaskKind.STREAM, open_stream)
        self.active_stream_task = self.dispatcher.current_task(slot).id
        self.stream_name = line
        self._write(["Reading messages... (:cancel to stop)"])
        log("INFO", "console", "stream_requested", stream=line)
        return slot

    def _run_local(self, name: str) -> None:
        if name == "CLEAR":
            self.output.clear()
            self._version += 1
        else:
            self.exit_requested = True
            log("INFO", "console", "exit_requested")

    def cancel_stream(self) -> bool:
        """Stop the open stream; buffered messages for it are dropped by epoch."""
        if self.active_stream_task is None:
            return False
        self.dispatcher.cancel(Slot.CONSOLE_STREAM.value)
        log("INFO", "console", "stream_cancelled", stream=self.stream_name)
        self.active_stream_task = None
        self.stream_name = None
        self._write(["(stream closed)"])
        return True

    def close(self) -> Result[None]:
        """Cancel in-flight work and persist the history."""
        self.cancel_stream()
        self.dispatcher.cancel(Slot.CONSOLE_EXEC.value)
        if self.history_store is None:
            return Result(ok=True)
        return self.history_store.save(self.history.records(), self.history.limit)

    def _on_exec(self, outcome: Outcome) -> None:
        if outcome.state is TaskState.COMPLETED:
            lines = reply_to_lines(outcome.value, self.chain, self._exec_command)
            self.last_result = CommandResult(True, outcome.latency, tuple(lines))
        else:
            lines = error_lines(outcome.error.message)
            kind = ErrorKind.of(outcome.error)
            self.last_result = CommandResult(False, outcome.latency, tuple(lines), kind)
            if kind is ErrorKind.CONNECTION:
                self.bus.notify(NoticeKind.ERROR, outcome.error.message, title="Connection")
        self._write(lines)

    def _on_stream(self, outcome: Outcome) -> None:
        if outcome.task_id != self.active_stream_task:
            return
        if outcome.partial:
            self._write(message_to_lines(outcome.value, self.chain))
            return
        # The only terminal outcome a stream produces is a failure.
        lines = error_lines(outcome.error.message)
        self._write(lines)
        self.bus.notify(NoticeKind.WARN, outcome.error.message, title=f"{self.stream_name} ended")
        self.last_result = CommandResult(False, outcome.latency, tuple(lines), ErrorKind.of(outcome.error))
        self.active_stream_task = None
        self.stream_name = None

    def history_prev(self) -> Optional[str]:
        return self.history.prev()

    def history_next(self) -> Optional[str]:
        return self.history.next()

    def autocomplete(self, prefix: str) -> List[str]:
        return self.completer.autocomplete(prefix)

    def observe_keys(self, keys: Tuple[str, ...]) -> None:
        if keys is self._observed:
            return
        self._observed = keys
        self.completer.update_keys(keys)

    def frame(self) -> ConsoleFrame:
        pending = self.dispatcher.current_task(Slot.CONSOLE_EXEC.value) is not None
        if self._frame is None or self._frame_version != self._version or self._frame.pending != pending:
            self._frame = ConsoleFrame(
                history=tuple(self.history),
                output=tuple(self.output),
                output_offset=self.written - len(self.output),
                streaming=self.streaming,
                stream_name=self.stream_name,
                pending=pending,
                last_result=self.last_result,
            )
            self._frame_version = self._version
        return self._frame
