"""Console UI: prompt-toolkit prompt plus a print-based render surface."""

from typing import TYPE_CHECKING, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggest, Suggestion
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys

from .history import CommandHistory
from ..util.const import NoticeKind
from ..util.logging import log

if TYPE_CHECKING:
    from ..core.render_loop import RenderFrame
    from ..explorer.scanner import ExplorerSnapshot, KeyDetail

HELP_TEXT = """
kvlens console
==============

Anything not starting with ':' is sent to the server as a command, e.g.
  GET user:1        HGETALL session:42        SUBSCRIBE news

Explorer:
  :scan [pattern] [batch]   - Rescan the keyspace (default pattern '*')
  :filter [text]            - Filter the key tree; '*' or '?' makes it a glob
  :tree                     - Print the (filtered) key tree
  :inspect <key>            - Show type, TTL, size and the first page of a key

Session:
  :cancel                   - Stop the open stream, or the running scan
  :help                     - Show this help
  clear                     - Clear console output
  exit | quit               - Leave the console

Keys:
  F1 help   F2 cancel   F3 status   Up/Down history   TAB completion
"""

_PREFIX = {NoticeKind.INFO: "[INFO]", NoticeKind.WARN: "[WARN]", NoticeKind.ERROR: "[ERROR]"}


class HistorySuggest(AutoSuggest):
    """Inline hint from the newest history entry extending the typed text."""

    def __init__(self, history: CommandHistory) -> None:
        self.history = history

    def get_suggestion(self, buffer, document) -> Optional[Suggestion]:
        line = self.history.suggest(document.text)
        if line is None:
            return None
        return Suggestion(line[len(document.text):])


class ConsoleUI:
    """Reads lines with prompt-toolkit and prints whatever each render frame adds."""

    def __init__(self, prompt: str = "kvlens> ") -> None:
        self.prompt = prompt
        self.app = None  # set by ConsoleApp
        self.prompt_session: Optional[PromptSession] = None
        self.printed = 0
        self._last_detail: Optional["KeyDetail"] = None
        self._was_scanning = False
        self._toolbar = ""

    def set_app(self, app) -> None:
        """Bind to the console app and build the prompt around its session."""
        self.app = app
        self.prompt_session = PromptSession(
            completer=app.session.completer,
            auto_suggest=HistorySuggest(app.session.history),
            key_bindings=self._setup_key_bindings(),
            bottom_toolbar=lambda: self._toolbar,
            complete_while_typing=False,
        )

    def _setup_key_bindings(self) -> KeyBindings:
        kb = KeyBindings()

        @kb.add(Keys.F1)
        def _(event):
            """F1 - Show help."""
            self.print_help()

        @kb.add(Keys.F2)
        def _(event):
            """F2 - Cancel the stream or scan."""
            self.app.cancel()

        @kb.add(Keys.F3)
        def _(event):
            """F3 - Show dispatcher status."""
            self.notify(f"Status: {self.app.dispatcher.stats()}", NoticeKind.INFO)

        @kb.add(Keys.Up)
        def _(event):
            line = self.app.session.history_prev()
            if line is not None:
                event.current_buffer.text = line
                event.current_buffer.cursor_position = len(line)

        @kb.add(Keys.Down)
        def _(event):
            line = self.app.session.history_next() or ""
            event.current_buffer.text = line
            event.current_buffer.cursor_position = len(line)

        return kb

    async def read_command(self) -> str:
        """Read a command; Ctrl-C becomes ':cancel', EOF propagates."""
        try:
            return (await self.prompt_session.prompt_async(self.prompt)).strip()
        except KeyboardInterrupt:
            return ":cancel"

    def notify(self, message: str, kind: NoticeKind = NoticeKind.INFO) -> None:
        print(f"{_PREFIX.get(kind, '[INFO]')} {message}")

    def print_help(self) -> None:
        print(HELP_TEXT)

    def render(self, frame: "RenderFrame") -> None:
        """Render surface: called by the render loop once per tick."""
        console = frame.console
        start = max(self.printed, console.output_offset)
        for line in console.output[start - console.output_offset:]:
            print(line)
        self.printed = console.output_offset + len(console.output)

        for note in frame.notifications:
            self.notify(note.format(), note.kind)

        explorer = frame.explorer
        if self._was_scanning and not explorer.scanning and explorer.error is None:
            self.notify(f"Scan of '{explorer.pattern}' done: {explorer.keys_scanned} keys "
                        f"in {explorer.batches} batches", NoticeKind.INFO)
        self._was_scanning = explorer.scanning

        if explorer.detail is not None and explorer.detail is not self._last_detail:
            self.print_detail(explorer.detail)
        self._last_detail = explorer.detail

        self._update_toolbar(frame)

    def _update_toolbar(self, frame: "RenderFrame") -> None:
        explorer = frame.explorer
        parts = [f"keys: {explorer.keys_scanned}"]
        if explorer.scanning:
            parts.append(f"scanning '{explorer.pattern}' (batch {explorer.batches + 1})")
        if explorer.filter_text:
            parts.append(f"filter: {explorer.filter_text}")
        if frame.console.streaming:
            parts.append(f"streaming: {frame.console.stream_name}")
        elif frame.console.pending:
            parts.append("running...")
        toolbar = "  |  ".join(parts)
        if toolbar != self._toolbar:
            self._toolbar = toolbar
            if self.prompt_session is not None and self.prompt_session.app.is_running:
                self.prompt_session.app.invalidate()

    def print_tree(self, snapshot: "ExplorerSnapshot", limit: int = 500) -> None:
        if not snapshot.rows:
            print("(no keys)")
            return
        for row in snapshot.rows[:limit]:
            marker = "/" if row.is_dir else ""
            kind = f"  [{row.value_kind}]" if row.value_kind else ""
            count = f"  ({row.leaf_count})" if row.is_dir else ""
            print(f"{'  ' * row.depth}{row.segment}{marker}{count}{kind}")
        if len(snapshot.rows) > limit:
            print(f"... {len(snapshot.rows) - limit} more rows")

    def print_detail(self, detail: "KeyDetail") -> None:
        ttl = f"{detail.ttl}s" if detail.ttl is not None else "No Limit"
        size = f"{detail.memory} B" if detail.memory is not None else "n/a"
        print(f"{detail.key}  [{detail.type}]  TTL: {ttl}  Key Size: {size}  Length: {detail.length}")
        if detail.value is not None:
            print(f"({detail.value.kind.value})")
            print(detail.value.rendered)
        for item in detail.items:
            label = f"{item.label}: " if item.label else "- "
            rendered = item.value.rendered.splitlines() or [""]
            print(f"  {label}{rendered[0]}")
            for line in rendered[1:]:
                print(f"  {' ' * len(label)}{line}")
        if detail.length is not None and detail.length > len(detail.items) and detail.items:
            print(f"  ... {detail.length - len(detail.items)} more")
        log("DEBUG", "ui", "detail_printed", key=detail.key)
