"""Unit tests for console components."""

from types import SimpleNamespace

import pytest
from prompt_toolkit.completion import CompleteEvent
from prompt_toolkit.document import Document

from kvlens.console.commands import task_kind
from kvlens.console.completer import ConsoleCompleter
from kvlens.console.format import message_to_lines, reply_to_lines
from kvlens.console.history import CommandHistory
from kvlens.console.parser import split_args
from kvlens.console.ui import ConsoleUI
from kvlens.store.streams import StreamMessage
from kvlens.util.const import NoticeKind, TaskKind
from kvlens.util.errors import CommandParseError


class TestSplitArgs:
    """Test console line tokenizing."""

    def test_whitespace(self):
        assert split_args("  SET   key  value ") == ["SET", "key", "value"]
        assert split_args("") == []

    def test_quotes_group_text(self):
        assert split_args('SET k "hello world"') == ["SET", "k", "hello world"]
        assert split_args("SET k 'it''s'") == ["SET", "k", "its"]
        assert split_args("SET k `a b`") == ["SET", "k", "a b"]

    def test_empty_quotes_give_empty_argument(self):
        assert split_args('SET k ""') == ["SET", "k", ""]

    def test_adjacent_text_joins(self):
        assert split_args('a"b c"d') == ["ab cd"]

    def test_double_quote_escapes(self):
        assert split_args(r'SET k "a\nb\t\"q\""') == ["SET", "k", 'a\nb\t"q"']
        assert split_args(r'SET k "\x41\x7a"') == ["SET", "k", "Az"]

    def test_high_byte_escape_round_trips_to_bytes(self):
        (arg,) = split_args(r'"\xff"')
        assert arg.encode("utf-8", "surrogateescape") == b"\xff"

    def test_single_quotes_are_mostly_literal(self):
        assert split_args(r"'a\nb'") == [r"a\nb"]
        assert split_args(r"'it\'s'") == ["it's"]

    def test_backticks_are_literal(self):
        assert split_args(r"`a\"b`") == [r'a\"b']

    def test_unterminated_quote(self):
        with pytest.raises(CommandParseError, match="unterminated"):
            split_args('GET "oops')

    def test_bad_hex_escape(self):
        with pytest.raises(CommandParseError):
            split_args(r'"\xZZ"')


class TestCommandKinds:
    def test_classification(self):
        assert task_kind(["get", "k"]) is TaskKind.READ
        assert task_kind(["SET", "k", "v"]) is TaskKind.WRITE
        assert task_kind(["subscribe", "news"]) is TaskKind.STREAM
        assert task_kind(["MONITOR"]) is TaskKind.STREAM
        assert task_kind(["clear"]) is None
        assert task_kind(["FOO"]) is TaskKind.WRITE


class TestCommandHistory:
    """Test bounded, de-duplicated history."""

    def test_consecutive_duplicates_are_dropped(self):
        h = CommandHistory(10)
        assert h.append("GET a")
        assert not h.append("GET a")
        assert h.append("GET b")
        assert h.append("GET a")
        assert h.records() == ["GET a", "GET b", "GET a"]

    def test_blank_lines_are_ignored(self):
        h = CommandHistory(10)
        assert not h.append("   ")
        assert len(h) == 0

    def test_bounded(self):
        h = CommandHistory(3)
        for i in range(5):
            h.append(f"cmd {i}")
        assert h.records() == ["cmd 2", "cmd 3", "cmd 4"]

    def test_zero_limit_keeps_nothing(self):
        h = CommandHistory(0)
        assert not h.append("GET a")
        assert h.prev() is None

    def test_navigation(self):
        h = CommandHistory(10)
        for line in ("one", "two", "three"):
            h.append(line)

        assert h.prev() == "three"
        assert h.prev() == "two"
        assert h.prev() == "one"
        assert h.prev() == "one"
        assert h.next() == "two"
        assert h.next() == "three"
        assert h.next() is None
        assert h.cursor_index == 3
        assert h.prev() == "three"

    def test_append_resets_cursor(self):
        h = CommandHistory(10)
        h.append("one")
        h.append("two")
        h.prev()
        h.prev()
        h.append("three")
        assert h.prev() == "three"

    def test_suggest(self):
        h = CommandHistory(10)
        h.append("GET user:1")
        h.append("GET user:22")
        assert h.suggest("GET u") == "GET user:22"
        assert h.suggest("GET user:22") is None
        assert h.suggest("") is None

    def test_load_deduplicates(self):
        h = CommandHistory(10)
        h.load(["a", "a", "b", "", "b", "c"])
        assert h.records() == ["a", "b", "c"]
        assert h.cursor_index == 3


class TestConsoleCompleter:
    """Test completion."""

    def test_commands_then_keys(self):
        c = ConsoleCompleter()
        c.update_keys(["session:1", "SETTINGS", "session:1"])
        out = c.autocomplete("SE")
        assert out[:2] == ["SELECT", "SET"]
        assert out[-1] == "SETTINGS"
        assert c.autocomplete("ses") == ["session:1"]

    def test_lower_case_vocabulary(self):
        c = ConsoleCompleter()
        assert "hgetall" in c.autocomplete("hget")
        assert "HGETALL" not in c.autocomplete("hget")

    def test_empty_prefix_lists_everything(self):
        c = ConsoleCompleter(vocabulary=("GET",))
        c.update_keys(["k"])
        assert c.autocomplete("") == ["GET", "get", "k"]

    def test_get_completions(self):
        c = ConsoleCompleter(vocabulary=("GET", "GETDEL"))
        c.update_keys(["getter", "user:1"])

        first = list(c.get_completions(Document("GE"), CompleteEvent()))
        assert [x.text for x in first] == ["GET", "GETDEL"]
        assert first[0].start_position == -2
        assert first[0].display_meta_text == "command"

        later = list(c.get_completions(Document("GET us"), CompleteEvent()))
        assert [x.text for x in later] == ["user:1"]
        assert later[0].display_meta_text == "key"

        assert list(c.get_completions(Document(":sc"), CompleteEvent())) == []


class TestReplyFormatting:
    """Test redis-cli style rendering."""

    def test_scalars(self):
        assert reply_to_lines(None) == ["(nil)"]
        assert reply_to_lines(5) == ["(integer) 5"]
        assert reply_to_lines(b"OK") == ["OK"]
        assert reply_to_lines(b"hello") == ['"hello"']
        assert reply_to_lines(b'say "hi"') == ['"say \\"hi\\""']
        assert reply_to_lines(1.5) == ['"1.5"']

    def test_booleans(self):
        assert reply_to_lines(True, command="set") == ["OK"]
        assert reply_to_lines(True, command="EXPIRE") == ["(integer) 1"]
        assert reply_to_lines(False) == ["(integer) 0"]

    def test_errors(self):
        assert reply_to_lines(ValueError("WRONGTYPE bad")) == ["(error) WRONGTYPE bad"]

    def test_arrays(self):
        assert reply_to_lines([]) == ["(empty array)"]
        assert reply_to_lines([b"a", 2, None]) == ['1) "a"', "2) (integer) 2", "3) (nil)"]

    def test_nested_arrays_are_indented(self):
        assert reply_to_lines([[b"x", b"y"], b"z"]) == ['1) 1) "x"', '   2) "y"', '2) "z"']

    def test_wide_arrays_align(self):
        lines = reply_to_lines(list(range(10)))
        assert lines[0] == " 1) (integer) 0"
        assert lines[9] == "10) (integer) 9"

    def test_dicts_are_flattened(self):
        assert reply_to_lines({b"f": b"v"}) == ['1) "f"', '2) "v"']

    def test_structured_values_are_decoded(self):
        lines = reply_to_lines(b'{"a":1}')
        assert lines[0] == "{"
        assert len(lines) > 1

    def test_binary_values(self):
        assert reply_to_lines(b"\xff\x00\x01") == ["ff0001"]

    def test_pubsub_message(self):
        msg = StreamMessage("message", b"hi", channel=b"news")
        assert message_to_lines(msg) == ['1) "message"', '2) "news"', '3) "hi"']
        pmsg = StreamMessage("pmessage", b"hi", channel=b"news.1", pattern=b"news.*")
        assert message_to_lines(pmsg)[1] == '2) "news.*"'

    def test_monitor_message(self):
        msg = StreamMessage("monitor", "GET k", detail={
            "time": 1700000000.5, "db": 0, "client_address": "127.0.0.1", "client_port": "5000"})
        assert message_to_lines(msg) == ["1700000000.5 [0 127.0.0.1:5000] GET k"]


def frame(output, offset=0, notes=(), scanning=False, detail=None):
    explorer = SimpleNamespace(scanning=scanning, error=None, pattern="*", keys_scanned=3, batches=1,
                               filter_text="", detail=detail, rows=())
    console = SimpleNamespace(output=tuple(output), output_offset=offset, streaming=False,
                              stream_name=None, pending=False)
    return SimpleNamespace(explorer=explorer, console=console, notifications=list(notes))


class TestConsoleUI:
    """Test the print-based render surface."""

    def test_notify(self, capsys):
        ui = ConsoleUI()
        ui.notify("Test message", NoticeKind.INFO)
        ui.notify("Warning message", NoticeKind.WARN)
        ui.notify("Error message", NoticeKind.ERROR)
        out = capsys.readouterr().out
        assert "[INFO] Test message" in out
        assert "[WARN] Warning message" in out
        assert "[ERROR] Error message" in out

    def test_print_help(self, capsys):
        ConsoleUI().print_help()
        assert ":scan [pattern] [batch]" in capsys.readouterr().out

    def test_render_prints_only_new_lines(self, capsys):
        ui = ConsoleUI()
        ui.render(frame(["a", "b"]))
        ui.render(frame(["a", "b", "c"]))
        # older lines fell out of the bounded buffer
        ui.render(frame(["c", "d"], offset=2))
        assert capsys.readouterr().out.splitlines() == ["a", "b", "c", "d"]

    def test_render_announces_finished_scan(self, capsys):
        ui = ConsoleUI()
        ui.render(frame([], scanning=True))
        ui.render(frame([]))
        assert "[INFO] Scan of '*' done: 3 keys in 1 batches" in capsys.readouterr().out

    def test_render_notifications(self, capsys):
        ui = ConsoleUI()
        note = SimpleNamespace(kind=NoticeKind.WARN, format=lambda: "news ended: gone")
        ui.render(frame([], notes=[note]))
        assert "[WARN] news ended: gone" in capsys.readouterr().out

    def test_print_tree(self, capsys):
        ui = ConsoleUI()
        rows = (
            SimpleNamespace(depth=0, segment="user", is_dir=True, leaf_count=2, value_kind=None),
            SimpleNamespace(depth=1, segment="1", is_dir=False, leaf_count=1, value_kind="hash"),
        )
        ui.print_tree(SimpleNamespace(rows=rows))
        ui.print_tree(SimpleNamespace(rows=()))
        assert capsys.readouterr().out.splitlines() == ["user/  (2)", "  1  [hash]", "(no keys)"]
