"""Console completion over the command vocabulary and key names seen by the explorer."""

from typing import Iterable, List, Sequence, Tuple

from prompt_toolkit.completion import Completer, Completion

from .commands import VOCABULARY


class ConsoleCompleter(Completer):
    """Case-sensitive prefix completion; commands are offered in upper and lower case."""

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY, limit: int = 200) -> None:
        words = set(vocabulary) | {w.lower() for w in vocabulary}
        self.vocabulary: Tuple[str, ...] = tuple(sorted(words))
        self._words = frozenset(words)
        self.keys: Tuple[str, ...] = ()
        self.limit = limit

    def update_keys(self, keys: Iterable[str]) -> None:
        """Replace the observed key names."""
        self.keys = tuple(sorted(set(keys)))

    def autocomplete(self, prefix: str) -> List[str]:
        """Vocabulary matches first, then key matches, each alphabetical, no duplicates."""
        commands = [w for w in self.vocabulary if w.startswith(prefix)]
        seen = set(commands)
        keys = [k for k in self.keys if k.startswith(prefix) and k not in seen]
        return commands + keys

    def get_completions(self, document, complete_event):
        """Get completions for the current document."""
        text = document.text_before_cursor
        if text and text[-1].isspace():
            current_word = ""
        else:
            current_word = text.split()[-1] if text.split() else ""
        first_word = len(text.split()) <= 1 and not (text and text[-1].isspace())

        if current_word.startswith(":"):
            return

        if first_word:
            candidates = self.autocomplete(current_word)
        else:
            candidates = [k for k in self.keys if k.startswith(current_word)]

        for candidate in candidates[:self.limit]:
            yield Completion(
                candidate,
                start_position=-len(current_word),
                display=candidate,
                display_meta="command" if candidate in self._words else "key",
            )
