from collections import deque
from typing import Deque, Iterable, List, Optional

from ..util.const import DEFAULTS


class CommandHistory:
    """Bounded command history with consecutive de-duplication and a navigation cursor.

    The cursor sits at ``len(entries)`` (past the newest entry) until the user
    starts navigating; ``prev()`` walks towards older entries and ``next()``
    back towards the present, returning None once it walks past the newest.
    """

    def __init__(self, limit: int = DEFAULTS["HISTORY_SIZE"]) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self.limit = limit
        self._entries: Deque[str] = deque(maxlen=limit)
        self.cursor_index = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def append(self, line: str) -> bool:
        """Record `line`; returns False when it repeats the newest entry or is blank."""
        appended = False
        if line.strip() and self.limit and (not self._entries or self._entries[-1] != line):
            self._entries.append(line)  # deque(maxlen) evicts the oldest
            appended = True
        self.reset_cursor()
        return appended

    def reset_cursor(self) -> None:
        self.cursor_index = len(self._entries)

    def prev(self) -> Optional[str]:
        if not self._entries:
            return None
        self.cursor_index = max(0, self.cursor_index - 1)
        return self._entries[self.cursor_index]

    def next(self) -> Optional[str]:
        if self.cursor_index >= len(self._entries) - 1:
            self.reset_cursor()
            return None
        self.cursor_index += 1
        return self._entries[self.cursor_index]

    def suggest(self, prefix: str) -> Optional[str]:
        """Newest entry that extends `prefix`, for inline hints."""
        if not prefix:
            return None
        for line in reversed(self._entries):
            if line.startswith(prefix) and line != prefix:
                return line
        return None

    def load(self, records: Iterable[str]) -> None:
        self._entries.clear()
        for line in records:
            if line.strip() and (not self._entries or self._entries[-1] != line):
                self._entries.append(line)
        self.reset_cursor()

    def records(self) -> List[str]:
        return list(self._entries)
