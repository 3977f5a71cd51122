"""Render event bus: the one place completed outcomes reach UI-visible state."""

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from .dispatcher import Dispatcher, Outcome
from ..util.const import DEFAULTS, NoticeKind
from ..util.logging import log

Handler = Callable[[Outcome], None]


@dataclass(frozen=True)
class Notification:
    kind: NoticeKind
    msg: str
    title: Optional[str] = None
    expires_at: float = 0.0

    def format(self) -> str:
        if self.title:
            return f"{self.title}: {self.msg}"
        return self.msg


class RenderBus:
    """Applies current-epoch outcomes to their slot owners, once per tick."""

    def __init__(self, dispatcher: Dispatcher, max_notifications: int = 64) -> None:
        self.dispatcher = dispatcher
        self._handlers: Dict[str, Handler] = {}
        self._notifications: Deque[Notification] = deque(maxlen=max_notifications)
        self.applied = 0
        self.dropped = 0

    def route(self, slot: str, handler: Handler) -> None:
        self._handlers[slot] = handler

    def notify(self, kind: NoticeKind, msg: str, title: Optional[str] = None) -> Notification:
        note = Notification(kind=kind, msg=msg, title=title,
                            expires_at=time.monotonic() + DEFAULTS["NOTIFICATION_TTL_SEC"])
        lvl = {NoticeKind.INFO: "INFO", NoticeKind.WARN: "WARN", NoticeKind.ERROR: "ERROR"}[kind]
        log(lvl, "notify", note.format())
        self._notifications.append(note)
        return note

    def drain_notifications(self) -> List[Notification]:
        notes = list(self._notifications)
        self._notifications.clear()
        return notes

    def tick(self) -> int:
        """Apply every outcome whose epoch is still current; returns how many were applied."""
        applied = 0
        for outcome in self.dispatcher.poll_completed():
            # Checked at delivery time: a cancel may have landed after the worker finished.
            if not self.dispatcher.is_current(outcome):
                self.dropped += 1
                log("DEBUG", "bus", "stale_outcome_dropped", slot=outcome.slot, epoch=outcome.epoch,
                    current=self.dispatcher.current_epoch(outcome.slot))
                continue

            handler = self._handlers.get(outcome.slot)
            if handler is None:
                log("WARN", "bus", "unrouted_outcome", slot=outcome.slot, epoch=outcome.epoch)
                continue

            try:
                handler(outcome)
            except Exception as e:
                log("ERROR", "bus", "handler_failed", slot=outcome.slot, error=str(e))
                self.notify(NoticeKind.ERROR, str(e), title=f"{outcome.slot} failed")
                continue
            applied += 1

        self.applied += applied
        return applied
