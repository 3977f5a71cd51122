"""Error taxonomy shared by the dispatcher, decoders and console."""

from enum import Enum
from typing import Optional

from .types import ErrorInfo


class ErrorKind(str, Enum):
    CONNECTION = "connection"   # transient, retried for reads only
    PROTOCOL = "protocol"       # operation-fatal
    DECODE = "decode"           # absorbed by the decoder chain
    CONFIG = "config"           # fatal before start
    TASK = "task"               # worker-level failure

    @classmethod
    def of(cls, error: Optional[ErrorInfo]) -> Optional["ErrorKind"]:
        if error is None:
            return None
        prefix = error.code.split(".", 1)[0]
        try:
            return cls(prefix)
        except ValueError:
            return cls.PROTOCOL


def is_transient(error: Optional[ErrorInfo]) -> bool:
    return ErrorKind.of(error) is ErrorKind.CONNECTION


class TaskCancelled(Exception):
    """Raised inside a worker when its task's cancel flag is observed."""


class DecodeError(Exception):
    """A decoder entry could not render the payload."""


class ConfigError(Exception):
    """Configuration could not be loaded or validated."""


class CommandParseError(ValueError):
    """A console line could not be tokenized."""


class StreamError(Exception):
    """A push stream broke; carries the classified error."""

    def __init__(self, error: ErrorInfo) -> None:
        super().__init__(error.message)
        self.error = error
