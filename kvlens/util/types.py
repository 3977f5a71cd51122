from dataclasses import dataclass
from typing import Generic, TypeVar, Optional, Dict, Any, Tuple, Union

T = TypeVar("T")

# SCAN position: a server cursor, or (primary index, node cursor) in cluster mode. 0 means done.
Cursor = Union[int, Tuple[int, int]]

@dataclass
class ErrorInfo:
    code: str         # e.g., "connection.lost", "protocol.response_error"
    message: str
    detail: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorInfo] = None
