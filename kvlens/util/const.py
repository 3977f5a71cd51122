from enum import Enum

class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.CANCELLED, TaskState.FAILED)

class TaskKind(str, Enum):
    READ = "read"        # idempotent, eligible for retry
    WRITE = "write"      # never retried
    STREAM = "stream"    # open-ended push sequence

class Slot(str, Enum):
    EXPLORER_SCAN = "explorer.scan"
    EXPLORER_INSPECT = "explorer.inspect"
    CONSOLE_EXEC = "console.exec"
    CONSOLE_STREAM = "console.stream"

class ValueKind(str, Enum):
    TEXT = "text"
    HEX = "hex"
    JAVA_OBJECT = "java_object"
    PROTOBUF = "protobuf"
    JSON = "json"
    XML = "xml"
    RON = "ron"
    RAW_BINARY = "raw_binary"

class NoticeKind(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

DEFAULTS = {
    "FPS": 30,
    "SCAN_SIZE": 2_000,
    "KEY_DELIMITER": ":",
    "HISTORY_SIZE": 1_000,
    "WORKERS": 4,
    "RETRY_LIMIT": 3,
    "RETRY_BACKOFF_SEC": 0.1,
    "OUTPUT_MAX_LINES": 5_000,
    "INSPECT_PAGE_SIZE": 100,
    "NOTIFICATION_TTL_SEC": 4.0,
    "MAX_CONNECTIONS": 10,
}
