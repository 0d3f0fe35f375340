"""Observability log for voice sessions.

SessionLog keeps a capped in-memory list of LogEntry records, fires
in-process callbacks (for a debug console or dashboard), and optionally
appends every entry to a JSONL file. Nothing in the session reads it back
for control flow.

Writer atomicity: POSIX O_APPEND keeps writes under PIPE_BUF (4096 bytes)
atomic, so each JSON line is bounded to that size.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic appends
_PIPE_BUF = 4096


class LogKind(str, Enum):
    INFO = "info"
    USER = "user"
    MODEL = "model"
    TOOL = "tool"
    ERROR = "error"


_LEVELS = {
    LogKind.INFO: logging.INFO,
    LogKind.USER: logging.INFO,
    LogKind.MODEL: logging.INFO,
    LogKind.TOOL: logging.INFO,
    LogKind.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    time: float
    kind: str
    message: str
    data: Any = None

    def to_json_line(self) -> str:
        """Serialize to one JSON line, truncating data to fit PIPE_BUF."""
        record = {"time": self.time, "kind": self.kind, "message": self.message}
        if self.data is not None:
            record["data"] = self.data
        line = json.dumps(record, separators=(',', ':'), default=str) + "\n"

        if len(line.encode()) > _PIPE_BUF:
            record["data"] = str(self.data)[:200] + "...[truncated]"
            line = json.dumps(record, separators=(',', ':')) + "\n"

            if len(line.encode()) > _PIPE_BUF:
                record = {"time": self.time, "kind": self.kind,
                          "message": self.message[:200], "_truncated": True}
                line = json.dumps(record, separators=(',', ':')) + "\n"

        return line

    @classmethod
    def from_json_line(cls, line: str) -> "LogEntry":
        data = json.loads(line.strip())
        return cls(time=data["time"], kind=data["kind"],
                   message=data["message"], data=data.get("data"))


class SessionLog:
    """Capped, clearable, append-only log with callbacks and optional JSONL.

    Usage:
        log = SessionLog(capacity=500, path=Path("session.jsonl"))
        log.on("error", show_toast)
        log.add("info", "Session connected")
        log.clear()
        log.close()
    """

    def __init__(self, capacity: int = 500, path: Path | None = None):
        self._entries: deque = deque(maxlen=capacity)
        self._path = path
        self._file = None
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def on(self, kind: str, callback: Callable):
        """Register a callback for one kind, or "*" for every entry."""
        self._callbacks.setdefault(kind, []).append(callback)

    def add(self, kind, message: str, data: Any = None) -> LogEntry:
        kind = LogKind(kind)
        entry = LogEntry(time=time.time(), kind=kind.value, message=message, data=data)
        self._entries.append(entry)
        logger.log(_LEVELS[kind], "[%s] %s", kind.value, message)
        self._write(entry)
        self._fire_callbacks(entry)
        return entry

    def clear(self):
        self._entries.clear()

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def _write(self, entry: LogEntry):
        if self._path is None:
            return
        try:
            if self._file is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._file = open(self._path, "a")
            self._file.write(entry.to_json_line())
            self._file.flush()
        except OSError as e:
            logger.error("Session log write error: %s", e)

    def _fire_callbacks(self, entry: LogEntry):
        for cb_kind in (entry.kind, "*"):
            for cb in self._callbacks.get(cb_kind, []):
                try:
                    cb(entry)
                except Exception as e:
                    logger.error("Session log callback error for %s: %s", entry.kind, e)


def read_log(path: Path, last_n: int = 50, kind: str | None = None) -> list[LogEntry]:
    """Read recent entries back from a JSONL session log."""
    if not path.exists():
        return []

    entries = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = LogEntry.from_json_line(line)
            except (json.JSONDecodeError, KeyError):
                continue
            if kind and entry.kind != kind:
                continue
            entries.append(entry)

    if last_n:
        entries = entries[-last_n:]
    return entries
