from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")

_STDLIB_LEVEL = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    level: str
    message: str
    ts: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# sink(level, message) -> None; used to persist entries (e.g. RecordStore.log_event)
Sink = Callable[[str, str], None]


class EventLog:
    """Logging capability with a bounded buffer of recent entries.

    Built once by the application root and handed to the components that log.
    Every entry goes to the stdlib logger and into the ring buffer; debug
    entries only reach the stdlib logger when debug mode is on.
    """

    def __init__(
        self,
        size: int = 100,
        debug_mode: bool = False,
        sink: Sink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._buffer: deque[LogEntry] = deque(maxlen=max(1, int(size)))
        self._lock = Lock()
        self._sink = sink
        self._closed = False
        self.debug_mode = debug_mode
        self.logger = logger or logging.getLogger("mcpfleet")

    def info(self, msg: str, *args: Any) -> None:
        self._emit("INFO", msg, args)

    def warn(self, msg: str, *args: Any) -> None:
        self._emit("WARN", msg, args)

    def error(self, msg: str, *args: Any) -> None:
        self._emit("ERROR", msg, args)

    def debug(self, msg: str, *args: Any) -> None:
        self._emit("DEBUG", msg, args)

    def _emit(self, level: str, msg: str, args: tuple[Any, ...]) -> None:
        message = msg % args if args else msg
        entry = LogEntry(level=level, message=message, ts=utc_now())
        with self._lock:
            self._buffer.append(entry)
            sink = None if self._closed else self._sink

        if level != "DEBUG" or self.debug_mode:
            self.logger.log(_STDLIB_LEVEL[level], message)
            if sink is not None:
                try:
                    sink(level, message)
                except Exception as e:  # the sink must never break the caller
                    self.logger.warning("event sink failed: %s: %s", type(e).__name__, e)

    def recent(self, count: int = 100) -> list[LogEntry]:
        """Return up to ``count`` most recent entries, oldest first."""
        with self._lock:
            items = list(self._buffer)
        if count <= 0:
            return []
        return items[-count:]

    def set_debug_mode(self, enabled: bool) -> None:
        self.debug_mode = enabled
        self.info("Debug mode updated to: %s", enabled)

    def close(self) -> None:
        with self._lock:
            self._closed = True
