from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field
from datetime import datetime

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEntry:
    at: datetime
    level: str
    message: str

    def format(self) -> str:
        return f"[{self.at.strftime('%H:%M:%S')}] {self.message}"


@dataclass
class ProgressLog:
    """Ordered, append-only log of a run.

    Entries are always kept in ``entries``.  A subscriber queue, when
    attached, is fed with ``put_nowait``; a full queue drops the entry for
    that subscriber instead of blocking the run.
    """

    entries: list[LogEntry] = field(default_factory=list)
    subscriber: "queue.Queue[LogEntry] | None" = None
    dropped: int = 0

    def emit(self, message: str, level: str = "info") -> LogEntry:
        entry = LogEntry(at=datetime.now(), level=level, message=message)
        self.entries.append(entry)
        if level == "error":
            LOGGER.error("%s", message)
        elif level == "warning":
            LOGGER.warning("%s", message)
        else:
            LOGGER.info("%s", message)

        if self.subscriber is not None:
            try:
                self.subscriber.put_nowait(entry)
            except queue.Full:
                self.dropped += 1
        return entry

    def info(self, message: str) -> None:
        self.emit(message, "info")

    def warning(self, message: str) -> None:
        self.emit(message, "warning")

    def error(self, message: str) -> None:
        self.emit(message, "error")

    def messages(self) -> list[str]:
        return [e.message for e in self.entries]
