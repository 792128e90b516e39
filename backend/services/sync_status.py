"""In-memory run status, log ring buffer and the single-active-run registry.

Everything here is ephemeral and polled by the dashboard. Writes hold a
``threading.Lock`` for a few attribute assignments only; nothing in this
module awaits or performs I/O.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from config import settings
from utils.logger import INDEXER_LOGGER_NAME, SUCCESS
from utils.utcnow import to_iso, utcfromtimestamp, utcnow

LOG_LEVELS = ("info", "warn", "error", "success")


@dataclass
class WorkerDetail:
    name: str
    progress: float = 0.0
    current_task: str = ""
    counters: dict[str, int] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "progress": round(self.progress, 2),
            "currentTask": self.current_task,
            "counters": dict(self.counters),
            "startedAt": to_iso(self.started_at),
            "updatedAt": to_iso(self.updated_at),
            "finishedAt": to_iso(self.finished_at),
        }


class SyncStatus:
    """Process-wide view of the current (or last) run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self.run_id: Optional[str] = None
        self.sync_type: Optional[str] = None
        self.is_running = False
        self.progress = 0.0
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.succeeded: Optional[bool] = None
        self.workers: dict[str, WorkerDetail] = {}
        self.errors: list[str] = []

    def reset(self, run_id: str, sync_type: str) -> None:
        with self._lock:
            self._clear()
            self.run_id = run_id
            self.sync_type = sync_type
            self.is_running = True
            self.started_at = utcnow()

    def set_overall_progress(self, value: float) -> float:
        """Raise overall progress to ``value``; never lowers it, never exceeds 100."""
        with self._lock:
            bounded = min(100.0, max(0.0, float(value)))
            if bounded > self.progress:
                self.progress = bounded
            return self.progress

    def start_worker(self, name: str, current_task: str = "") -> None:
        now = utcnow()
        with self._lock:
            self.workers[name] = WorkerDetail(
                name=name, current_task=current_task, started_at=now, updated_at=now
            )

    def update_worker(
        self,
        name: str,
        progress: Optional[float] = None,
        current_task: Optional[str] = None,
        **counters: int,
    ) -> None:
        with self._lock:
            worker = self.workers.get(name)
            if worker is None:
                worker = WorkerDetail(name=name, started_at=utcnow())
                self.workers[name] = worker
            if progress is not None:
                worker.progress = max(worker.progress, min(100.0, float(progress)))
            if current_task is not None:
                worker.current_task = current_task
            worker.counters.update(counters)
            worker.updated_at = utcnow()

    def finish_worker(self, name: str, current_task: str = "done") -> None:
        now = utcnow()
        with self._lock:
            worker = self.workers.get(name)
            if worker is None:
                return
            worker.current_task = current_task
            worker.updated_at = now
            worker.finished_at = now

    def add_error(self, message: str) -> None:
        with self._lock:
            self.errors.append(message)

    def finish(self, succeeded: bool) -> None:
        now = utcnow()
        with self._lock:
            for worker in self.workers.values():
                if worker.finished_at is None:
                    worker.finished_at = now
                    worker.current_task = "done" if succeeded else "aborted"
            self.is_running = False
            self.succeeded = succeeded
            self.finished_at = now

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "isRunning": self.is_running,
                "runId": self.run_id,
                "syncType": self.sync_type,
                "progress": round(self.progress, 2),
                "activeWorkers": [n for n, w in self.workers.items() if w.finished_at is None],
                "workerDetails": {n: w.to_dict() for n, w in self.workers.items()},
                "errors": list(self.errors),
                "startedAt": to_iso(self.started_at),
                "finishedAt": to_iso(self.finished_at),
                "succeeded": self.succeeded,
            }


@dataclass(frozen=True)
class LogEntry:
    level: str
    message: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {"level": self.level, "message": self.message, "timestamp": to_iso(self.timestamp)}


class RunLogBuffer:
    """Bounded append-only ring of dashboard log lines."""

    def __init__(self, maxlen: int = 500):
        self._entries: deque[LogEntry] = deque(maxlen=max(1, maxlen))
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, level: str, message: str, timestamp: Optional[datetime] = None) -> None:
        if level not in LOG_LEVELS:
            level = "info"
        entry = LogEntry(level=level, message=message, timestamp=timestamp or utcnow())
        with self._lock:
            self._entries.append(entry)

    def tail(self, limit: Optional[int] = None) -> list[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries

    def since(self, timestamp: datetime, limit: Optional[int] = None) -> list[LogEntry]:
        entries = [e for e in self.tail() if e.timestamp > timestamp]
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RunLogHandler(logging.Handler):
    """Mirrors ``indexer.*`` log records into a RunLogBuffer."""

    def __init__(self, buffer: RunLogBuffer, level: int = logging.INFO):
        super().__init__(level)
        self.buffer = buffer

    @staticmethod
    def dashboard_level(levelno: int) -> str:
        if levelno >= logging.ERROR:
            return "error"
        if levelno >= logging.WARNING:
            return "warn"
        if levelno >= SUCCESS:
            return "success"
        return "info"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        self.buffer.append(
            self.dashboard_level(record.levelno), message, utcfromtimestamp(record.created)
        )


class RunRegistry:
    """Owns the status sink and enforces one active run via compare-and-swap."""

    def __init__(self, log_buffer_size: Optional[int] = None):
        self._lock = threading.Lock()
        self._active_run_id: Optional[str] = None
        self.status = SyncStatus()
        self.logs = RunLogBuffer(log_buffer_size or settings.RUN_LOG_BUFFER_SIZE)
        self._handler: Optional[RunLogHandler] = None

    @property
    def active_run_id(self) -> Optional[str]:
        return self._active_run_id

    @property
    def is_running(self) -> bool:
        return self._active_run_id is not None

    def try_acquire(self, run_id: str) -> bool:
        with self._lock:
            if self._active_run_id is not None:
                return False
            self._active_run_id = run_id
            return True

    def release(self, run_id: str) -> bool:
        with self._lock:
            if self._active_run_id != run_id:
                return False
            self._active_run_id = None
            return True

    def begin(self, run_id: str, sync_type: str) -> SyncStatus:
        """Reset the ephemeral sink for a freshly acquired run."""
        self.logs.clear()
        self.status.reset(run_id, sync_type)
        return self.status

    def install_log_handler(self) -> RunLogHandler:
        if self._handler is None:
            self._handler = RunLogHandler(self.logs)
            indexer = logging.getLogger(INDEXER_LOGGER_NAME)
            indexer.addHandler(self._handler)
            if indexer.level == logging.NOTSET:
                indexer.setLevel(logging.INFO)
        return self._handler


run_registry = RunRegistry()
