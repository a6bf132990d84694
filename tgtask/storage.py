"""Persistent task storage keyed by state prefix, timestamp and identifier."""

from __future__ import annotations

import math
import os
import sqlite3
import threading
from datetime import datetime
from typing import Any

from .task import State, Task
from .xid import decode_xid, encode_xid

PREFIX_SCHEDULED = "queue"
PREFIX_PROCESSING = "current"
PREFIX_COMPLETE = "archive"

_LOOKUP_ORDER = (PREFIX_COMPLETE, PREFIX_PROCESSING, PREFIX_SCHEDULED)
_STATE_PREFIXES = {
    State.SCHEDULED: PREFIX_SCHEDULED,
    State.PROCESSING: PREFIX_PROCESSING,
    State.COMPLETE: PREFIX_COMPLETE,
}


class TaskNotFoundError(LookupError):
    """No task is stored under the requested key."""

    def __init__(self, message: str = "task not found") -> None:
        super().__init__(message)


class InvalidTaskIdError(ValueError):
    """A task identifier is not a valid time-ordered identifier."""


def task_key(prefix: str, task_id: str) -> bytes:
    """Database key for a task: ``prefix:unixseconds_id``.

    The timestamp embedded in the identifier makes keys sortable by time, so
    a state's tasks can be scanned over a time range.
    """
    try:
        raw = decode_xid(task_id)
    except ValueError as exc:
        raise InvalidTaskIdError("task key must be a xid id") from exc
    seconds = int.from_bytes(raw[:4], "big")
    return f"{prefix}:{seconds}_{encode_xid(raw)}".encode()


def _as_bytes(key: bytes | str) -> bytes:
    return key.encode() if isinstance(key, str) else bytes(key)


class Storage:
    """Ordered key-value store of tasks, kept in an SQLite database."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        try:
            self._db = sqlite3.connect(os.fspath(path), check_same_thread=False, isolation_level=None)
            self._db.execute("CREATE TABLE IF NOT EXISTS tasks (key BLOB PRIMARY KEY, value BLOB NOT NULL)")
        except sqlite3.Error as exc:
            raise OSError(f"error while opening storage: {exc}") from exc
        self._lock = threading.RLock()

    @classmethod
    def in_memory(cls) -> Storage:
        """A storage that lives only as long as the object."""
        return cls(":memory:")

    def close(self) -> None:
        with self._lock:
            self._db.close()

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def has_key(self, key: bytes | str) -> bool:
        with self._lock:
            row = self._db.execute("SELECT 1 FROM tasks WHERE key = ?", (_as_bytes(key),)).fetchone()
        return row is not None

    def values_with_prefix(self, prefix: bytes | str) -> list[bytes]:
        """Stored values whose keys start with ``prefix``, in key order."""
        start = _as_bytes(prefix)
        values = []
        with self._lock:
            rows = self._db.execute("SELECT key, value FROM tasks WHERE key >= ? ORDER BY key", (start,))
            for key, value in rows:
                if not bytes(key).startswith(start):
                    break
                values.append(bytes(value))
        return values

    def put(self, prefix: str, task: Task) -> None:
        key = task_key(prefix, task.id)
        value = task.to_json().encode()
        with self._lock:
            self._db.execute("INSERT OR REPLACE INTO tasks (key, value) VALUES (?, ?)", (key, value))

    def fetch(self, prefix: str, task_id: str) -> Task:
        """The task stored under ``prefix``; raises TaskNotFoundError."""
        key = task_key(prefix, task_id)
        with self._lock:
            row = self._db.execute("SELECT value FROM tasks WHERE key = ?", (key,)).fetchone()
        if row is None:
            raise TaskNotFoundError()
        return Task.from_json(bytes(row[0]))

    def _find_prefix(self, task_id: str) -> str | None:
        for prefix in _LOOKUP_ORDER:
            if self.has_key(task_key(prefix, task_id)):
                return prefix
        return None

    def get(self, task_id: str) -> Task:
        """Look a task up among archived, processing and scheduled tasks, in that order."""
        for prefix in _LOOKUP_ORDER:
            try:
                return self.fetch(prefix, task_id)
            except TaskNotFoundError:
                continue
        raise TaskNotFoundError()

    def delete(self, task_id: str) -> None:
        with self._lock:
            prefix = self._find_prefix(task_id)
            if prefix is None:
                raise TaskNotFoundError("should have found task")
            self._db.execute("DELETE FROM tasks WHERE key = ?", (task_key(prefix, task_id),))

    def persist_processing(self, task: Task) -> None:
        self.put(PREFIX_PROCESSING, task)

    def persist_scheduled(self, task: Task) -> None:
        self.put(PREFIX_SCHEDULED, task)

    def process_task(self, task: Task) -> None:
        """Move a task from the scheduled to the processing prefix."""
        self.change_prefix(PREFIX_PROCESSING, PREFIX_SCHEDULED, task.id)

    def archive_task(self, task: Task) -> None:
        """Move a task from the processing to the archive prefix."""
        self.change_prefix(PREFIX_COMPLETE, PREFIX_PROCESSING, task.id)

    def change_prefix(self, dst: str, src: str, task_id: str) -> None:
        """Atomically move a stored task from prefix ``src`` to prefix ``dst``."""
        old_key = task_key(src, task_id)
        new_key = task_key(dst, task_id)
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                row = self._db.execute("SELECT value FROM tasks WHERE key = ?", (old_key,)).fetchone()
                if row is None:
                    raise TaskNotFoundError()
                self._db.execute("INSERT OR REPLACE INTO tasks (key, value) VALUES (?, ?)", (new_key, row[0]))
                self._db.execute("DELETE FROM tasks WHERE key = ?", (old_key,))
            except BaseException:
                self._db.execute("ROLLBACK")
                raise
            self._db.execute("COMMIT")

    def filter(self, state: State | str, start: datetime, end: datetime) -> list[Task]:
        """Tasks in ``state`` whose identifiers were created in [start, end)."""
        prefix = _STATE_PREFIXES.get(state, "")
        return self.range(prefix, start, end)

    def range(self, prefix: str, start: datetime, end: datetime) -> list[Task]:
        """Tasks under ``prefix`` whose identifiers were created in [start, end)."""
        low = f"{prefix}:{math.floor(start.timestamp())}".encode()
        high = f"{prefix}:{math.floor(end.timestamp())}".encode()
        with self._lock:
            rows = self._db.execute(
                "SELECT value FROM tasks WHERE key >= ? AND key < ? ORDER BY key", (low, high)
            ).fetchall()
        return [Task.from_json(bytes(value)) for (value,) in rows]