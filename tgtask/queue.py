"""Priority queue of tasks backed by persistent storage."""

from __future__ import annotations

import heapq
import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from .storage import PREFIX_PROCESSING, PREFIX_SCHEDULED, Storage
from .task import DatedState, State, Task

logger = logging.getLogger(__name__)


class QueueEmptyError(Exception):
    """The queue holds no tasks."""

    def __init__(self, message: str = "queue empty") -> None:
        super().__init__(message)


class QueueFullError(Exception):
    """The queue already holds its maximum number of tasks."""

    def __init__(self, message: str = "queue full") -> None:
        super().__init__(message)


class _Entry:
    """Heap entry: higher priority first, then older tasks first."""

    __slots__ = ("task",)

    def __init__(self, task: Task) -> None:
        self.task = task

    def __lt__(self, other: _Entry) -> bool:
        a, b = self.task, other.task
        if a.priority != b.priority:
            return a.priority > b.priority
        return a.created() < b.created()


class TaskQueue:
    """Thread-safe priority queue of tasks.

    Tasks already scheduled or processing in the storage are loaded when the
    queue is created, so the queue survives restarts.
    """

    def __init__(
        self,
        storage: Storage,
        max_size: int,
        converter: Callable[[bytes], Task] = Task.from_json,
    ) -> None:
        self._storage = storage
        self._max_size = max_size
        self._lock = threading.Lock()
        self._heap: list[_Entry] = []
        for prefix in (PREFIX_SCHEDULED, PREFIX_PROCESSING):
            for raw in storage.values_with_prefix(prefix):
                heapq.heappush(self._heap, _Entry(converter(raw)))

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, task: Task) -> None:
        """Persist a task as scheduled and enqueue it; raises QueueFullError."""
        with self._lock:
            self._push_unlocked(task)

    def _push_unlocked(self, task: Task) -> None:
        if len(self._heap) >= self._max_size:
            raise QueueFullError()
        logger.debug("queue.push.got-task id=%s taskname=%s", task.id, task.name())
        self._storage.persist_scheduled(task)
        heapq.heappush(self._heap, _Entry(task))

    def push_unique_by_branch(self, task: Task) -> None:
        """Push a task, cancelling queued tasks from the same repository and branch."""
        with self._lock:
            by = task.created_by
            if by.repo and by.branch:
                self._remove_existing(by.branch, by.repo)
            self._push_unlocked(task)

    def pop(self) -> Task:
        """Take the next task and mark it as processing; raises QueueEmptyError."""
        with self._lock:
            if not self._heap:
                raise QueueEmptyError()
            logger.debug("queue.pop len=%d", len(self._heap))
            task = heapq.heappop(self._heap).task
            logger.debug("queue.pop.got-task id=%s taskname=%s", task.id, task.name())
            self._storage.process_task(task)
            return task

    def _remove_existing(self, branch: str, repo: str) -> None:
        kept = []
        for entry in self._heap:
            by = entry.task.created_by
            if by.repo == repo and by.branch == branch:
                self._cancel(entry.task)
            else:
                kept.append(entry)
        heapq.heapify(kept)
        self._heap = kept

    def _cancel(self, task: Task) -> None:
        self._storage.process_task(task)
        task.states.append(DatedState(datetime.now(timezone.utc), State.CANCELED))
        self._storage.persist_processing(task)
        self._storage.archive_task(task)