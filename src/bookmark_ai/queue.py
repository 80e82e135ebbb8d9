"""In-process priority queue of AI tasks with lifecycle tracking.

Ordering is strict priority, then insertion order. `dequeue` is a
non-blocking atomic pop: a task handed to one worker is never handed to
another. Failed tasks stay failed; retrying is the completion client's job.
"""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from .errors import AIError, InvariantViolationError
from .metrics import queue_pending_tasks, queue_tasks_total

log = structlog.get_logger()


class TaskType(str, Enum):
    SUMMARY = "summary"
    TAGS = "tags"
    CATEGORY = "category"
    SEARCH = "search"


class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {TaskPriority.HIGH: 0, TaskPriority.NORMAL: 1, TaskPriority.LOW: 2}


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


def generate_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AITask:
    type: TaskType
    user_id: str
    payload: Any
    priority: TaskPriority = TaskPriority.NORMAL
    id: str = field(default_factory=generate_task_id)
    state: TaskState = TaskState.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error: AIError | None = None


@dataclass(frozen=True)
class QueueStats:
    pending: int
    active: int
    max_concurrent: int


class TaskQueue:
    def __init__(self, *, max_concurrent: int = 5):
        self._max_concurrent = max(1, max_concurrent)
        self._heap: list[tuple[int, int, str]] = []
        self._tasks: dict[str, AITask] = {}
        # Dequeued but not yet terminal.
        self._claimed: set[str] = set()
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def enqueue(self, task: AITask) -> str:
        with self._lock:
            if task.state is not TaskState.PENDING:
                raise InvariantViolationError(f"Only pending tasks can be enqueued (task {task.id} is {task.state.value}).")
            if task.id in self._tasks:
                raise InvariantViolationError(f"Task {task.id} is already tracked by the queue.")
            self._tasks[task.id] = task
            heapq.heappush(self._heap, (task.priority.rank, next(self._seq), task.id))
            queue_pending_tasks.set(len(self._heap))
        log.debug("task_enqueued", task_id=task.id, type=task.type.value, priority=task.priority.value)
        return task.id

    def dequeue(self) -> AITask | None:
        with self._lock:
            if not self._heap or len(self._claimed) >= self._max_concurrent:
                return None
            _, _, task_id = heapq.heappop(self._heap)
            self._claimed.add(task_id)
            queue_pending_tasks.set(len(self._heap))
            return self._tasks[task_id]

    def _get(self, task_id: str) -> AITask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task id: {task_id}") from None

    def mark_started(self, task_id: str) -> None:
        with self._lock:
            task = self._get(task_id)
            if task.state is not TaskState.PENDING or task_id not in self._claimed:
                raise InvariantViolationError(
                    f"Task {task_id} must be dequeued and pending to start (state={task.state.value})."
                )
            task.state = TaskState.RUNNING
            task.started_at = _utcnow()

    def mark_completed(self, task_id: str, result: Any) -> None:
        with self._lock:
            task = self._finish(task_id, TaskState.COMPLETED)
            task.result = result
        queue_tasks_total.labels(type=task.type.value, state=TaskState.COMPLETED.value).inc()

    def mark_failed(self, task_id: str, error: AIError) -> None:
        with self._lock:
            task = self._finish(task_id, TaskState.FAILED)
            task.error = error
        queue_tasks_total.labels(type=task.type.value, state=TaskState.FAILED.value).inc()
        log.warning("task_failed", task_id=task_id, type=task.type.value, code=error.code.value)

    def _finish(self, task_id: str, state: TaskState) -> AITask:
        task = self._get(task_id)
        if task.state is not TaskState.RUNNING:
            raise InvariantViolationError(
                f"Task {task_id} must be running to become {state.value} (state={task.state.value})."
            )
        task.state = state
        task.completed_at = _utcnow()
        self._claimed.discard(task_id)
        return task

    def status(self, task_id: str) -> AITask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return dataclasses.replace(task) if task is not None else None

    def stats(self) -> QueueStats:
        with self._lock:
            return QueueStats(pending=len(self._heap), active=len(self._claimed), max_concurrent=self._max_concurrent)

    def clear(self) -> None:
        """Drop pending and finished tasks. Claimed tasks stay until their worker finishes them."""
        with self._lock:
            self._heap.clear()
            self._tasks = {task_id: self._tasks[task_id] for task_id in self._claimed}
            queue_pending_tasks.set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)
