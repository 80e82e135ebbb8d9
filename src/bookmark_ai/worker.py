from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .errors import OPERATION_FAILURE_CODES, AIError, ErrorCode
from .orchestrator import EnrichmentOrchestrator
from .queue import AITask, TaskQueue, TaskType

log = structlog.get_logger()


class TaskWorker:
    """Pulls tasks from a `TaskQueue` and runs them through the orchestrator.

    One `run_once` handles at most one task. Several workers may share a queue;
    `dequeue` guarantees each task reaches exactly one of them.
    """

    def __init__(
        self,
        queue: TaskQueue,
        orchestrator: EnrichmentOrchestrator,
        *,
        task_timeout_seconds: float | None = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self._task_timeout_seconds = task_timeout_seconds
        self._handlers: dict[TaskType, Callable[..., Awaitable[Any]]] = {
            TaskType.SUMMARY: orchestrator.summarize,
            TaskType.TAGS: orchestrator.suggest_tags,
            TaskType.CATEGORY: orchestrator.suggest_category,
            TaskType.SEARCH: orchestrator.semantic_search,
        }

    async def run_once(self) -> AITask | None:
        task = self.queue.dequeue()
        if task is None:
            return None

        self.queue.mark_started(task.id)
        handler = self._handlers[task.type]
        try:
            result = await handler(task.user_id, task.payload, deadline_seconds=self._task_timeout_seconds)
        except asyncio.CancelledError:
            # A cancelled task must not keep its concurrency slot.
            self.queue.mark_failed(
                task.id,
                AIError(
                    f"Task {task.id} was cancelled before finishing.",
                    ErrorCode.TIMEOUT,
                    retryable=True,
                    operation=task.type.value,
                ),
            )
            raise
        except AIError as e:
            self.queue.mark_failed(task.id, e)
        except Exception as e:
            log.exception("task_handler_error", task_id=task.id, type=task.type.value)
            self.queue.mark_failed(
                task.id,
                AIError(
                    f"Task {task.id} failed: {e}",
                    OPERATION_FAILURE_CODES[task.type.value],
                    retryable=False,
                    operation=task.type.value,
                ),
            )
        else:
            self.queue.mark_completed(task.id, result)
            log.debug("task_completed", task_id=task.id, type=task.type.value)
        return self.queue.status(task.id)

    async def drain(self) -> int:
        processed = 0
        while await self.run_once() is not None:
            processed += 1
        return processed
