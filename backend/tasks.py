"""Background task registry.

Long-running work (APKG imports) runs as an asyncio task owned by this
registry. Each task carries a cancellation token that the work checks at
safe points; HTTP handlers only ever start, cancel or look up tasks.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class TaskCancelled(Exception):
    """Raised inside task work when its cancellation token is set."""


class CancellationToken:
    """Thread-safe flag; blocking stages running in worker threads poll it too."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled()


def new_task_id() -> str:
    return str(uuid.uuid4())


class TaskRegistry:
    """Tracks running background tasks by id."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}

    def token(self, task_id: str) -> CancellationToken:
        """Token for a task id, created on first use so work can be prepared before it starts."""
        if task_id not in self._tokens:
            self._tokens[task_id] = CancellationToken()
        return self._tokens[task_id]

    def start(
        self,
        task_id: str,
        work: Callable[[CancellationToken], Awaitable[None]],
    ) -> asyncio.Task:
        if self.is_running(task_id):
            raise RuntimeError(f"Task {task_id} is already running")
        token = self.token(task_id)
        task = asyncio.create_task(work(token), name=f"task-{task_id}")
        self._tasks[task_id] = task
        task.add_done_callback(lambda t: self._finished(task_id, t))
        logger.info("Started background task %s", task_id)
        return task

    def _finished(self, task_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(task_id, None)
        self._tokens.pop(task_id, None)
        if task.cancelled():
            logger.info("Background task %s was cancelled", task_id)
        elif task.exception() is not None:
            logger.error("Background task %s crashed: %r", task_id, task.exception())

    def is_running(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and not task.done()

    def cancel(self, task_id: str) -> bool:
        """Request cooperative cancellation; returns False if the task is not running."""
        if not self.is_running(task_id):
            return False
        self._tokens[task_id].cancel()
        logger.info("Cancellation requested for task %s", task_id)
        return True

    async def wait(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        for token in self._tokens.values():
            token.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


task_registry = TaskRegistry()
