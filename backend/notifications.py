"""Progress notifications for background tasks.

Producers call ``on_task_init``/``on_progress``/``on_failure``; delivery is
fire-and-forget. The hub remembers the last event per task for polling and
fans events out to WebSocket subscribers through per-connection queues.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from backend.config import utcnow

logger = logging.getLogger(__name__)

FAILED_PROGRESS = -1
_QUEUE_SIZE = 100


@dataclass
class ProgressEvent:
    task_id: str
    progress: int
    message: str
    status: str
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return data


class ProgressHub:
    """In-process notification port keyed by task id."""

    def __init__(self) -> None:
        self._last: dict[str, ProgressEvent] = {}
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}

    def on_task_init(self, task_id: str, message: str = "Task started") -> None:
        self._publish(ProgressEvent(task_id, 0, message, "pending"))

    def on_progress(self, task_id: str, percent: int, message: str, status: str = "running") -> None:
        self._publish(ProgressEvent(task_id, percent, message, status))

    def on_failure(self, task_id: str, message: str) -> None:
        self._publish(ProgressEvent(task_id, FAILED_PROGRESS, message, "failed"))

    def last(self, task_id: str) -> ProgressEvent | None:
        return self._last.get(task_id)

    def subscribe(self, task_id: str) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=_QUEUE_SIZE)
        self._subscribers.setdefault(task_id, set()).add(queue)
        last = self._last.get(task_id)
        if last is not None:
            queue.put_nowait(last)
        return queue

    def unsubscribe(self, task_id: str, queue: asyncio.Queue[ProgressEvent]) -> None:
        queues = self._subscribers.get(task_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[task_id]

    def forget(self, task_id: str) -> None:
        self._last.pop(task_id, None)

    def _publish(self, event: ProgressEvent) -> None:
        self._last[event.task_id] = event
        logger.info("Task %s: %d%% %s", event.task_id, event.progress, event.message)
        for queue in self._subscribers.get(event.task_id, ()):
            if queue.full():
                # Slow consumer: keep the newest events
                queue.get_nowait()
            queue.put_nowait(event)


progress_hub = ProgressHub()
