import asyncio
import uuid
from datetime import datetime

from loguru import logger

from snoopy.common.errors import DataNotFoundError, InvalidTransitionError, SnoopyError
from snoopy.common.models import Task, TaskStatus

# Allowed status changes, Running -> Running only updates the comment.
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class TaskStore:
    """In-memory task collection shared by the API handlers and the orchestrator.

    Every read or write is a short critical section under one lock, no I/O happens while it is
    held. Submitted task ids are also pushed to a FIFO queue consumed by `next_pending`.
    """

    def __init__(self, queue_size: int = 0):
        self._tasks: dict[uuid.UUID, Task] = {}
        self._lock = asyncio.Lock()
        self._pending: asyncio.Queue[uuid.UUID] = asyncio.Queue(maxsize=queue_size)
        self._closing = asyncio.Event()

    async def create(self, query_id: str, ts: int) -> Task:
        if self._closing.is_set():
            raise SnoopyError("Task store is shutting down")

        now = datetime.now()
        task = Task(
            id=uuid.uuid4(),
            query_id=query_id,
            ts=ts,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._tasks[task.id] = task
        await self._pending.put(task.id)
        logger.info(f"Created task {task.id} for query {query_id} at {ts}")
        return task.model_copy()

    async def get(self, task_id: uuid.UUID) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
        return task.model_copy() if task is not None else None

    async def list_tasks(self) -> list[Task]:
        async with self._lock:
            tasks = list(self._tasks.values())
        return [task.model_copy() for task in tasks]

    async def transition(self, task_id: uuid.UUID, status: TaskStatus, comment: str | None = None) -> Task:
        """Atomically move a task forward and replace its comment.

        Raises:
            DataNotFoundError: Unknown task id.
            InvalidTransitionError: The task is terminal or the move goes backwards.
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise DataNotFoundError("Unknown task", context={"task_id": task_id})
            if status not in _TRANSITIONS[task.status]:
                raise InvalidTransitionError(
                    f"Cannot move task from {task.status.value} to {status.value}", context={"task_id": task_id}
                )
            updated = task.model_copy(update={"status": status, "comment": comment, "updated_at": datetime.now()})
            self._tasks[task_id] = updated
        return updated.model_copy()

    async def next_pending(self) -> Task:
        """Wait for the next submitted task that is still pending."""
        while True:
            task_id = await self._pending.get()
            self._pending.task_done()
            task = await self.get(task_id)
            if task is not None and task.status == TaskStatus.PENDING:
                return task

    @property
    def queue_size(self) -> int:
        return self._pending.qsize()

    async def shutdown(self) -> None:
        self._closing.set()
