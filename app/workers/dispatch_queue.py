"""
Dispatch Queue - the seam between admission and the worker.

The API depends only on ``DispatchQueue.enqueue``; the job payload is just
the message id. Delivery is at-least-once, so the worker guards against
redelivered jobs.
"""
from __future__ import annotations

import abc
import asyncio

from app.core.logging import get_logger

logger = get_logger(__name__)


class DispatchQueue(abc.ABC):
    @abc.abstractmethod
    async def enqueue(self, message_id: str) -> None:
        """Schedule a dispatch job. Raises if the job could not be queued."""


class CeleryDispatchQueue(DispatchQueue):
    """Production queue: Celery over the Redis broker"""

    async def enqueue(self, message_id: str) -> None:
        # imported lazily so the API process does not load the worker module graph at import time
        from app.workers.tasks import dispatch_message

        # apply_async talks to the broker synchronously
        result = await asyncio.to_thread(dispatch_message.apply_async, args=[message_id])
        logger.debug(
            "Dispatch job enqueued",
            extra_data={"message_id": message_id, "task_id": result.id},
        )


class InMemoryDispatchQueue(DispatchQueue):
    """Collects message ids instead of sending them anywhere"""

    def __init__(self) -> None:
        self.enqueued: list[str] = []
        self.fail_with: Exception | None = None

    async def enqueue(self, message_id: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.enqueued.append(message_id)
