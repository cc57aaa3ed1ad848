"""Per-chat FIFO serialization of async work.

Every chat id gets its own queue and a worker task that runs queued jobs
one at a time in submission order. Different chats run concurrently.
A failing job settles its own caller and never stops the queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Job:
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class ChatRequestQueue:
    """Runs tasks for the same chat strictly one at a time."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[_Job]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    async def enqueue(self, chat_id: str, task: Callable[[], Awaitable[T]]) -> T:
        """Queue ``task`` for ``chat_id``; settles exactly when the task settles.

        ``task`` is a zero-argument callable returning an awaitable, so
        nothing starts running before its turn comes up.
        """
        if self._closed:
            raise RuntimeError("ChatRequestQueue is closed")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue = self._queues.setdefault(chat_id, deque())
        queue.append(_Job(factory=task, future=future))
        logger.debug("Chat queue %s: %d pending", chat_id, len(queue))

        if chat_id not in self._workers:
            self._workers[chat_id] = asyncio.create_task(
                self._drain(chat_id), name=f"chat-queue-{chat_id}"
            )
        return await future

    async def _drain(self, chat_id: str) -> None:
        """Worker loop: run jobs until the chat's queue is empty."""
        queue = self._queues[chat_id]
        try:
            while queue:
                job = queue.popleft()
                try:
                    result = await job.factory()
                except asyncio.CancelledError:
                    if not job.future.done():
                        job.future.cancel()
                    if asyncio.current_task().cancelling():
                        raise
                    logger.warning("Chat %s task was cancelled, continuing queue", chat_id)
                except Exception as e:
                    if not job.future.done():
                        job.future.set_exception(e)
                    else:
                        logger.warning("Chat %s task failed after its caller left: %s", chat_id, e)
                else:
                    if not job.future.done():
                        job.future.set_result(result)
        finally:
            for job in queue:
                if not job.future.done():
                    job.future.cancel()
            queue.clear()
            self._queues.pop(chat_id, None)
            self._workers.pop(chat_id, None)

    def pending(self, chat_id: str) -> int:
        """Jobs waiting behind the running one for this chat."""
        return len(self._queues.get(chat_id, ()))

    def is_busy(self, chat_id: str) -> bool:
        return chat_id in self._workers

    def active_chats(self) -> list[str]:
        return list(self._workers)

    async def close(self) -> None:
        """Cancel all workers and any jobs still waiting."""
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.info("Chat request queue closed")
