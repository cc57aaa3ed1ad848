"""Lifecycle-scoped registry of AgentRunners, one per chat.

Owned by the application root: built at startup, closed at shutdown and
handed to request handlers. Runners are created lazily on first use and
cached until the registry closes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from rachel.agent.compaction import ConversationCompactor
from rachel.agent.loop import TurnExecutor
from rachel.agent.queue import ChatRequestQueue
from rachel.agent.runner import AgentRunner, PromptResult
from rachel.agent.session import SessionStore, session_path
from rachel.config import Settings

if TYPE_CHECKING:
    from rachel.usage import UsageTracker

logger = logging.getLogger(__name__)


class RunnerRegistry:
    """Maps chat id -> AgentRunner and routes prompts through the queue."""

    def __init__(
        self,
        settings: Settings,
        compactor: ConversationCompactor,
        executor: TurnExecutor,
        queue: ChatRequestQueue,
        *,
        usage: UsageTracker | None = None,
        system_prompt: Callable[[], str] | None = None,
    ) -> None:
        self._settings = settings
        self._compactor = compactor
        self._executor = executor
        self._usage = usage
        self._system_prompt = system_prompt
        self.queue = queue
        self._runners: dict[str, AgentRunner] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    def _create(self, chat_id: str) -> AgentRunner:
        store = SessionStore(session_path(self._settings.sessions_dir, chat_id), chat_id)
        return AgentRunner(
            chat_id,
            self._settings,
            store,
            self._compactor,
            self._executor,
            usage=self._usage,
            system_prompt=self._system_prompt,
        )

    async def get(self, chat_id: str) -> AgentRunner:
        """Return the chat's runner, creating and starting it on first use."""
        runner = self._runners.get(chat_id)
        if runner is not None:
            return runner

        # One lock per chat id
        async with self._locks.setdefault(chat_id, asyncio.Lock()):
            if self._closed:
                raise RuntimeError("RunnerRegistry is closed")
            runner = self._runners.get(chat_id)
            if runner is None:
                runner = self._create(chat_id)
                await runner.start()
                self._runners[chat_id] = runner
        return runner

    def peek(self, chat_id: str) -> AgentRunner | None:
        """The chat's runner if one exists; never creates."""
        return self._runners.get(chat_id)

    async def prompt(self, chat_id: str, text: str) -> PromptResult:
        """Queue a prompt for the chat; resolves when its turn has finished."""

        async def task() -> PromptResult:
            runner = await self.get(chat_id)
            return await runner.prompt(text)

        return await self.queue.enqueue(chat_id, task)

    def __len__(self) -> int:
        return len(self._runners)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._runners

    async def close(self) -> None:
        """Stop background work of every runner and forget them."""
        self._closed = True
        for runner in list(self._runners.values()):
            await runner.close()
        self._runners.clear()
        self._locks.clear()
        logger.info("Runner registry closed")
