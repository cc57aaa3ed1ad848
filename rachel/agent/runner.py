"""Agent runner -- owns one chat's conversation and answers its turns.

Wires the session record, the compactor and the turn executor around a
single Conversation:

  start():  load session -> (background) compact + rewrite if oversized
  prompt(): append user message -> pre-flight compaction -> executor
            -> persist new messages -> final assistant text

Only one runner exists per chat (see registry.py) and turns reach it
through the ChatRequestQueue, so nothing in here locks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rachel.agent.compaction import ConversationCompactor
from rachel.agent.loop import TurnExecutor
from rachel.agent.models import Conversation, Message, Role, StreamEvent
from rachel.agent.session import SessionStore
from rachel.config import Settings

if TYPE_CHECKING:
    from rachel.usage import UsageTracker

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "(No response)"
NO_RESPONSE_AFTER_RESET_TEXT = "(No response after context reset)"
TIMEOUT_TEXT = (
    "Sorry, that task took too long and I had to stop. Try breaking it into "
    "smaller steps, or ask me to do it differently."
)
RECOVERY_FAILED_TEXT = "I encountered an error and couldn't recover. Please try again."
RECOVERY_NOTE = (
    "[System: Previous conversation context was too large and has been reset. "
    "Your memory files are intact. The user's original message follows.]"
)

EventCallback = Callable[[StreamEvent], None]


def is_context_overflow(error: BaseException | str, patterns: Iterable[str]) -> bool:
    """True if a provider error message reports an oversized context."""
    text = str(error).lower()
    return any(p.lower() in text for p in patterns)


@dataclass
class PromptResult:
    response: str
    tools_used: list[str] = field(default_factory=list)


@dataclass
class RunnerInfo:
    chat_id: str
    model: str
    messages: int
    persisted: int
    streaming: bool


class AgentRunner:
    """Per-chat owner of the (Conversation, SessionStore) pair."""

    def __init__(
        self,
        chat_id: str,
        settings: Settings,
        store: SessionStore,
        compactor: ConversationCompactor,
        executor: TurnExecutor,
        *,
        usage: UsageTracker | None = None,
        system_prompt: Callable[[], str] | None = None,
    ) -> None:
        self.chat_id = chat_id
        self.conversation = Conversation(chat_id=chat_id)
        self._settings = settings
        self._store = store
        self._compactor = compactor
        self._executor = executor
        self._usage = usage
        self._system_prompt = system_prompt or (lambda: settings.system_prompt)
        self._subscribers: list[EventCallback] = []
        self._startup_task: asyncio.Task | None = None
        self._started = False
        self._streaming = False
        self._needs_rewrite = False  # session file no longer matches a prefix of memory
        self._turn_start = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the session; compact it in the background if it is oversized.

        A session saved just under the limit can grow past it while the
        process is down. Without this the provider may answer a stale,
        oversized history with empty output instead of an overflow error.
        """
        if self._started:
            return
        self._started = True

        messages = await self._store.open()
        if messages:
            self.conversation.messages = messages
            self.conversation.persisted_count = len(messages)
        logger.info(
            "AgentRunner created for chat %s (%d messages loaded)",
            self.chat_id,
            len(messages),
        )

        if self._compactor.should_compact(self.conversation.messages):
            logger.info(
                "Loaded session for chat %s exceeds compaction threshold, "
                "compacting in background",
                self.chat_id,
            )
            self._startup_task = asyncio.create_task(
                self._compact_loaded_session(),
                name=f"startup-compaction-{self.chat_id}",
            )

    async def _compact_loaded_session(self) -> None:
        """Background startup compaction. Errors are logged, never raised."""
        try:
            await self._compact_and_rewrite()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Startup compaction failed for chat %s", self.chat_id)

    async def _wait_for_startup(self) -> None:
        task, self._startup_task = self._startup_task, None
        if task is not None:
            await asyncio.wait([task])

    async def close(self) -> None:
        """Cancel the startup compaction if it is still running."""
        task, self._startup_task = self._startup_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Receive stream events (text deltas, tool start/end) during turns.

        Returns a function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: StreamEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event callback error for chat %s", self.chat_id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def prompt(self, text: str) -> PromptResult:
        """Answer one user message.

        Overflow errors reset the history and retry once; timeouts return a
        friendly message after persisting partial state. Anything else is
        logged and re-raised.
        """
        await self._wait_for_startup()

        tools_used: list[str] = []

        def track_tools(event: StreamEvent) -> None:
            if event.type == "tool_end":
                tools_used.append(event.tool_name)

        unsubscribe = self.subscribe(track_tools)
        try:
            self.conversation.append(Message.user(text))
            try:
                await self._run_turn()
            except TimeoutError:
                logger.warning(
                    "Agent prompt timed out for chat %s after %.0fs",
                    self.chat_id,
                    self._settings.prompt_timeout,
                )
                await self._persist()
                return PromptResult(TIMEOUT_TEXT, tools_used)
            except Exception as e:
                if is_context_overflow(e, self._settings.overflow_patterns):
                    logger.warning(
                        "Context overflow detected for chat %s, resetting session: %s",
                        self.chat_id,
                        e,
                    )
                    return await self._recover_from_overflow(text, tools_used)
                logger.error("Agent prompt error for chat %s: %s", self.chat_id, e)
                raise

            await self._persist()
            return PromptResult(self._last_response(NO_RESPONSE_TEXT), tools_used)
        finally:
            unsubscribe()

    async def _run_turn(self) -> None:
        """Pre-flight compaction plus executor, bounded by prompt_timeout."""
        self._streaming = True
        self._turn_start = len(self.conversation)
        try:
            await asyncio.wait_for(self._turn(), timeout=self._settings.prompt_timeout)
        finally:
            self._streaming = False
            self._record_usage(self.conversation.messages[self._turn_start :])

    async def _turn(self) -> None:
        await self._compact_and_rewrite()
        self._turn_start = len(self.conversation)
        await self._executor.run(
            self.conversation,
            self._system_prompt(),
            transform=self._compactor.transform,
            on_event=self._emit,
        )

    async def _recover_from_overflow(
        self, original_text: str, tools_used: list[str]
    ) -> PromptResult:
        """Clear history, start a fresh session and retry the message once."""
        self.conversation.clear()
        self._turn_start = 0
        self._needs_rewrite = not await self._store.reset()

        self.conversation.append(Message.user(f"{RECOVERY_NOTE}\n\n{original_text}"))
        try:
            await self._run_turn()
        except Exception as e:
            logger.error(
                "Failed even after context reset for chat %s: %s", self.chat_id, e
            )
            await self._persist()
            return PromptResult(RECOVERY_FAILED_TEXT, tools_used)

        await self._persist()
        return PromptResult(self._last_response(NO_RESPONSE_AFTER_RESET_TEXT), tools_used)

    def _last_response(self, placeholder: str) -> str:
        for message in reversed(self.conversation.messages[self._turn_start :]):
            if message.role is Role.ASSISTANT:
                return message.text() or placeholder
        return placeholder

    def _record_usage(self, messages: list[Message]) -> None:
        if self._usage is None:
            return
        for message in messages:
            if message.role is not Role.ASSISTANT:
                continue
            usage = message.usage()
            if usage is not None:
                self._usage.record(self.chat_id, usage, timestamp=message.timestamp)

    # ------------------------------------------------------------------
    # Compaction + persistence
    # ------------------------------------------------------------------

    async def _compact_and_rewrite(self) -> bool:
        """Compact the conversation in place; rewrite the session if it changed."""
        result = await self._compactor.compact(self.conversation.messages)
        if not result.changed:
            return False
        self.conversation.replace(result.messages)
        self._needs_rewrite = True
        await self._persist()
        return True

    async def _persist(self) -> None:
        """Write everything past the persisted cursor. Best-effort."""
        conversation = self.conversation
        if self._needs_rewrite:
            if await self._store.rewrite_all(conversation.messages):
                conversation.persisted_count = len(conversation)
                self._needs_rewrite = False
            return

        written = 0
        for message in conversation.unpersisted:
            if not await self._store.append_one(message):
                break
            conversation.persisted_count += 1
            written += 1
        logger.debug("Session persisted for chat %s (%d new messages)", self.chat_id, written)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def message_count(self) -> int:
        return len(self.conversation)

    def info(self) -> RunnerInfo:
        return RunnerInfo(
            chat_id=self.chat_id,
            model=self._settings.model,
            messages=len(self.conversation),
            persisted=self.conversation.persisted_count,
            streaming=self._streaming,
        )
