"""Turn executor: model call, tool dispatch, repeat until the model stops.

The loop appends every assistant and toolResult message to the
conversation as soon as it exists, so a turn cut short by a timeout
still leaves its partial state behind for persistence.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from rachel.agent.models import Conversation, Message, StreamEvent
from rachel.agent.provider import ModelClient, ProviderError
from rachel.agent.tools import ToolDispatcher
from rachel.config import Settings

logger = logging.getLogger(__name__)

ContextTransform = Callable[[list[Message]], Awaitable[list[Message]]]
EventSink = Callable[[StreamEvent], None]


class TurnExecutor(Protocol):
    """Produces one assistant turn by appending to the conversation."""

    async def run(
        self,
        conversation: Conversation,
        system_prompt: str,
        *,
        transform: ContextTransform | None = None,
        on_event: EventSink | None = None,
    ) -> None: ...


class AgentLoop:
    """Bounded tool-use loop over a ModelClient and a ToolDispatcher."""

    def __init__(
        self,
        client: ModelClient,
        dispatcher: ToolDispatcher,
        settings: Settings,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._settings = settings

    async def run(
        self,
        conversation: Conversation,
        system_prompt: str,
        *,
        transform: ContextTransform | None = None,
        on_event: EventSink | None = None,
    ) -> None:
        """Run the tool use loop until the model ends its turn or max_turns.

        1. Call the model with the (transformed) history and tools
        2. Append the assistant message
        3. If it asked for tools: dispatch each, append the results, repeat
        4. After max_turns: one final call without tools
        """
        emit = on_event or (lambda event: None)
        tools = self._dispatcher.tool_definitions()

        for _ in range(self._settings.max_turns):
            message, stop_reason = await self._call(
                conversation, system_prompt, transform, tools or None, emit
            )
            conversation.append(message)

            calls = message.tool_calls()
            if stop_reason != "tool_use" or not calls:
                return

            for call in calls:
                emit(StreamEvent(type="tool_start", tool_name=call.name, tool_id=call.id))
                start_time = time.monotonic()
                result_text, is_error = await self._dispatcher.dispatch(
                    call.name, call.arguments
                )
                duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.debug(
                    "Tool %s finished in %d ms (error=%s)", call.name, duration_ms, is_error
                )
                conversation.append(
                    Message.tool_result(call.id, call.name, result_text, is_error)
                )
                emit(StreamEvent(type="tool_end", tool_name=call.name, tool_id=call.id))

        logger.warning("Tool loop reached max_turns=%d", self._settings.max_turns)
        message, _ = await self._call(conversation, system_prompt, transform, None, emit)
        conversation.append(message)

    async def _call(
        self,
        conversation: Conversation,
        system_prompt: str,
        transform: ContextTransform | None,
        tools: list[dict[str, Any]] | None,
        emit: EventSink,
    ) -> tuple[Message, str]:
        messages = list(conversation.messages)
        if transform is not None:
            messages = await transform(messages)

        final: StreamEvent | None = None
        async for event in self._client.stream(system_prompt, messages, tools=tools):
            if event.type == "message":
                final = event
            elif event.type != "tool_start":  # emitted by run() at dispatch
                emit(event)

        if final is None or final.message is None:
            raise ProviderError("Model stream ended without a message")
        return final.message, final.stop_reason
