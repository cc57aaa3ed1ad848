"""Shared fixtures: settings, fake model client, scripted turn executor."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from rachel.agent.compaction import ConversationCompactor, Summarizer, TokenEstimator
from rachel.agent.models import (
    Conversation,
    Message,
    StreamEvent,
    TextPart,
    ToolCallPart,
    UsagePart,
)
from rachel.agent.runner import AgentRunner
from rachel.agent.session import SessionStore, session_path
from rachel.config import Settings


def make_settings(**overrides: Any) -> Settings:
    """Settings with a fake API key and test-friendly timeouts."""
    defaults: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key-123",
        "sessions_dir": "/tmp/rachel-test-sessions",
        "summary_timeout": 5.0,
        "prompt_timeout": 5.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def small_budget_settings(**overrides: Any) -> Settings:
    """Settings whose compaction threshold is easy to cross in tests.

    max_context_tokens=2000 at 0.5 -> compaction above 1000 estimated tokens.
    """
    defaults: dict[str, Any] = {
        "max_context_tokens": 2000,
        "max_tokens": 100,
        "compaction_threshold": 0.5,
        "compaction_keep_recent_turns": 10,
        "compaction_keep_head": 2,
    }
    defaults.update(overrides)
    return make_settings(**defaults)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def user(text: str = "hello") -> Message:
    return Message.user(text)


def assistant(text: str = "ok") -> Message:
    return Message.assistant([TextPart(text=text)])


def assistant_tool_call(call_id: str = "t1", name: str = "bash") -> Message:
    return Message.assistant(
        [ToolCallPart(id=call_id, name=name, arguments={"command": "ls"})]
    )


def tool_result(call_id: str = "t1", name: str = "bash", content: str = "output") -> Message:
    return Message.tool_result(call_id, name, content)


def turn_pairs(count: int, size: int = 200) -> list[Message]:
    """``count`` user/assistant pairs with ``size``-char texts."""
    messages: list[Message] = []
    for i in range(count):
        messages.append(user(f"u{i:02d} " + "x" * size))
        messages.append(assistant(f"a{i:02d} " + "y" * size))
    return messages


# ---------------------------------------------------------------------------
# Fake model client
# ---------------------------------------------------------------------------


class FakeModelClient:
    """Scripted ModelClient.

    Each entry in ``replies`` is either a string (streamed as text and
    finished with end_turn), a Message (returned as-is with stop_reason
    tool_use if it has tool calls), or an exception (raised when the
    stream is iterated).
    """

    def __init__(self, replies: list[Any] | None = None, repeat_last: bool = True) -> None:
        self.replies = list(replies or ["A summary."])
        self.repeat_last = repeat_last
        self.calls: list[dict[str, Any]] = []

    def _next(self) -> Any:
        if len(self.replies) > 1 or not self.repeat_last:
            return self.replies.pop(0)
        return self.replies[0]

    async def stream(self, system_prompt, messages, *, model=None, tools=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "model": model,
                "tools": tools,
            }
        )
        reply = self._next()
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, Message):
            stop_reason = "tool_use" if reply.tool_calls() else "end_turn"
            yield StreamEvent(type="message", stop_reason=stop_reason, message=reply)
            return
        for chunk in (reply[: len(reply) // 2], reply[len(reply) // 2 :]):
            if chunk:
                yield StreamEvent(type="text_delta", text=chunk)
        yield StreamEvent(
            type="message",
            stop_reason="end_turn",
            message=Message.assistant([TextPart(text=reply)]),
        )


# ---------------------------------------------------------------------------
# Scripted turn executor
# ---------------------------------------------------------------------------


class ScriptedExecutor:
    """TurnExecutor double.

    Each step is a string (append one assistant message with usage),
    an exception (raised), or an async callable
    ``(conversation, on_event) -> None`` for custom behaviour.
    """

    def __init__(self, steps: list[Any] | None = None) -> None:
        self.steps = list(steps or ["Hello from Rachel!"])
        self.calls: list[list[Message]] = []
        self.system_prompts: list[str] = []

    def _next(self) -> Any:
        if len(self.steps) > 1:
            return self.steps.pop(0)
        return self.steps[0]

    async def run(self, conversation: Conversation, system_prompt: str, *, transform=None, on_event=None):
        self.calls.append(list(conversation.messages))
        self.system_prompts.append(system_prompt)
        step = self._next()
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            await step(conversation, on_event or (lambda event: None))
            return
        conversation.append(
            Message.assistant(
                [
                    TextPart(text=step),
                    UsagePart(model="test-model", input_tokens=100, output_tokens=20),
                ]
            )
        )


def make_compactor(settings: Settings, client: FakeModelClient | None = None) -> ConversationCompactor:
    summarizer = Summarizer(client or FakeModelClient(), settings)
    return ConversationCompactor(settings, summarizer, TokenEstimator(settings.chars_per_token))


def make_runner(
    settings: Settings,
    executor: ScriptedExecutor,
    chat_id: str = "chat-1",
    client: FakeModelClient | None = None,
    store: SessionStore | None = None,
    **kwargs: Any,
) -> AgentRunner:
    store = store or SessionStore(session_path(settings.sessions_dir, chat_id), chat_id)
    return AgentRunner(
        chat_id,
        settings,
        store,
        make_compactor(settings, client),
        executor,
        **kwargs,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(sessions_dir=str(tmp_path / "sessions"))


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll the event loop until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
