"""Shared data models for the agent layer.

Messages are a closed tagged variant: a Role plus either plain text or
an ordered tuple of typed parts discriminated by ``type``. They are
immutable once created; a Conversation only ever grows by append or
gets replaced wholesale.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "toolResult"
    SYSTEM = "system"


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["toolCall"] = "toolCall"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["toolResult"] = "toolResult"
    tool_call_id: str
    tool_name: str
    content: str
    is_error: bool = False


class ImagePart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    media_type: str  # e.g. image/png
    data: str  # base64


class UsagePart(BaseModel):
    """Token usage reported by the provider for one assistant message."""

    model_config = ConfigDict(frozen=True)

    type: Literal["usage"] = "usage"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read: int = 0
    cache_write: int = 0


Part = Annotated[
    TextPart | ToolCallPart | ToolResultPart | ImagePart | UsagePart,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """A single immutable message in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | tuple[Part, ...]
    timestamp: float = Field(default_factory=time.time)
    summary: bool = False  # True only for injected compaction summaries

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(cls, content: str | list[Any] | tuple[Any, ...]) -> Message:
        if isinstance(content, list):
            content = tuple(content)
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool_result(
        cls,
        tool_call_id: str,
        tool_name: str,
        content: str,
        is_error: bool = False,
    ) -> Message:
        part = ToolResultPart(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            content=content,
            is_error=is_error,
        )
        return cls(role=Role.TOOL_RESULT, content=(part,))

    @property
    def parts(self) -> tuple[Any, ...]:
        """Content as a tuple of parts (plain text becomes one TextPart)."""
        if isinstance(self.content, str):
            return (TextPart(text=self.content),)
        return self.content

    def text(self, separator: str = "\n") -> str:
        """Join the text parts. Tool payloads and metadata are ignored."""
        if isinstance(self.content, str):
            return self.content
        return separator.join(
            p.text for p in self.content if isinstance(p, TextPart) and p.text
        )

    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def usage(self) -> UsagePart | None:
        for p in self.parts:
            if isinstance(p, UsagePart):
                return p
        return None


@dataclass
class Conversation:
    """In-memory history of one chat plus its persisted cursor.

    persisted_count is how many leading messages are already written to
    the session file. It never exceeds len(messages).
    """

    chat_id: str
    messages: list[Message] = field(default_factory=list)
    persisted_count: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def replace(self, messages: list[Message]) -> None:
        """Swap in a new history. Nothing of it counts as persisted yet."""
        self.messages = list(messages)
        self.persisted_count = 0

    def clear(self) -> None:
        self.replace([])

    @property
    def unpersisted(self) -> list[Message]:
        return self.messages[self.persisted_count:]

    def __len__(self) -> int:
        return len(self.messages)


@dataclass
class StreamEvent:
    """A single event from the model collaborator's streaming response."""

    type: str  # text_delta, tool_start, tool_end, done, message, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_input: dict = field(default_factory=dict)
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] | None = None
    message: Message | None = None  # set on "message" events
