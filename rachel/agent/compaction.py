"""Conversation compaction: token estimation and history summarization.

Compaction keeps a fixed head of the conversation verbatim, keeps the
most recent turns verbatim, and replaces everything in between with a
single synthetic summary message. It is lossy on purpose.

This module is independent of AgentRunner to avoid circular imports
and keep runner.py focused on orchestration.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum, StrEnum
from typing import TYPE_CHECKING

from rachel.agent.models import Message, Role
from rachel.config import Settings

if TYPE_CHECKING:
    from rachel.agent.provider import ModelClient

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts (co-located with compaction logic)
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Produce concise, factual summaries."
)

SUMMARY_INSTRUCTION = """\
Summarize the following conversation concisely, preserving key facts, \
decisions, user preferences, and any context the assistant needs to \
continue helping effectively. Be thorough but concise: aim for roughly \
10-20% of the original length.

Conversation:
{transcript}

Summary:"""

TRUNCATION_MARKER = "\n\n[...older conversation truncated]"

SUMMARY_PREFIX = (
    "[Context Summary: the following is a summary of our earlier "
    "conversation that was compacted to save context space. Your memory "
    "files contain full details.]"
)

_ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
}


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Approximates token cost from the canonical JSON form of messages.

    Every field counts: tool-call arguments, tool output, usage metadata
    and JSON overhead. Large structured payloads are overestimated rather
    than missed.
    """

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1")
        self._chars_per_token = chars_per_token

    @property
    def chars_per_token(self) -> int:
        return self._chars_per_token

    @staticmethod
    def serialized_length(message: Message) -> int:
        return len(message.model_dump_json())

    def estimate_message(self, message: Message) -> int:
        return math.ceil(self.serialized_length(message) / self._chars_per_token)

    def estimate(self, messages: list[Message]) -> int:
        """Estimate total tokens for a message list."""
        chars = sum(self.serialized_length(m) for m in messages)
        return math.ceil(chars / self._chars_per_token)


# ------------------------------------------------------------------
# Turn boundary
# ------------------------------------------------------------------


class _WalkState(Enum):
    EXPECT_ASSISTANT = "expect_assistant"
    EXPECT_USER = "expect_user"


def count_turn_messages_from_end(messages: list[Message], keep_turns: int) -> int:
    """Count trailing messages that cover the last ``keep_turns`` turns.

    Walks backwards: skip tool results, take one assistant message, skip
    tool results, take one user message (one turn). Anything else where
    a user message is expected is stepped over without counting a turn.
    Stops once keep_turns turns are covered or history runs out.
    """
    turns = 0
    idx = len(messages) - 1
    state = _WalkState.EXPECT_ASSISTANT

    while idx >= 0 and turns < keep_turns:
        role = messages[idx].role

        if role is Role.TOOL_RESULT:
            idx -= 1
            continue

        if state is _WalkState.EXPECT_ASSISTANT:
            if role is Role.ASSISTANT:
                idx -= 1
            state = _WalkState.EXPECT_USER
            continue

        if role is Role.USER:
            turns += 1
        else:
            logger.debug(
                "Unexpected %s message at index %d while looking for a user "
                "message; skipping it",
                role,
                idx,
            )
        idx -= 1
        state = _WalkState.EXPECT_ASSISTANT

    return len(messages) - 1 - idx


def head_end(messages: list[Message], keep_head: int) -> int:
    """Number of leading messages to keep without ending inside a turn.

    Moves forward from ``keep_head`` until the next message is a user
    message or history runs out, so a tool call in the opening turn stays
    with its result.
    """
    end = min(keep_head, len(messages))
    while 0 < end < len(messages) and messages[end].role is not Role.USER:
        end += 1
    return end


# ------------------------------------------------------------------
# Summarizer
# ------------------------------------------------------------------


def flatten_transcript(messages: list[Message]) -> str:
    """Role-labelled transcript of the text parts only.

    Tool calls and tool results are dropped; they are large and add
    little to a human-readable summary.
    """
    lines = []
    for msg in messages:
        text = msg.text(" ")
        if not text:
            continue
        lines.append(f"{_ROLE_LABELS.get(msg.role, 'System')}: {text}")
    return "\n".join(lines)


class Summarizer:
    """Condenses a span of messages into a short text.

    Issues one streamed request to the model client. Never raises for
    provider trouble: timeouts, errors and empty output all fall back to
    a truncated transcript.
    """

    def __init__(self, client: ModelClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    def fallback(self, transcript: str) -> str:
        return transcript[: self._settings.summary_fallback_chars] + TRUNCATION_MARKER

    async def summarize(self, messages: list[Message]) -> str:
        transcript = flatten_transcript(messages)

        if len(transcript) < self._settings.summary_min_chars:
            return transcript

        try:
            summary = await asyncio.wait_for(
                self._request(transcript),
                timeout=self._settings.summary_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Compaction summary failed, using truncation fallback: %r", e
            )
            return self.fallback(transcript)

        if not summary:
            logger.warning("Compaction summary was empty, using truncation fallback")
            return self.fallback(transcript)
        return summary

    async def _request(self, transcript: str) -> str:
        parts: list[str] = []
        async for event in self._client.stream(
            SUMMARY_SYSTEM_PROMPT,
            [Message.user(SUMMARY_INSTRUCTION.format(transcript=transcript))],
            model=self._settings.effective_summary_model,
        ):
            if event.type == "text_delta":
                parts.append(event.text)
        return "".join(parts).strip()


# ------------------------------------------------------------------
# Conversation Compactor
# ------------------------------------------------------------------


class CompactionOutcome(StrEnum):
    BELOW_THRESHOLD = "below_threshold"
    UNSPLITTABLE = "unsplittable"
    COMPACTED = "compacted"


@dataclass
class CompactionResult:
    outcome: CompactionOutcome
    messages: list[Message]
    estimated_tokens: int
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return self.outcome is CompactionOutcome.COMPACTED


class ConversationCompactor:
    """Threshold check, split, summarize and splice.

    The head (first compaction_keep_head messages, extended to the end
    of the turn they cut into) and the tail (the
    last compaction_keep_recent_turns turns) survive verbatim. The middle
    becomes one user-role message flagged ``summary=True``.
    """

    def __init__(
        self,
        settings: Settings,
        summarizer: Summarizer,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._settings = settings
        self._summarizer = summarizer
        self.estimator = estimator or TokenEstimator(settings.chars_per_token)

    @property
    def threshold(self) -> float:
        return self._settings.compaction_trigger_tokens

    def should_compact(self, messages: list[Message]) -> bool:
        return self.estimator.estimate(messages) > self.threshold

    async def compact(self, messages: list[Message]) -> CompactionResult:
        estimated = self.estimator.estimate(messages)
        if estimated <= self.threshold:
            return CompactionResult(
                CompactionOutcome.BELOW_THRESHOLD, messages, estimated
            )

        logger.info(
            "Context compaction triggered: ~%d tokens > %d threshold (%d messages)",
            estimated,
            int(self.threshold),
            len(messages),
        )

        keep_tail = count_turn_messages_from_end(
            messages, self._settings.compaction_keep_recent_turns
        )
        keep_head = head_end(messages, self._settings.compaction_keep_head)

        if keep_head + keep_tail >= len(messages):
            logger.warning(
                "Cannot compact, not enough messages to split "
                "(head=%d, tail=%d, total=%d)",
                keep_head,
                keep_tail,
                len(messages),
            )
            return CompactionResult(
                CompactionOutcome.UNSPLITTABLE, messages, estimated
            )

        head = messages[:keep_head]
        middle = messages[keep_head : len(messages) - keep_tail]
        tail = messages[len(messages) - keep_tail :]

        summary = await self._summarizer.summarize(middle)
        summary_message = Message(
            role=Role.USER,
            content=f"{SUMMARY_PREFIX}\n\n{summary}",
            timestamp=middle[-1].timestamp,
            summary=True,
        )
        compacted = [*head, summary_message, *tail]

        saved = self.estimator.estimate(middle) - self.estimator.estimate_message(
            summary_message
        )
        logger.info(
            "Context compacted: %d messages -> %d (dropped %d, ~%d tokens saved)",
            len(messages),
            len(compacted),
            len(middle),
            saved,
        )
        return CompactionResult(
            CompactionOutcome.COMPACTED,
            compacted,
            self.estimator.estimate(compacted),
            dropped=len(middle),
        )

    async def transform(self, messages: list[Message]) -> list[Message]:
        """Pre-flight hook for an outbound payload: compacted messages only."""
        return (await self.compact(messages)).messages
