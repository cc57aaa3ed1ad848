"""Per-chat token usage accounting.

Fed from the UsagePart the provider attaches to each assistant message.
Kept in memory for the process lifetime; capped per chat.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass

from rachel.agent.models import UsagePart


@dataclass
class UsageEntry:
    """One assistant message worth of usage."""

    model: str
    input_tokens: int
    output_tokens: int
    cache_read: int
    cache_write: int
    timestamp: float


@dataclass
class UsageSummary:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read: int = 0
    total_cache_write: int = 0
    turn_count: int = 0


@dataclass
class ModelUsage:
    model: str
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class UsageTracker:
    """In-memory usage ledger keyed by chat id."""

    MAX_ENTRIES_PER_CHAT = 5000

    def __init__(self) -> None:
        self._entries: dict[str, deque[UsageEntry]] = defaultdict(
            lambda: deque(maxlen=self.MAX_ENTRIES_PER_CHAT)
        )

    def record(self, chat_id: str, usage: UsagePart, timestamp: float | None = None) -> None:
        self._entries[chat_id].append(
            UsageEntry(
                model=usage.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_read=usage.cache_read,
                cache_write=usage.cache_write,
                timestamp=timestamp if timestamp is not None else time.time(),
            )
        )

    def _since(self, chat_id: str, since: float | None) -> list[UsageEntry]:
        entries = self._entries.get(chat_id, ())
        if since is None:
            return list(entries)
        return [e for e in entries if e.timestamp >= since]

    def summary(self, chat_id: str, since: float | None = None) -> UsageSummary:
        """Totals for a chat, optionally only entries at or after ``since``."""
        result = UsageSummary()
        for e in self._since(chat_id, since):
            result.total_input_tokens += e.input_tokens
            result.total_output_tokens += e.output_tokens
            result.total_cache_read += e.cache_read
            result.total_cache_write += e.cache_write
            result.turn_count += 1
        return result

    def by_model(self, chat_id: str, since: float | None = None) -> list[ModelUsage]:
        """Per-model breakdown, most used model first."""
        models: dict[str, ModelUsage] = {}
        for e in self._since(chat_id, since):
            m = models.setdefault(e.model, ModelUsage(model=e.model))
            m.turns += 1
            m.input_tokens += e.input_tokens
            m.output_tokens += e.output_tokens
        return sorted(models.values(), key=lambda m: m.turns, reverse=True)
