"""Durable per-chat session record (JSON lines).

Layout: ``<sessions_dir>/<chat_id>/context.jsonl``. The first line is a
session header; every following line is one message entry. Normal turns
only append. Compaction rewrites the whole file through a temp file and
``os.replace`` so a crash leaves either the old or the new record.

Writes are best-effort: failures are logged and reported as False, and
the caller keeps its in-memory conversation as the source of truth.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path

from pydantic import ValidationError

from rachel.agent.models import Message

logger = logging.getLogger(__name__)

SESSION_VERSION = 1
CONTEXT_FILENAME = "context.jsonl"


def session_path(sessions_dir: str | Path, chat_id: str) -> Path:
    return Path(sessions_dir) / str(chat_id) / CONTEXT_FILENAME


def _message_line(message: Message) -> str:
    entry = {"type": "message", "message": message.model_dump(mode="json")}
    return json.dumps(entry, ensure_ascii=False) + "\n"


class SessionStore:
    """Append-only message record for one chat, with wholesale rewrite."""

    def __init__(self, path: str | Path, chat_id: str = "") -> None:
        self.path = Path(path)
        self.chat_id = chat_id or self.path.parent.name

    def _header_line(self) -> str:
        header = {
            "type": "session",
            "version": SESSION_VERSION,
            "chat_id": self.chat_id,
            "created_at": time.time(),
        }
        return json.dumps(header) + "\n"

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def open(self) -> list[Message]:
        """Load the record. A missing file is an empty conversation."""
        return await asyncio.to_thread(self._load)

    def _load(self) -> list[Message]:
        if not self.path.exists():
            return []

        messages: list[Message] = []
        skipped = 0
        # Decoded per line so a torn multibyte sequence only loses its own record
        with self.path.open("rb") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    entry = json.loads(raw.decode("utf-8"))
                    if entry.get("type") != "message":
                        continue
                    messages.append(Message.model_validate(entry["message"]))
                except (ValueError, KeyError, AttributeError, ValidationError):
                    skipped += 1

        if skipped:
            logger.warning(
                "Skipped %d unreadable record(s) in %s", skipped, self.path
            )
        logger.debug("Loaded session %s (%d messages)", self.chat_id, len(messages))
        return messages

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def append_one(self, message: Message) -> bool:
        """Durably append one message. Returns False on failure."""
        try:
            await asyncio.to_thread(self._append, _message_line(message))
            return True
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to persist message for chat %s: %s", self.chat_id, e)
            return False

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a+b") as f:
            if new_file:
                f.write(self._header_line().encode("utf-8"))
            else:
                # A torn previous write must not swallow this record
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    f.write(b"\n")
            f.write(line.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())

    async def rewrite_all(self, messages: list[Message]) -> bool:
        """Replace the whole record with ``messages``. Returns False on failure."""
        try:
            lines = [self._header_line(), *(_message_line(m) for m in messages)]
            await asyncio.to_thread(self._rewrite, lines)
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to rewrite session for chat %s: %s", self.chat_id, e)
            return False
        logger.info("Session %s rewritten (%d messages)", self.chat_id, len(messages))
        return True

    def _rewrite(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            prefix=".context-", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.writelines(lines)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def reset(self) -> bool:
        """Discard the record so the next append starts a fresh session."""
        try:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Failed to reset session for chat %s: %s", self.chat_id, e)
            return False
        logger.info("Session %s reset", self.chat_id)
        return True
