"""Model collaborator: streaming calls to the Anthropic Messages API.

Uses direct httpx calls (no SDK). ``AnthropicClient.stream()`` yields
StreamEvents as they arrive and finishes with one ``message`` event that
carries the assembled assistant Message, including a UsagePart when the
API reports usage.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from rachel.agent.models import (
    ImagePart,
    Message,
    Role,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UsagePart,
)
from rachel.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRY_STATUSES = (429, 500, 529)


class ProviderError(RuntimeError):
    """The model provider rejected or aborted a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelClient(Protocol):
    """Streaming model collaborator used by the summarizer and the turn loop."""

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


# ------------------------------------------------------------------
# Wire format
# ------------------------------------------------------------------


def _part_to_block(part: Any) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text} if part.text else None
    if isinstance(part, ToolCallPart):
        return {
            "type": "tool_use",
            "id": part.id,
            "name": part.name,
            "input": part.arguments,
        }
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "tool_use_id": part.tool_call_id,
            "content": part.content,
            "is_error": part.is_error,
        }
    if isinstance(part, ImagePart):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": part.media_type, "data": part.data},
        }
    # UsagePart is metadata only
    return None


def to_api_messages(messages: list[Message]) -> tuple[list[dict[str, Any]], list[str]]:
    """Convert history into Anthropic ``messages`` plus extra system text.

    toolResult messages travel as user messages with tool_result blocks.
    Adjacent messages with the same API role are merged, since the API
    requires user/assistant alternation.
    """
    api_messages: list[dict[str, Any]] = []
    system_extra: list[str] = []

    for msg in messages:
        if msg.role is Role.SYSTEM:
            text = msg.text()
            if text:
                system_extra.append(text)
            continue

        blocks = [b for b in (_part_to_block(p) for p in msg.parts) if b]
        if not blocks:
            continue
        api_role = "assistant" if msg.role is Role.ASSISTANT else "user"

        if api_messages and api_messages[-1]["role"] == api_role:
            api_messages[-1]["content"].extend(blocks)
        else:
            api_messages.append({"role": api_role, "content": blocks})

    return api_messages, system_extra


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Skips ping keepalives. stop_reason lives in message_delta.delta.
    In-stream errors (HTTP 200 with an error body) become ``error`` events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage")
        return StreamEvent(type="message_start", usage=usage)

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(
                type="text_delta", text=delta.get("text", ""), block_index=block_index
            )
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
            usage=data.get("usage"),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class AnthropicClient:
    """Streams Messages API responses over an httpx.AsyncClient."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Create the httpx client with timeout settings (unless injected)."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url, timeout=timeout, limits=limits
        )
        logger.info("httpx client initialized (auth: %s)", self._auth_type())

    async def close(self) -> None:
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _auth_type(self) -> str:
        if self._settings.anthropic_auth_token:
            return "Bearer token"
        return "API key" if self._settings.anthropic_api_key else "none"

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if self._settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {self._settings.anthropic_auth_token}"
        elif self._settings.anthropic_api_key:
            headers["x-api-key"] = self._settings.anthropic_api_key
        return headers

    def build_payload(
        self,
        system_prompt: str,
        messages: list[Message],
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        api_messages, system_extra = to_api_messages(messages)
        system = "\n\n".join([system_prompt, *system_extra]) if system_extra else system_prompt
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": system,
            "messages": api_messages,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        *,
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one assistant message.

        Retries once on 429/500/529 before anything was yielded.
        Raises ProviderError on HTTP errors and in-stream error events.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(system_prompt, messages, model, tools)
        model_name = payload["model"]

        for attempt in range(2):
            async with self._http.stream(
                "POST", "/v1/messages", json=payload, headers=self._headers()
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    error = _error_from_body(response.status_code, body)
                    if response.status_code in _RETRY_STATUSES and attempt == 0:
                        retry_after = _retry_after_seconds(response.headers)
                        logger.warning(
                            "API error %d, retrying in %.1fs: %s",
                            response.status_code,
                            retry_after,
                            error,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise error

                async for event in self._read_events(response, model_name):
                    yield event
                return

    async def _read_events(
        self, response: httpx.Response, model_name: str
    ) -> AsyncIterator[StreamEvent]:
        parts: list[Any] = []
        blocks: dict[int, dict[str, Any]] = {}
        usage: dict[str, int] = {}
        stop_reason = ""

        async for line in response.aiter_lines():
            if not line.startswith("data: "):
                continue
            event = _parse_sse_event(json.loads(line[6:]))
            if event is None:
                continue

            if event.type == "error":
                raise ProviderError(event.text)

            if event.type == "message_start":
                usage.update(event.usage or {})
            elif event.type == "text_block_start":
                blocks[event.block_index] = {"kind": "text", "text": []}
            elif event.type == "text_delta":
                blocks.setdefault(event.block_index, {"kind": "text", "text": []})
                blocks[event.block_index]["text"].append(event.text)
                yield event
            elif event.type == "tool_start":
                blocks[event.block_index] = {
                    "kind": "tool",
                    "id": event.tool_id,
                    "name": event.tool_name,
                    "input": [],
                }
                yield event
            elif event.type == "tool_input_delta":
                acc = blocks.get(event.block_index)
                if acc and acc["kind"] == "tool":
                    acc["input"].append(event.text)
            elif event.type == "block_stop":
                acc = blocks.pop(event.block_index, None)
                if acc:
                    parts.append(_finish_block(acc))
            elif event.type == "done":
                stop_reason = event.stop_reason
                usage.update(event.usage or {})

        parts = [p for p in parts if p is not None]
        parts.append(
            UsagePart(
                model=model_name,
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
                cache_read=usage.get("cache_read_input_tokens", 0),
                cache_write=usage.get("cache_creation_input_tokens", 0),
            )
        )
        yield StreamEvent(
            type="message",
            stop_reason=stop_reason,
            usage=usage or None,
            message=Message.assistant(parts),
        )


def _finish_block(acc: dict[str, Any]) -> Any:
    if acc["kind"] == "text":
        text = "".join(acc["text"])
        return TextPart(text=text) if text else None
    input_json = "".join(acc["input"])
    try:
        arguments = json.loads(input_json) if input_json else {}
    except json.JSONDecodeError:
        logger.warning("Malformed tool input JSON for %s", acc["name"])
        arguments = {}
    return ToolCallPart(id=acc["id"], name=acc["name"], arguments=arguments)


def _error_from_body(status_code: int, body: bytes) -> ProviderError:
    try:
        error = json.loads(body).get("error", {})
        error_type = error.get("type", "unknown")
        error_msg = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode(errors="replace")[:500]
    return ProviderError(
        f"Anthropic API error ({status_code}): {error_type} - {error_msg}",
        status_code=status_code,
    )


def _retry_after_seconds(headers: httpx.Headers) -> float:
    """Delay from a numeric retry-after header, 1s if absent or a date. Capped at 30s."""
    try:
        delay = float(headers.get("retry-after", "1"))
    except ValueError:
        delay = 1.0
    return min(max(delay, 0.0), 30.0)
