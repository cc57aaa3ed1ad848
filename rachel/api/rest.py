"""REST API for the Rachel agent.

Endpoints:
  POST /chat/{chat_id}  - Send message, get response (queued per chat)
  GET  /chat/{chat_id}  - Runner info, queue depth, token usage
  GET  /health          - Health check
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from rachel.agent.registry import RunnerRegistry
from rachel.usage import UsageTracker

logger = logging.getLogger(__name__)


def create_app(
    registry: RunnerRegistry,
    usage: UsageTracker,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat/{chat_id} - Send a message, get a response."""
        chat_id = request.path_params["chat_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message") if isinstance(body, dict) else None
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        try:
            result = await registry.prompt(chat_id, message)
        except Exception as e:
            logger.error("Chat error for %s: %s", chat_id, e)
            return JSONResponse({"error": str(e)}, status_code=500)

        return JSONResponse(
            {
                "chat_id": chat_id,
                "response": result.response,
                "tools_used": result.tools_used,
            }
        )

    async def chat_info(request: Request) -> JSONResponse:
        """GET /chat/{chat_id} - Runner state for diagnostics."""
        chat_id = request.path_params["chat_id"]
        runner = registry.peek(chat_id)
        if runner is None:
            return JSONResponse({"error": f"No active runner for chat {chat_id}"}, status_code=404)

        return JSONResponse(
            {
                **asdict(runner.info()),
                "queue": {
                    "pending": registry.queue.pending(chat_id),
                    "busy": registry.queue.is_busy(chat_id),
                },
                "usage": asdict(usage.summary(chat_id)),
            }
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus a count of active runners."""
        return JSONResponse(
            {
                "status": "healthy",
                "runners": len(registry),
                "active_chats": registry.queue.active_chats(),
            }
        )

    routes = [
        Route("/chat/{chat_id}", chat, methods=["POST"]),
        Route("/chat/{chat_id}", chat_info, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
