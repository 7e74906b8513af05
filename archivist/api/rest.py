"""REST API for the Archivist agent.

Endpoints:
  POST   /chat                           - Send message, get response
  GET    /conversations                  - List conversations
  GET    /conversations/{id}/history     - Full message history
  DELETE /conversations/{id}             - Delete a conversation
  GET    /conversations/{id}/compression - Compression stats
  GET    /tools                          - Registered tool manifest
  GET    /health                         - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from archivist.api.compaction import HistoryCompressor
from archivist.api.llm import LLMError
from archivist.api.models import ChatResult
from archivist.api.runner import AgentRunner
from archivist.api.schemas import ChatRequest
from archivist.api.tools import ToolRegistry
from archivist.config import Settings
from archivist.storage.database import Database

logger = logging.getLogger(__name__)


def _chat_payload(result: ChatResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": result.message.to_dict(),
        "conversation_id": result.conversation_id,
        "iterations": result.iterations,
        "iterations_exhausted": result.iterations_exhausted,
        "tool_calls": [
            {
                "id": r.tool_call_id,
                "name": r.tool_name,
                "is_error": r.is_error,
                "duration_ms": r.duration_ms,
            }
            for r in result.tool_results
        ],
    }
    if result.compression is not None:
        payload["compression"] = asdict(result.compression)
    return payload


def create_app(
    runner: AgentRunner,
    registry: ToolRegistry,
    settings: Settings,
    compressor: HistoryCompressor | None = None,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            chat_request = ChatRequest.model_validate(body)
        except ValidationError as e:
            return JSONResponse(
                {"error": "Invalid request", "details": e.errors(include_url=False)},
                status_code=400,
            )

        try:
            result = await runner.chat(
                chat_request.conversation_id,
                chat_request.message,
                response_format=chat_request.response_format,
                collection_settings=chat_request.collection_settings,
                compression_settings=chat_request.compression_settings,
                temperature=chat_request.temperature,
            )
        except LLMError as e:
            logger.error("Chat error (LLM): %s", e)
            return JSONResponse({"error": str(e)}, status_code=502)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(_chat_payload(result))

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Conversation ids with message counts."""
        conversations = await runner.repository.list_conversations()
        return JSONResponse({
            "conversations": [asdict(c) for c in conversations],
            "total": len(conversations),
        })

    async def get_history(request: Request) -> JSONResponse:
        """GET /conversations/{id}/history - Full message history."""
        conversation_id = request.path_params["conversation_id"]
        history = await runner.get_history(conversation_id)
        if not history:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({
            "conversation_id": conversation_id,
            "messages": [m.to_dict() for m in history],
        })

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{id} - Delete history and settings."""
        conversation_id = request.path_params["conversation_id"]
        if not await runner.clear_conversation(conversation_id):
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "conversation_id": conversation_id})

    async def compression_stats(request: Request) -> JSONResponse:
        """GET /conversations/{id}/compression - Compression totals."""
        conversation_id = request.path_params["conversation_id"]
        stats = compressor.get_stats(conversation_id) if compressor else None
        if stats is None:
            return JSONResponse({
                "conversation_id": conversation_id,
                "total_compressions": 0,
                "total_tokens_saved": 0,
                "current_summary": None,
            })
        return JSONResponse({
            "conversation_id": conversation_id,
            "total_compressions": stats.total_compressions,
            "total_tokens_saved": stats.total_tokens_saved,
            "current_summary": stats.current_summary,
        })

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Tool manifest as advertised to the model."""
        schemas = registry.tool_schemas()
        return JSONResponse({"tools": schemas, "total": len(schemas)})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if database is None:
            return JSONResponse({"status": "healthy", "storage": settings.storage_backend})
        try:
            from sqlalchemy import text

            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "storage": settings.storage_backend})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/conversations", list_conversations),
        Route("/conversations/{conversation_id}/history", get_history),
        Route("/conversations/{conversation_id}", delete_conversation, methods=["DELETE"]),
        Route("/conversations/{conversation_id}/compression", compression_stats),
        Route("/tools", list_tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
