"""REST API for the Clodds agent runtime.

Endpoints:
  POST /chat                     - Send message, get response
  POST /chat/stream              - Send message, stream the reply as SSE
  DELETE /chat/{session_id}      - End conversation
  POST /subagents                - Start a background subagent
  GET  /subagents/{id}           - Subagent status
  POST /subagents/{id}/pause     - Request a cooperative pause
  POST /subagents/{id}/resume    - Resume a paused subagent
  POST /subagents/{id}/cancel    - Cancel a subagent for good
  POST /config/reload            - Hot-reload tunables
  GET  /health                   - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from clodds.agent.models import IncomingMessage
from clodds.agent.orchestrator import ConversationOrchestrator
from clodds.agent.subagents import SubagentConfig
from clodds.config import Settings
from clodds.errors import ConfigReloadNoop, SubagentAlreadyRunning, SubagentNotFound

logger = logging.getLogger(__name__)


class QueueTransport:
    """Editable transport that turns sends/edits into SSE payloads."""

    supports_edit = True

    def __init__(self) -> None:
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._next_id = 0

    async def send(self, text: str) -> int:
        self._next_id += 1
        await self.queue.put({"type": "message", "message_id": self._next_id, "text": text})
        return self._next_id

    async def edit(self, message_id: str | int, text: str) -> None:
        await self.queue.put({"type": "edit", "message_id": message_id, "text": text})


async def _read_json(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _missing_session_id() -> JSONResponse:
    return JSONResponse({"error": "Missing required field: session_id"}, status_code=400)


def create_app(
    orchestrator: ConversationOrchestrator,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _incoming(body: dict[str, Any]) -> IncomingMessage:
        return IncomingMessage(
            text=body["message"],
            participant_id=str(body.get("user_id") or ""),
            channel_key=str(body.get("channel") or "rest"),
            session_id=body.get("session_id") or str(uuid4()),
        )

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        message = _incoming(body)
        try:
            response_text = await orchestrator.handle_message(message)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"response": response_text, "session_id": message.session_id})

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        message = _incoming(body)
        transport = QueueTransport()

        async def event_generator():
            task = asyncio.create_task(orchestrator.handle_message(message, transport=transport))
            try:
                while not (task.done() and transport.queue.empty()):
                    getter = asyncio.ensure_future(transport.queue.get())
                    done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                    if getter in done:
                        yield f"data: {json.dumps(getter.result())}\n\n"
                    else:
                        getter.cancel()
                text = task.result()
                if text is not None:
                    # Rejections and cancellations come back as plain text.
                    yield f"data: {json.dumps({'type': 'message', 'text': text})}\n\n"
                done_data = json.dumps({"type": "done", "session_id": message.session_id})
                yield f"data: {done_data}\n\n"
            except Exception as e:
                logger.error("Stream error: %s", e)
                error_data = json.dumps({"type": "error", "text": str(e)})
                yield f"data: {error_data}\n\n"
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        try:
            await orchestrator.end_session(session_id)
            return JSONResponse({"status": "ended", "session_id": session_id})
        except Exception as e:
            logger.error("End chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def start_subagent(request: Request) -> JSONResponse:
        """POST /subagents - Start a background subagent."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        task = body.get("task")
        session_id = body.get("session_id")
        if not task or not session_id:
            return JSONResponse({"error": "Missing required fields: task, session_id"}, status_code=400)

        tools = body.get("tools")
        if tools is not None and not (isinstance(tools, list) and all(isinstance(t, str) for t in tools)):
            return JSONResponse({"error": "tools must be a list of strings"}, status_code=400)

        try:
            max_turns = int(body["max_turns"]) if body.get("max_turns") is not None else None
            timeout = float(body["timeout_seconds"]) if body.get("timeout_seconds") is not None else None
        except (TypeError, ValueError):
            return JSONResponse({"error": "max_turns and timeout_seconds must be numbers"}, status_code=400)

        run = orchestrator.start_subagent(SubagentConfig(
            task=task,
            parent_session_id=session_id,
            tool_allowlist=tools,
            max_turns=max_turns,
            timeout_seconds=timeout,
            model=body.get("model"),
        ))
        return JSONResponse(run.to_dict(), status_code=202)

    async def subagent_status(request: Request) -> JSONResponse:
        """GET /subagents/{id}?session_id=... - Run status, progress and result."""
        run_id = request.path_params["id"]
        session_id = request.query_params.get("session_id")
        if not session_id:
            return _missing_session_id()
        try:
            run = orchestrator.status(run_id, session_id)
        except SubagentNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse(run.to_dict())

    async def pause_subagent(request: Request) -> JSONResponse:
        """POST /subagents/{id}/pause - Request a cooperative pause."""
        run_id = request.path_params["id"]
        session_id = (await _read_json(request) or {}).get("session_id")
        if not session_id:
            return _missing_session_id()
        try:
            paused = orchestrator.pause(run_id, session_id)
        except SubagentNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        if not paused:
            return JSONResponse({"error": "Subagent is not running", "run_id": run_id}, status_code=409)
        return JSONResponse({"status": "pause_requested", "run_id": run_id})

    async def resume_subagent(request: Request) -> JSONResponse:
        """POST /subagents/{id}/resume - Resume a paused subagent."""
        run_id = request.path_params["id"]
        session_id = (await _read_json(request) or {}).get("session_id")
        if not session_id:
            return _missing_session_id()
        try:
            resumed = orchestrator.resume(run_id, session_id)
        except SubagentNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except SubagentAlreadyRunning as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if not resumed:
            return JSONResponse({"status": "finished", "run_id": run_id})
        return JSONResponse({"status": "resumed", "run_id": run_id})

    async def cancel_subagent(request: Request) -> JSONResponse:
        """POST /subagents/{id}/cancel - Cancel a run; it ends as failed."""
        run_id = request.path_params["id"]
        session_id = (await _read_json(request) or {}).get("session_id")
        if not session_id:
            return _missing_session_id()
        try:
            cancelled = orchestrator.cancel(run_id, session_id)
        except SubagentNotFound as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        if not cancelled:
            return JSONResponse({"error": "Subagent already finished", "run_id": run_id}, status_code=409)
        return JSONResponse({"status": "cancelled", "run_id": run_id})

    async def reload_config(request: Request) -> JSONResponse:
        """POST /config/reload - Hot-reload tunables."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            changed = orchestrator.reload_config(body)
        except ConfigReloadNoop:
            return JSONResponse({"changed": []})
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"changed": changed})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus a few runtime counters."""
        return JSONResponse({
            "status": "healthy",
            "agent_id": settings.agent_id,
            "subagents": len(orchestrator.scheduler.registry),
            "rate_limit_keys": len(orchestrator.rate_limiter),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/subagents", start_subagent, methods=["POST"]),
        Route("/subagents/{id}", subagent_status),
        Route("/subagents/{id}/pause", pause_subagent, methods=["POST"]),
        Route("/subagents/{id}/resume", resume_subagent, methods=["POST"]),
        Route("/subagents/{id}/cancel", cancel_subagent, methods=["POST"]),
        Route("/config/reload", reload_config, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
