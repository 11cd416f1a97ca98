"""Tool dispatcher -- one uniform interface over every capability.

Capabilities are black boxes: a name, a description, a parameter schema
and an async handler. The dispatcher validates parameters, invokes the
handler and converts whatever happens into a ToolResult. It never raises
for a capability failure; the model sees an error result instead.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from clodds.agent.models import ToolRequest, ToolResult
from clodds.agent.protocols import CapabilityBackend
from clodds.errors import ToolExecutionError

logger = logging.getLogger(__name__)

CapabilityHandler = Callable[..., Awaitable[Any]]


@dataclass
class ToolContext:
    """Who is calling. Passed to handlers that declare a `context` parameter."""

    session_id: str
    participant_id: str = ""
    channel_key: str = ""
    run_id: str | None = None  # set when called from a subagent run


@dataclass
class Capability:
    name: str
    description: str
    handler: CapabilityHandler
    params_model: type[BaseModel] | None = None
    input_schema: dict[str, Any] | None = None
    spawns_subagents: bool = False

    def schema(self) -> dict[str, Any]:
        if self.params_model is not None:
            return self.params_model.model_json_schema()
        return self.input_schema or {"type": "object", "properties": {}}

    def definition(self) -> dict[str, Any]:
        """Anthropic API tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.schema(),
        }

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        """Validated parameters, or ToolExecutionError."""
        if self.params_model is not None:
            try:
                model = self.params_model.model_validate(params)
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
                    for err in e.errors()
                )
                raise ToolExecutionError(self.name, f"invalid parameters ({problems})") from e
            return model.model_dump(exclude_unset=True)

        if not isinstance(params, dict):
            raise ToolExecutionError(self.name, "parameters must be an object")
        required = (self.input_schema or {}).get("required", [])
        missing = [key for key in required if key not in params]
        if missing:
            raise ToolExecutionError(self.name, f"missing required parameters: {', '.join(missing)}")
        return params


class ToolDispatcher:
    """Registers capabilities and dispatches tool requests from the model."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, capability: Capability) -> None:
        if capability.name in self._capabilities:
            logger.warning("Replacing capability %s", capability.name)
        self._capabilities[capability.name] = capability

    def register_backend(
        self,
        backend: CapabilityBackend,
        definitions: Iterable[dict[str, Any]],
    ) -> list[str]:
        """Route each definition through backend.invoke(name, params)."""
        names = []
        for definition in definitions:
            name = definition["name"]

            async def _handler(_name: str = name, **params: Any) -> Any:
                return await backend.invoke(_name, params)

            self.register(
                Capability(
                    name=name,
                    description=definition.get("description", ""),
                    handler=_handler,
                    input_schema=definition.get("input_schema")
                    or {"type": "object", "properties": {}},
                )
            )
            names.append(name)
        logger.info("Registered %d backend capabilities", len(names))
        return names

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def catalog(
        self,
        allowlist: Iterable[str] | None = None,
        exclude_spawning: bool = False,
    ) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format, optionally filtered."""
        allowed = set(allowlist) if allowlist is not None else None
        return [
            cap.definition()
            for cap in self._capabilities.values()
            if (allowed is None or cap.name in allowed)
            and not (exclude_spawning and cap.spawns_subagents)
        ]

    async def dispatch(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        """Run one tool request. Every failure becomes an error ToolResult."""
        start = time.monotonic()
        capability = self._capabilities.get(request.name)
        if capability is None:
            return ToolResult(
                call_id=request.call_id,
                payload=f"Unknown tool: {request.name}",
                is_error=True,
                tool_name=request.name,
                duration_ms=0,
            )

        try:
            params = capability.validate(request.parameters)
            result = await _invoke(capability.handler, params, context)
            payload, is_error = _serialize(result)
        except ToolExecutionError as e:
            logger.warning("Tool %s rejected: %s", request.name, e)
            payload, is_error = f"Tool error: {e}", True
        except Exception as e:
            logger.exception("Tool dispatch error for %s", request.name)
            payload, is_error = f"Tool error: {request.name}: {e}", True

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            "Tool %s finished in %d ms (error=%s)", request.name, duration_ms, is_error,
        )
        return ToolResult(
            call_id=request.call_id,
            payload=payload,
            is_error=is_error,
            tool_name=request.name,
            duration_ms=duration_ms,
        )


async def _invoke(handler: CapabilityHandler, params: dict[str, Any], context: ToolContext) -> Any:
    if _accepts_context(handler):
        return await handler(context=context, **params)
    return await handler(**params)


def _accepts_context(handler: CapabilityHandler) -> bool:
    try:
        return "context" in inspect.signature(handler).parameters
    except (TypeError, ValueError):
        return False


def _serialize(result: Any) -> tuple[str, bool]:
    """(payload text, is_error) for whatever a handler returned."""
    if isinstance(result, str):
        return result, False
    if isinstance(result, dict) and set(result) == {"error"}:
        return str(result["error"]), True
    if isinstance(result, BaseModel):
        return result.model_dump_json(), False
    try:
        return json.dumps(result, default=str), False
    except (TypeError, ValueError):
        return str(result), False
