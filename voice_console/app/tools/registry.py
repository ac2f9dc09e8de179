"""Tool registry mapping names to pydantic argument models and handlers."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from shared.errors import ToolError

ToolHandler = Callable[[Any], Awaitable[dict[str, Any]]]
_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler

    def descriptor(self) -> dict[str, Any]:
        """Returns the function descriptor advertised in session config."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
        }


class ToolRegistry:
    """Validates tool arguments and dispatches to registered handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def register(
        self,
        name: str,
        description: str,
        args_model: type[BaseModel],
        handler: ToolHandler,
    ) -> None:
        """Adds a tool.

        Args:
            name: Tool name the model calls.
            description: Natural-language description for the model.
            args_model: Pydantic model that validates call arguments.
            handler: Coroutine receiving the validated model instance.

        Raises:
            ValueError: If a tool with the same name already exists.
        """
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = ToolDefinition(name, description, args_model, handler)
        _LOGGER.debug("Tool registered.", extra={"tool_name": name})

    def descriptors(self) -> list[dict[str, Any]]:
        return [definition.descriptor() for definition in self._tools.values()]

    async def invoke(self, name: str, arguments_raw: str) -> dict[str, Any]:
        """Parses, validates, and executes one tool call.

        Args:
            name: Tool name requested by the model.
            arguments_raw: JSON-encoded argument object.

        Raises:
            ToolError: If the tool is unknown, arguments are invalid, or the
                handler fails.

        Returns:
            Handler result payload.
        """
        definition = self._tools.get(name)
        if definition is None:
            raise ToolError(f"Unknown tool: {name}", tool_name=name)
        try:
            payload = json.loads(arguments_raw or "{}")
        except json.JSONDecodeError as exc:
            raise ToolError(f"Invalid JSON arguments for {name}: {exc.msg}", tool_name=name) from exc
        try:
            arguments = definition.args_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolError(
                f"Invalid arguments for {name}: {exc.error_count()} validation error(s)",
                tool_name=name,
            ) from exc

        started = time.monotonic()
        _LOGGER.debug("Tool call started.", extra={"tool_name": name})
        try:
            result = await definition.handler(arguments)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolError(str(exc) or exc.__class__.__name__, tool_name=name) from exc
        _LOGGER.debug(
            "Tool call completed.",
            extra={"tool_name": name, "latency_ms": int((time.monotonic() - started) * 1000)},
        )
        return result
