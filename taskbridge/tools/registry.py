"""Registry for tool registration and audited execution."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError, create_model

from taskbridge.db import Database
from taskbridge.tools.base import Tool, ToolContext

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of the tools the agent may call."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self._tools.values()
        ]

    async def execute(self, context: ToolContext, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate `arguments`, run the tool and record the outcome.

        Raises KeyError for unknown tools, ValueError for invalid arguments and
        whatever the tool itself raises.
        """

        tool = self._tools.get(tool_name)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_name}")

        validated = _validate_json_schema(tool.parameters_schema, arguments)
        try:
            result = await tool.run(context, **validated)
        except Exception as exc:
            LOGGER.info("Tool %s failed: %s", tool_name, exc)
            self._db.log_tool_execution(context.chat_id, tool_name, validated, {"error": str(exc)}, succeeded=False)
            raise
        self._db.log_tool_execution(context.chat_id, tool_name, validated, result, succeeded=True)
        return result


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    if schema.get("additionalProperties") is False:
        unknown = sorted(set(payload) - set(props))
        if unknown:
            raise ValueError(f"Unexpected arguments: {', '.join(unknown)}")

    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
