"""Registry tools that proxy to a tool server through the session broker."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from yari.agent.tools.base import Tool
from yari.errors import ToolExecutionError, ToolValidationError
from yari.mcp.errors import BrokerError
from yari.mcp.models import ToolDescriptor

if TYPE_CHECKING:
    from yari.agent.tools.registry import ToolRegistry
    from yari.mcp.broker import ExternalSessionBroker

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
    "null": (type(None),),
}


def _matches_type(value: Any, json_type: str) -> bool:
    expected = _JSON_TYPES.get(json_type)
    if expected is None:
        return True
    # bool is an int subclass; JSON keeps them apart
    if isinstance(value, bool) and json_type in ("integer", "number"):
        return False
    return isinstance(value, expected)


def check_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> list[str]:
    """Structural check of arguments against a JSON schema: required keys and top-level types."""
    problems = []
    properties = schema.get("properties") or {}
    for key in schema.get("required") or []:
        if key not in arguments:
            problems.append(f"{key}: field required")
    for key, value in arguments.items():
        declared = (properties.get(key) or {}).get("type")
        if declared is None:
            continue
        types = declared if isinstance(declared, list) else [declared]
        if not any(_matches_type(value, t) for t in types):
            problems.append(f"{key}: expected {' or '.join(types)}, got {type(value).__name__}")
    return problems


def external_tool_name(tool_name: str, prefix: str | None = None) -> str:
    """Function-calling-safe name, `<prefix>__<tool>` when prefixed."""
    raw = f"{prefix}__{tool_name}" if prefix else tool_name
    return re.sub(r"[^a-zA-Z0-9_-]", "_", raw)[:64]


class ExternalToolInput(BaseModel):
    model_config = ConfigDict(extra="allow")


class ExternalToolOutput(BaseModel):
    content: list[dict[str, Any]] = Field(default_factory=list)
    structured_content: dict[str, Any] | None = None


class ExternalTool(Tool):
    """One tool of a connected tool-server session, exposed to the model."""

    input_model = ExternalToolInput
    output_model = ExternalToolOutput

    def __init__(
        self,
        broker: ExternalSessionBroker,
        session_id: str,
        descriptor: ToolDescriptor,
        prefix: str | None = None,
        user_id: str | None = None,
    ):
        self.broker = broker
        self.session_id = session_id
        self.descriptor = descriptor
        self.user_id = user_id
        self.name = external_tool_name(descriptor.name, prefix)
        self.description = descriptor.description or f"Tool '{descriptor.name}' from an external server"

    @property
    def parameters(self) -> dict[str, Any]:
        return self.descriptor.input_schema

    def validate_input(self, raw: dict[str, Any]) -> dict[str, Any]:
        problems = check_arguments(self.descriptor.input_schema, raw)
        if problems:
            raise ToolValidationError("; ".join(problems))
        return dict(raw)

    async def run(self, params: dict[str, Any]) -> ExternalToolOutput:
        try:
            result = await self.broker.call_tool(
                self.session_id, self.descriptor.name, params, user_id=self.user_id
            )
        except BrokerError as e:
            raise ToolExecutionError(f"{type(e).__name__}: {e}") from e

        content = result.get("content") or []
        if result.get("isError"):
            text = "\n".join(p.get("text", "") for p in content if p.get("type") == "text").strip()
            raise ToolExecutionError(text or f"Tool '{self.descriptor.name}' reported an error")
        return ExternalToolOutput(content=content, structured_content=result.get("structuredContent"))


async def register_session_tools(
    registry: ToolRegistry,
    broker: ExternalSessionBroker,
    session_id: str,
    prefix: str | None = None,
    user_id: str | None = None,
) -> list[str]:
    """List a session's tools and register a proxy for each. Returns the registered names."""
    names = []
    for descriptor in await broker.list_tools(session_id):
        tool = ExternalTool(broker, session_id, descriptor, prefix=prefix, user_id=user_id)
        if registry.has(tool.name):
            logger.warning(f"Skipping external tool {tool.name}: name already registered")
            continue
        registry.register(tool)
        names.append(tool.name)
    logger.info(f"Registered {len(names)} tools from session {session_id}")
    return names
