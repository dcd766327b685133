"""Tool registry for dynamic tool management."""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any

from loguru import logger
from pydantic import ValidationError

from yari.agent.tools.base import Tool, ToolResult, ToolStatus
from yari.errors import ToolExecutionError, ToolOutputError, ToolValidationError
from yari.providers.base import ToolCallRequest


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """
    Registry for agent tools.

    Tools are looked up by name. `execute` validates input, runs the tool
    under a timeout, validates output, and always returns a ToolResult:
    nothing but task cancellation escapes it.
    """

    def __init__(self, timeout: float | None = 60.0):
        self._tools: dict[str, Tool] = {}
        self.timeout = timeout

    def register(self, tool: Tool) -> None:
        """Register a tool. Names are unique within a registry."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(f"Tool registered: {tool.name}")

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        params: Any,
        call_id: str | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Execute a tool by name with given parameters.

        Args:
            name: Tool name.
            params: Raw tool input as sent by the model.
            call_id: Identifier of the originating tool call.
            timeout: Per-call deadline in seconds; defaults to the registry's.

        Returns:
            ToolResult tagged ok, validation_error, execution_error or internal_error.
        """
        call_id = call_id or f"call_{uuid.uuid4().hex[:12]}"
        started = time.monotonic()

        def _result(status: ToolStatus, output: Any = None, error: str | None = None) -> ToolResult:
            return ToolResult(
                call_id=call_id,
                tool_name=name,
                status=status,
                output=output,
                error=error,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        tool = self._tools.get(name)
        if not tool:
            available = ", ".join(self.tool_names) or "none"
            return _result(
                ToolStatus.VALIDATION_ERROR,
                error=f"Tool '{name}' not found. Available tools: {available}",
            )

        if not isinstance(params, dict):
            logger.info(f"Tool {name} got non-object input: {type(params).__name__}")
            return _result(
                ToolStatus.VALIDATION_ERROR,
                error=f"Tool input must be a JSON object, got {type(params).__name__}",
            )

        try:
            validated = tool.validate_input(params)
        except ValidationError as e:
            logger.info(f"Tool {name} rejected input: {_format_validation_error(e)}")
            return _result(ToolStatus.VALIDATION_ERROR, error=_format_validation_error(e))
        except ToolValidationError as e:
            logger.info(f"Tool {name} rejected input: {e}")
            return _result(ToolStatus.VALIDATION_ERROR, error=str(e))

        deadline = timeout if timeout is not None else self.timeout
        try:
            raw = await asyncio.wait_for(tool.run(validated), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {name} timed out after {deadline}s")
            return _result(ToolStatus.EXECUTION_ERROR, error=f"Tool '{name}' timed out after {deadline}s")
        except ToolExecutionError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return _result(ToolStatus.EXECUTION_ERROR, error=str(e))
        except Exception as e:
            logger.warning(f"Tool {name} raised {type(e).__name__}: {e}")
            return _result(ToolStatus.EXECUTION_ERROR, error=f"{type(e).__name__}: {e}")

        try:
            output = tool.validate_output(raw)
        except (ValidationError, ToolOutputError) as e:
            detail = _format_validation_error(e) if isinstance(e, ValidationError) else str(e)
            logger.error(f"Tool {name} broke its output schema: {detail}")
            return _result(ToolStatus.INTERNAL_ERROR, error=f"Tool '{name}' returned invalid output: {detail}")

        result = _result(ToolStatus.OK, output=output)
        logger.debug(f"Tool {name} ok in {result.duration_ms}ms")
        return result

    async def execute_many(
        self,
        calls: list[ToolCallRequest],
        timeout: float | None = None,
    ) -> list[ToolResult]:
        """Run sibling tool calls concurrently; results come back in call order."""
        return list(await asyncio.gather(*(
            self.execute(tc.name, tc.arguments, call_id=tc.id, timeout=timeout)
            for tc in calls
        )))

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
