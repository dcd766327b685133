"""Base class for agent tools."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel


class ToolStatus(StrEnum):
    """Outcome tag of a single tool call."""

    OK = "ok"
    VALIDATION_ERROR = "validation_error"  # caller sent bad input
    EXECUTION_ERROR = "execution_error"    # executor raised or timed out
    INTERNAL_ERROR = "internal_error"      # executor broke its output contract
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolResult:
    """Tagged result of one tool call. Errors are data, not exceptions."""

    call_id: str
    tool_name: str
    status: ToolStatus
    output: Any = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def is_error(self) -> bool:
        return self.status != ToolStatus.OK

    @classmethod
    def cancelled(cls, call_id: str, tool_name: str) -> ToolResult:
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            status=ToolStatus.CANCELLED,
            error="Tool call cancelled before it completed",
        )

    def to_content(self) -> str:
        """Render the result as the text the model sees in the tool message."""
        if self.is_error:
            return f"Error ({self.status.value}): {self.error}"
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False, default=str)


class Tool(ABC):
    """
    Abstract base class for agent tools.

    A tool declares its name, a description for the model, and two pydantic
    models: one for validated input and one for the output contract. The
    registry validates on both sides; `run` only ever sees a valid input
    instance and may return either an output model instance or plain data
    that validates against it.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]
    output_model: ClassVar[type[BaseModel]]

    @abstractmethod
    async def run(self, params: Any) -> Any:
        """Execute the tool with validated input."""

    def validate_input(self, raw: dict[str, Any]) -> Any:
        """Raise pydantic.ValidationError when `raw` does not fit the input schema."""
        return self.input_model.model_validate(raw)

    def validate_output(self, raw: Any) -> Any:
        """Return JSON-ready output; raise when it breaks the output schema."""
        if isinstance(raw, self.output_model):
            return raw.model_dump(mode="json")
        if isinstance(raw, BaseModel):
            raw = raw.model_dump(mode="json")
        return self.output_model.model_validate(raw).model_dump(mode="json")

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the tool input."""
        return self.input_model.model_json_schema()

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
