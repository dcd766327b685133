"""Step and run records produced by the step loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from yari.agent.context import Conversation
from yari.agent.tools.base import ToolResult
from yari.providers.base import ToolCallRequest


class TerminationReason(StrEnum):
    """Why a run ended."""

    TERMINAL_TOOL = "terminal_tool"
    BUDGET_EXHAUSTED = "budget_exhausted"
    COMPLETED = "completed"  # model answered in plain text, no tool calls
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class Usage:
    """Token accounting for one model call or a whole run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, int] | None) -> Usage:
        data = data or {}
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt, completion, total)

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class StepOverride:
    """Per-step changes returned by a step configurator."""

    model: str | None = None
    system: str | None = None
    max_messages: int | None = None  # window applied to this model call only


@dataclass(frozen=True)
class StepRecord:
    """What happened in one step. Immutable once created."""

    step: int
    model: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    usage: Usage = field(default_factory=Usage)
    override: StepOverride | None = None
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "model": self.model,
            "text": self.text,
            "tool_calls": [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments} for tc in self.tool_calls
            ],
            "tool_results": [
                {
                    "call_id": r.call_id,
                    "tool_name": r.tool_name,
                    "status": r.status.value,
                    "output": r.output,
                    "error": r.error,
                    "duration_ms": r.duration_ms,
                }
                for r in self.tool_results
            ],
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
        }


@dataclass
class RunResult:
    """Final state handed back to the caller of StepLoop.run."""

    conversation: Conversation
    reason: TerminationReason
    steps: list[StepRecord] = field(default_factory=list)
    error: str | None = None
    final_answer: Any = None

    @property
    def usage(self) -> Usage:
        total = Usage()
        for record in self.steps:
            total = total + record.usage
        return total

    @property
    def tools_used(self) -> list[str]:
        seen: dict[str, None] = {}
        for record in self.steps:
            for tc in record.tool_calls:
                seen.setdefault(tc.name, None)
        return list(seen)

    @property
    def text(self) -> str:
        """Best human-readable answer: terminal tool output, else last assistant text."""
        if isinstance(self.final_answer, dict) and self.final_answer.get("answer"):
            return str(self.final_answer["answer"])
        for msg in reversed(self.conversation.messages):
            if msg.role == "assistant" and msg.content:
                return msg.content
        return ""
