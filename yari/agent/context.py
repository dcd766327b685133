"""Conversation and message types used by the step loop."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

from yari.agent.tools.base import ToolResult
from yari.providers.base import ToolCallRequest

Role = Literal["system", "user", "assistant", "tool"]


def _encode_arguments(arguments: Any) -> str:
    # Unparseable arguments go back to the model exactly as it sent them
    return arguments if isinstance(arguments, str) else json.dumps(arguments)


@dataclass
class Message:
    """One conversation entry: user text, assistant turn, or tool result."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None  # tool messages only
    name: str | None = None          # tool messages only
    is_error: bool = False           # tool messages only

    def to_dict(self) -> dict[str, Any]:
        """Render in the OpenAI chat format."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": _encode_arguments(tc.arguments)},
                }
                for tc in self.tool_calls
            ]
        if self.role == "tool":
            msg["tool_call_id"] = self.tool_call_id
            msg["name"] = self.name
        return msg

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Parse an OpenAI-format message dict."""
        calls = []
        for tc in data.get("tool_calls") or []:
            fn = tc.get("function", tc)
            args = fn.get("arguments") or {}
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args.strip() else {}
                except ValueError:
                    pass  # kept as sent
            calls.append(ToolCallRequest(id=tc["id"], name=fn["name"], arguments=args))
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            is_error=bool(data.get("is_error", False)),
        )

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> Message:
        return cls(
            role="tool",
            content=result.to_content(),
            tool_call_id=result.call_id,
            name=result.tool_name,
            is_error=result.is_error,
        )


class Conversation:
    """
    Ordered, append-only message history for one run.

    The system instruction is kept apart from the messages so a step can
    replace it without rewriting history.
    """

    def __init__(self, messages: list[Message] | None = None, system: str | None = None):
        self.system = system
        self._messages: list[Message] = list(messages or [])

    @classmethod
    def from_dicts(cls, messages: list[dict[str, Any]], system: str | None = None) -> Conversation:
        parsed = [Message.from_dict(m) for m in messages]
        # A leading system message becomes the instruction
        if parsed and parsed[0].role == "system" and system is None:
            system = parsed[0].content
            parsed = parsed[1:]
        return cls(parsed, system=system)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def add_user(self, content: str) -> Message:
        msg = Message(role="user", content=content)
        self._messages.append(msg)
        return msg

    def add_step(self, assistant: Message, results: list[ToolResult]) -> None:
        """
        Append one assistant turn and its tool results together.

        Results must cover every tool call of the assistant message; they are
        appended in the order of the calls, whatever order they arrived in.
        """
        by_id = {r.call_id: r for r in results}
        missing = [tc.id for tc in assistant.tool_calls if tc.id not in by_id]
        if missing:
            raise ValueError(f"Missing tool results for calls: {', '.join(missing)}")
        tool_messages = [Message.from_tool_result(by_id[tc.id]) for tc in assistant.tool_calls]
        self._messages.extend([assistant, *tool_messages])

    def pending_calls(self) -> list[ToolCallRequest]:
        """Tool calls that have no matching tool-result message."""
        answered = {m.tool_call_id for m in self._messages if m.role == "tool"}
        return [
            tc
            for m in self._messages
            if m.role == "assistant"
            for tc in m.tool_calls
            if tc.id not in answered
        ]

    def window(self, max_messages: int | None = None) -> list[Message]:
        """
        The most recent `max_messages` messages.

        The window never opens on a tool result whose assistant turn was cut
        off; it is widened back to include that assistant message.
        """
        if max_messages is None or max_messages >= len(self._messages):
            return list(self._messages)
        if max_messages <= 0:
            return []
        start = len(self._messages) - max_messages
        while start > 0 and self._messages[start].role == "tool":
            start -= 1
        return self._messages[start:]

    def to_provider_messages(
        self,
        system: str | None = None,
        max_messages: int | None = None,
    ) -> list[dict[str, Any]]:
        """Messages for a model call: system instruction first, then the window."""
        instruction = system if system is not None else self.system
        out = [{"role": "system", "content": instruction}] if instruction else []
        out.extend(m.to_dict() for m in self.window(max_messages))
        return out

    def copy(self) -> Conversation:
        return Conversation(self._messages, system=self.system)

    def to_dicts(self) -> list[dict[str, Any]]:
        out = [m.to_dict() for m in self._messages]
        for src, dst in zip(self._messages, out):
            if src.role == "tool" and src.is_error:
                dst["is_error"] = True
        return out
