"""
Step lifecycle hooks.

The step loop reports to a StepHookSink at fixed points:
on_step_start before each model call, on_step_finish once a step's tool
results are all in, and on_loop_finish exactly once when the run ends.
Hooks observe; they never steer the loop, and a failing hook is logged
and skipped.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

if TYPE_CHECKING:
    from yari.agent.models import RunResult, StepRecord


class HookEvent(StrEnum):
    """Lifecycle events emitted by the step loop."""

    STEP_START = "on_step_start"      # before the model call of a step
    STEP_FINISH = "on_step_finish"    # after all tool results of a step
    LOOP_FINISH = "on_loop_finish"    # once, on every exit path


HookHandler = Callable[..., Awaitable[Any]]


class StepHookSink:
    """Observer interface. Subclass and override the events you need."""

    async def on_step_start(self, step: int) -> None:
        pass

    async def on_step_finish(self, record: StepRecord) -> None:
        pass

    async def on_loop_finish(self, result: RunResult) -> None:
        pass


class HookManager(StepHookSink):
    """
    Fan-out sink: forwards every event to its sinks and loose handlers.

    Usage:
        hooks = HookManager(LoggingHookSink())
        hooks.on(HookEvent.STEP_FINISH, my_handler)  # handler(record=...)
    """

    def __init__(self, *sinks: StepHookSink):
        self._sinks: list[StepHookSink] = list(sinks)
        self._listeners: dict[str, list[HookHandler]] = {event.value: [] for event in HookEvent}
        self._stats: dict[str, int] = {}

    def add_sink(self, sink: StepHookSink) -> None:
        self._sinks.append(sink)

    def on(self, event: HookEvent | str, handler: HookHandler) -> None:
        """Register an async handler for one event."""
        event_name = event.value if isinstance(event, HookEvent) else event
        if event_name not in self._listeners:
            raise ValueError(f"Unknown hook event: {event_name}")
        self._listeners[event_name].append(handler)
        logger.debug(f"Hook registered: {event_name} -> {getattr(handler, '__name__', handler)}")

    def off(self, event: HookEvent | str, handler: HookHandler) -> bool:
        """Unregister a handler. True if it was registered."""
        event_name = event.value if isinstance(event, HookEvent) else event
        listeners = self._listeners.get(event_name, [])
        if handler in listeners:
            listeners.remove(handler)
            return True
        return False

    async def emit(self, event: HookEvent, **kwargs: Any) -> None:
        """Call sinks, then handlers, in registration order."""
        self._stats[event.value] = self._stats.get(event.value, 0) + 1
        targets: list[tuple[str, HookHandler]] = [
            (type(sink).__name__, getattr(sink, event.value)) for sink in self._sinks
        ]
        targets += [(getattr(h, "__name__", repr(h)), h) for h in self._listeners[event.value]]
        for label, handler in targets:
            try:
                await handler(**kwargs)
            except Exception as e:
                logger.error(f"Hook '{label}' for '{event.value}' failed: {e}")

    async def on_step_start(self, step: int) -> None:
        await self.emit(HookEvent.STEP_START, step=step)

    async def on_step_finish(self, record: StepRecord) -> None:
        await self.emit(HookEvent.STEP_FINISH, record=record)

    async def on_loop_finish(self, result: RunResult) -> None:
        await self.emit(HookEvent.LOOP_FINISH, result=result)

    def handler_count(self, event: HookEvent | str | None = None) -> int:
        if event:
            event_name = event.value if isinstance(event, HookEvent) else event
            return len(self._listeners.get(event_name, [])) + len(self._sinks)
        return sum(len(h) for h in self._listeners.values()) + len(self._sinks)

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)


class LoggingHookSink(StepHookSink):
    """Logs step progress through loguru."""

    async def on_step_start(self, step: int) -> None:
        logger.info(f"Starting agentic step {step + 1}")

    async def on_step_finish(self, record: StepRecord) -> None:
        logger.info(
            f"Completed step {record.step + 1}: "
            f"tools={[tc.name for tc in record.tool_calls]} "
            f"results={len(record.tool_results)} tokens={record.usage.total_tokens}"
        )

    async def on_loop_finish(self, result: RunResult) -> None:
        logger.info(
            f"Run finished: reason={result.reason.value} steps={len(result.steps)} "
            f"tokens={result.usage.total_tokens} tools={result.tools_used}"
        )


class JsonlTranscriptSink(StepHookSink):
    """Append-only JSONL transcript: one line per step plus a final summary line."""

    def __init__(self, path: Path | str, run_id: str | None = None, metadata: dict[str, Any] | None = None):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.run_id = run_id
        self.metadata = metadata or {}

    def _write(self, event: str, data: dict[str, Any]) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": self.run_id,
            "event": event,
            "data": data,
        }
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    async def on_step_finish(self, record: StepRecord) -> None:
        self._write("step", record.to_dict())

    async def on_loop_finish(self, result: RunResult) -> None:
        self._write("finish", {
            **self.metadata,
            "reason": result.reason.value,
            "error": result.error,
            "steps": len(result.steps),
            "tools_used": result.tools_used,
            "total_tokens": result.usage.total_tokens,
            "final_answer": result.final_answer,
            "messages": result.conversation.to_dicts(),
        })
