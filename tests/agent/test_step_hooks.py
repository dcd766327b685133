"""Tests for the hook fan-out and the JSONL transcript sink."""

import json
from unittest.mock import AsyncMock

import pytest

from yari.agent.context import Conversation
from yari.agent.hooks import HookEvent, HookManager, JsonlTranscriptSink, StepHookSink
from yari.agent.models import RunResult, StepRecord, TerminationReason, Usage
from yari.agent.tools.base import ToolResult, ToolStatus
from yari.providers.base import ToolCallRequest


def make_record():
    return StepRecord(
        step=0,
        model="m",
        tool_calls=(ToolCallRequest(id="c1", name="final_answer", arguments={"answer": "a"}),),
        tool_results=(ToolResult(call_id="c1", tool_name="final_answer", status=ToolStatus.OK,
                                 output={"answer": "a"}),),
        usage=Usage(10, 5, 15),
    )


@pytest.mark.asyncio
async def test_manager_fans_out_to_sinks_and_handlers():
    sink = StepHookSink()
    sink.on_step_start = AsyncMock()
    handler = AsyncMock()
    handler.__name__ = "handler"

    hooks = HookManager(sink)
    hooks.on(HookEvent.STEP_START, handler)
    await hooks.on_step_start(3)

    sink.on_step_start.assert_awaited_once_with(step=3)
    handler.assert_awaited_once_with(step=3)
    assert hooks.get_stats() == {"on_step_start": 1}


@pytest.mark.asyncio
async def test_failing_handler_is_logged_and_skipped():
    async def boom(**kwargs):
        raise RuntimeError("nope")

    after = AsyncMock()
    after.__name__ = "after"
    hooks = HookManager()
    hooks.on(HookEvent.STEP_FINISH, boom)
    hooks.on(HookEvent.STEP_FINISH, after)

    await hooks.on_step_finish(make_record())

    after.assert_awaited_once()


def test_on_rejects_unknown_event():
    with pytest.raises(ValueError):
        HookManager().on("on_nothing", AsyncMock())


def test_off_removes_handler():
    hooks = HookManager()
    handler = AsyncMock()
    hooks.on(HookEvent.LOOP_FINISH, handler)
    assert hooks.off(HookEvent.LOOP_FINISH, handler)
    assert not hooks.off(HookEvent.LOOP_FINISH, handler)


@pytest.mark.asyncio
async def test_transcript_sink_writes_steps_and_summary(tmp_path):
    path = tmp_path / "runs" / "run.jsonl"
    sink = JsonlTranscriptSink(path, run_id="r1", metadata={"prompt": "hi"})
    record = make_record()
    conv = Conversation()
    conv.add_user("hi")

    await sink.on_step_finish(record)
    await sink.on_loop_finish(RunResult(
        conversation=conv,
        reason=TerminationReason.TERMINAL_TOOL,
        steps=[record],
        final_answer={"answer": "a"},
    ))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["event"] for line in lines] == ["step", "finish"]
    assert lines[0]["data"]["tool_results"][0]["status"] == "ok"
    summary = lines[1]["data"]
    assert summary["reason"] == "terminal_tool"
    assert summary["total_tokens"] == 15
    assert summary["prompt"] == "hi"
    assert summary["messages"] == [{"role": "user", "content": "hi"}]
