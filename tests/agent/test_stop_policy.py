import pytest

from yari.agent.models import StepRecord, TerminationReason
from yari.agent.stop import StepBudget, StopPolicy, TerminalToolFired
from yari.agent.tools.base import ToolResult, ToolStatus
from yari.providers.base import ToolCallRequest


def record(step, *results):
    calls = tuple(ToolCallRequest(id=r.call_id, name=r.tool_name, arguments={}) for r in results)
    return StepRecord(step=step, model="m", tool_calls=calls, tool_results=tuple(results))


def ok(name, output=None, call_id=None):
    return ToolResult(call_id=call_id or name, tool_name=name, status=ToolStatus.OK, output=output)


def failed(name):
    return ToolResult(call_id=name, tool_name=name, status=ToolStatus.VALIDATION_ERROR, error="bad")


def test_budget_requires_positive_steps():
    with pytest.raises(ValueError):
        StepBudget(0)


def test_budget_fires_on_last_step():
    budget = StepBudget(3)
    assert not budget([], None)
    assert not budget([record(0), record(1)], None)
    assert budget([record(0), record(1), record(2)], None)


def test_terminal_tool_requires_success():
    condition = TerminalToolFired("final_answer")
    assert not condition([record(0, failed("final_answer"))], None)
    assert condition([record(0, ok("final_answer", {"answer": "a"}))], None)


def test_terminal_tool_only_looks_at_latest_step():
    condition = TerminalToolFired("final_answer")
    steps = [record(0, ok("final_answer")), record(1, ok("search"))]
    assert not condition(steps, None)


def test_policy_always_has_budget():
    policy = StopPolicy()
    assert policy.max_steps == 10
    steps = [record(i) for i in range(10)]
    assert policy.evaluate(steps, None) == TerminationReason.BUDGET_EXHAUSTED


def test_tighter_caller_budget_wins():
    policy = StopPolicy(StepBudget(2), max_steps=10)
    assert policy.max_steps == 2
    assert StopPolicy(StepBudget(20), max_steps=5).max_steps == 5


def test_terminal_reason_beats_budget_on_final_step():
    policy = StopPolicy.with_terminal_tool("final_answer", max_steps=2)
    steps = [record(0), record(1, ok("final_answer", {"answer": "x"}))]
    assert policy.evaluate(steps, None) == TerminationReason.TERMINAL_TOOL


def test_no_stop_mid_run():
    policy = StopPolicy.with_terminal_tool("final_answer", max_steps=5)
    assert policy.evaluate([record(0, ok("search"))], None) is None


def test_final_answer_is_first_success_in_call_order():
    policy = StopPolicy.with_terminal_tool("final_answer")
    steps = [record(
        0,
        failed("final_answer"),
        ok("final_answer", {"answer": "first"}, call_id="a"),
        ok("final_answer", {"answer": "second"}, call_id="b"),
    )]
    assert policy.final_answer(steps) == {"answer": "first"}
