"""
Stop conditions for the step loop.

Each condition is a pure predicate over the step records of the current run
and the latest assistant message. A StopPolicy ORs its conditions together
and always carries a step budget, so a run can never go on forever.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from yari.agent.context import Message
from yari.agent.models import StepRecord, TerminationReason
from yari.agent.tools.base import ToolStatus


class StopCondition(ABC):
    """A single stop predicate."""

    reason: TerminationReason

    @abstractmethod
    def __call__(self, steps: Sequence[StepRecord], last_message: Message | None) -> bool:
        """True when the run should stop."""


class StepBudget(StopCondition):
    """Stop once `max_steps` steps have run."""

    reason = TerminationReason.BUDGET_EXHAUSTED

    def __init__(self, max_steps: int):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.max_steps = max_steps

    def __call__(self, steps: Sequence[StepRecord], last_message: Message | None) -> bool:
        return bool(steps) and steps[-1].step + 1 >= self.max_steps


class TerminalToolFired(StopCondition):
    """Stop when the latest step produced a successful result of `tool_name`."""

    reason = TerminationReason.TERMINAL_TOOL

    def __init__(self, tool_name: str):
        self.tool_name = tool_name

    def __call__(self, steps: Sequence[StepRecord], last_message: Message | None) -> bool:
        return self.output(steps) is not None

    def output(self, steps: Sequence[StepRecord]) -> Any:
        """Output of the first successful terminal call (call order) in the latest step."""
        if not steps:
            return None
        for result in steps[-1].tool_results:
            if result.tool_name == self.tool_name and result.status == ToolStatus.OK:
                return result.output
        return None


class StopPolicy:
    """
    OR-composition of stop conditions plus a mandatory step budget.

    Conditions are checked in the order given, the budget last, so a
    terminal tool firing on the final allowed step still reports
    `terminal_tool`.
    """

    def __init__(self, *conditions: StopCondition, max_steps: int = 10):
        self.budget = StepBudget(max_steps)
        self.conditions = [c for c in conditions if not isinstance(c, StepBudget)]
        # A caller-supplied budget tighter than max_steps wins
        for c in conditions:
            if isinstance(c, StepBudget) and c.max_steps < self.budget.max_steps:
                self.budget = c

    @classmethod
    def with_terminal_tool(cls, tool_name: str, max_steps: int = 10) -> StopPolicy:
        return cls(TerminalToolFired(tool_name), max_steps=max_steps)

    @property
    def max_steps(self) -> int:
        return self.budget.max_steps

    def evaluate(
        self, steps: Sequence[StepRecord], last_message: Message | None
    ) -> TerminationReason | None:
        """First matching reason, or None to keep going."""
        for condition in [*self.conditions, self.budget]:
            if condition(steps, last_message):
                return condition.reason
        return None

    def final_answer(self, steps: Sequence[StepRecord]) -> Any:
        for condition in self.conditions:
            if isinstance(condition, TerminalToolFired):
                output = condition.output(steps)
                if output is not None:
                    return output
        return None
