"""Per-step configuration: which model, which instruction, how much history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Sequence

from yari.agent.context import Conversation
from yari.agent.models import StepOverride
from yari.providers.base import ToolCallRequest

StepConfigurator = Callable[[int, Conversation, Sequence[ToolCallRequest]], StepOverride | None]

AGENT_SYSTEM_PROMPT = """You are Yari, an agentic assistant. Current time: {now}

Agentic behavior:
- Break complex requests down into steps
- Use tools systematically to gather information
- Research thoroughly before answering
- Always finish with the '{terminal_tool}' tool once you have enough information

Available tools: {tool_names}

Instructions:
1. Analyze the user's request carefully
2. Decide which tools and information you need
3. Call tools to gather complete information
4. Synthesize the findings
5. Call '{terminal_tool}' with your answer and a confidence level"""

CONTINUE_PROMPT = (
    "Continue working on the user's request. You're on step {step}. "
    "Gather any additional information needed, then provide your final answer "
    "using the '{terminal_tool}' tool when ready."
)

WRAPUP_PROMPT = (
    "You've completed {step} steps. Focus on synthesizing your findings and "
    "providing a comprehensive final answer using the '{terminal_tool}' tool."
)


def no_override(step: int, conversation: Conversation, prior_calls: Sequence[ToolCallRequest]) -> None:
    """Configurator that leaves every step as is."""
    return None


class PhasedConfigurator:
    """
    Plan, execute, wrap up.

    Step 0 gets the full agent instruction, middle steps a short nudge, and
    from `wrapup_step` on the instruction asks for the final answer and the
    model switches to `wrapup_model`. Long histories are windowed to the
    last `keep_recent` messages once they pass `max_messages`.
    """

    def __init__(
        self,
        tool_names: Sequence[str],
        terminal_tool: str = "final_answer",
        wrapup_step: int = 7,
        wrapup_model: str | None = None,
        max_messages: int = 30,
        keep_recent: int = 20,
        clock: Callable[[], datetime] | None = None,
    ):
        if keep_recent < 1 or max_messages < 1:
            raise ValueError("max_messages and keep_recent must be >= 1")
        self.tool_names = list(tool_names)
        self.terminal_tool = terminal_tool
        self.wrapup_step = wrapup_step
        self.wrapup_model = wrapup_model
        self.max_messages = max_messages
        self.keep_recent = keep_recent
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def __call__(
        self, step: int, conversation: Conversation, prior_calls: Sequence[ToolCallRequest]
    ) -> StepOverride:
        window = self.keep_recent if len(conversation) > self.max_messages else None

        if step == 0:
            system = AGENT_SYSTEM_PROMPT.format(
                now=self._clock().isoformat(),
                terminal_tool=self.terminal_tool,
                tool_names=", ".join(self.tool_names) or "none",
            )
            return StepOverride(system=system, max_messages=window)

        if step < self.wrapup_step:
            system = CONTINUE_PROMPT.format(step=step + 1, terminal_tool=self.terminal_tool)
            return StepOverride(system=system, max_messages=window)

        system = WRAPUP_PROMPT.format(step=step + 1, terminal_tool=self.terminal_tool)
        return StepOverride(model=self.wrapup_model, system=system, max_messages=window)
