"""Agent core module."""

from yari.agent.context import Conversation, Message
from yari.agent.hooks import HookManager, JsonlTranscriptSink, LoggingHookSink, StepHookSink
from yari.agent.loop import CancelToken, StepLoop
from yari.agent.models import RunResult, StepOverride, StepRecord, TerminationReason
from yari.agent.prepare import PhasedConfigurator
from yari.agent.stop import StepBudget, StopPolicy, TerminalToolFired

__all__ = [
    "CancelToken",
    "Conversation",
    "HookManager",
    "JsonlTranscriptSink",
    "LoggingHookSink",
    "Message",
    "PhasedConfigurator",
    "RunResult",
    "StepBudget",
    "StepHookSink",
    "StepLoop",
    "StepOverride",
    "StepRecord",
    "StopPolicy",
    "TerminalToolFired",
    "TerminationReason",
]
