"""Agent step loop: the bounded request / act / observe cycle."""

from __future__ import annotations

import asyncio
from typing import Sequence

from loguru import logger

from yari.agent.context import Conversation, Message
from yari.agent.hooks import HookManager, StepHookSink
from yari.agent.models import RunResult, StepOverride, StepRecord, TerminationReason, Usage
from yari.agent.prepare import StepConfigurator, no_override
from yari.agent.stop import StopPolicy
from yari.agent.tools.base import ToolResult, ToolStatus
from yari.agent.tools.registry import ToolRegistry
from yari.errors import ModelCapabilityError
from yari.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a running loop."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class StepLoop:
    """
    The step loop drives one run.

    For each step it:
    1. Applies the step configurator (model, instruction, history window)
    2. Calls the model with the tool catalog
    3. Executes requested tool calls concurrently through the registry
    4. Appends the assistant turn and all tool results, in call order
    5. Asks the stop policy whether to finish

    Steps are strictly sequential. Tool failures become error results the
    model sees on the next step; only a model failure or cancellation ends a
    run early, and even then the accumulated conversation is returned.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        model_timeout: float | None = 120.0,
        tool_timeout: float | None = None,
    ):
        self.provider = provider
        self.model = model or provider.get_default_model()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.model_timeout = model_timeout
        self.tool_timeout = tool_timeout

    async def run(
        self,
        conversation: Conversation,
        registry: ToolRegistry,
        stop_policy: StopPolicy | None = None,
        configurator: StepConfigurator | None = None,
        hooks: StepHookSink | None = None,
        cancel: CancelToken | None = None,
    ) -> RunResult:
        """
        Run the loop until a stop condition fires.

        Args:
            conversation: Starting history; left untouched, the run works on a copy.
            registry: Tools the model may call.
            stop_policy: Stop conditions; defaults to a 10-step budget.
            configurator: `(step, conversation, prior_calls) -> StepOverride | None`.
            hooks: Lifecycle observer.
            cancel: Cooperative cancellation token.

        Returns:
            RunResult with the full conversation and the termination reason.
        """
        if not len(conversation) and not conversation.system:
            raise ValueError("Conversation must have messages or a system instruction")

        conversation = conversation.copy()
        stop_policy = stop_policy or StopPolicy()
        configurator = configurator or no_override
        hooks = hooks if isinstance(hooks, HookManager) else HookManager(*([hooks] if hooks else []))
        cancel = cancel or CancelToken()

        steps: list[StepRecord] = []
        prior_calls: tuple[ToolCallRequest, ...] = ()
        reason: TerminationReason | None = None
        error: str | None = None

        logger.info(f"Run starting: {len(conversation)} messages, budget={stop_policy.max_steps}")
        try:
            for step in range(stop_policy.max_steps):
                if cancel.cancelled:
                    logger.info(f"Run cancelled before step {step}: {cancel.reason or 'no reason'}")
                    reason = TerminationReason.CANCELLED
                    break

                try:
                    override = configurator(step, conversation, prior_calls) or StepOverride()
                    messages = conversation.to_provider_messages(
                        system=override.system, max_messages=override.max_messages
                    )
                except Exception as e:
                    logger.error(f"Step configurator failed at step {step}: {e}")
                    reason, error = TerminationReason.ERROR, f"Step configurator failed: {e}"
                    break
                model = override.model or self.model
                if not messages:
                    logger.error(f"Step {step} has nothing to send to the model")
                    reason, error = TerminationReason.ERROR, "Empty model input after windowing"
                    break

                await hooks.on_step_start(step)
                try:
                    response = await self._call_model(messages, registry, model)
                except ModelCapabilityError as e:
                    logger.error(f"Model call failed at step {step}: {e}")
                    reason, error = TerminationReason.ERROR, str(e)
                    break

                calls = self._normalize_calls(response.tool_calls, step)
                results = await self._dispatch(calls, registry, cancel) if calls else []

                assistant = Message(role="assistant", content=response.content, tool_calls=list(calls))
                conversation.add_step(assistant, results)

                record = StepRecord(
                    step=step,
                    model=model,
                    tool_calls=tuple(calls),
                    tool_results=tuple(results),
                    usage=Usage.from_dict(response.usage),
                    override=override,
                    text=response.content,
                )
                steps.append(record)
                prior_calls = record.tool_calls
                await hooks.on_step_finish(record)

                if cancel.cancelled:
                    reason = TerminationReason.CANCELLED
                    break

                reason = stop_policy.evaluate(steps, assistant)
                if reason:
                    break
                if not calls:
                    reason = TerminationReason.COMPLETED
                    break
            else:
                reason = TerminationReason.BUDGET_EXHAUSTED
        except asyncio.CancelledError:
            # Hard cancellation: the in-flight step is dropped whole, observers
            # still see the partial run, and the cancellation propagates.
            result = self._finish(conversation, TerminationReason.CANCELLED, steps, stop_policy, None)
            await hooks.on_loop_finish(result)
            raise

        result = self._finish(conversation, reason, steps, stop_policy, error)
        await hooks.on_loop_finish(result)
        return result

    def _finish(
        self,
        conversation: Conversation,
        reason: TerminationReason,
        steps: list[StepRecord],
        stop_policy: StopPolicy,
        error: str | None,
    ) -> RunResult:
        final_answer = stop_policy.final_answer(steps) if reason == TerminationReason.TERMINAL_TOOL else None
        logger.info(f"Run finished after {len(steps)} steps: {reason.value}")
        return RunResult(
            conversation=conversation,
            reason=reason,
            steps=steps,
            error=error,
            final_answer=final_answer,
        )

    async def _call_model(self, messages: list[dict], registry: ToolRegistry, model: str) -> LLMResponse:
        try:
            return await asyncio.wait_for(
                self.provider.chat(
                    messages=messages,
                    tools=registry.get_definitions() or None,
                    model=model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.model_timeout,
            )
        except ModelCapabilityError:
            raise
        except asyncio.TimeoutError as e:
            raise ModelCapabilityError(f"Model call timed out after {self.model_timeout}s", model=model) from e
        except Exception as e:
            raise ModelCapabilityError(f"Model call failed: {e}", model=model) from e

    @staticmethod
    def _normalize_calls(calls: Sequence[ToolCallRequest], step: int) -> list[ToolCallRequest]:
        """Give every call an id that is unique within the step."""
        seen: set[str] = set()
        out = []
        for i, tc in enumerate(calls):
            call_id = tc.id
            if not call_id or call_id in seen:
                call_id = f"call_{step}_{i}"
            seen.add(call_id)
            out.append(ToolCallRequest(id=call_id, name=tc.name, arguments=_copy_arguments(tc.arguments)))
        return out

    async def _dispatch(
        self,
        calls: list[ToolCallRequest],
        registry: ToolRegistry,
        cancel: CancelToken,
    ) -> list[ToolResult]:
        """
        Execute sibling calls concurrently and collect one result per call.

        If the cancel token fires first, unfinished calls are cancelled and
        recorded as such, so no call is left without a result.
        """
        if cancel.cancelled:
            return [ToolResult.cancelled(tc.id, tc.name) for tc in calls]

        tasks = [
            asyncio.create_task(registry.execute(tc.name, tc.arguments, call_id=tc.id, timeout=self.tool_timeout))
            for tc in calls
        ]
        waiter = asyncio.create_task(cancel.wait())
        pending = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if waiter in done:
                    break
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            waiter.cancel()

        if pending:
            logger.info(f"Cancelling {len(pending)} in-flight tool calls")
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)

        results = []
        for tc, task in zip(calls, tasks):
            if task.cancelled():
                results.append(ToolResult.cancelled(tc.id, tc.name))
            elif task.exception() is not None:
                logger.error(f"Tool {tc.name} escaped the registry: {task.exception()}")
                results.append(ToolResult(
                    call_id=tc.id,
                    tool_name=tc.name,
                    status=ToolStatus.INTERNAL_ERROR,
                    error=str(task.exception()),
                ))
            else:
                results.append(task.result())
        return results


def _copy_arguments(arguments):
    if arguments is None:
        return {}
    return dict(arguments) if isinstance(arguments, dict) else arguments
