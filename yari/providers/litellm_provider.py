"""LiteLLM provider implementation for multi-provider support."""

import json
import logging
import uuid
from typing import Any

import litellm
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from yari.errors import ModelCapabilityError
from yari.providers.base import LLMProvider, LLMResponse, ToolCallRequest

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, ServiceUnavailableError, Timeout)

# Only these keys are forwarded; anything else is internal bookkeeping.
_MESSAGE_KEYS = ("role", "content", "name", "tool_calls", "tool_call_id")


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Defaults to OpenRouter (`openrouter/<vendor>/<model>`), but any model
    string LiteLLM understands works. Transient errors are retried with
    exponential backoff; when a model keeps failing the configured fallbacks
    are tried in order. If every model fails, ModelCapabilityError is raised.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openrouter/openai/gpt-5",
        extra_headers: dict[str, str] | None = None,
        fallbacks: list[str] | None = None,
        max_attempts: int = 3,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.fallbacks = fallbacks or []
        self.max_attempts = max_attempts

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers (e.g., gpt-5 rejects some params)
        litellm.drop_params = True

    def _sanitize_messages(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        sanitized = []
        for msg in messages:
            new_msg = {k: v for k, v in msg.items() if k in _MESSAGE_KEYS}
            for tc in new_msg.get("tool_calls") or []:
                # Some gateways reject non-string arguments
                fn = tc.get("function", {})
                if not isinstance(fn.get("arguments"), str):
                    fn["arguments"] = json.dumps(fn.get("arguments") or {})
            sanitized.append(new_msg)
        return sanitized

    async def _execute_model_call(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        """Execute a single model call with retries for transient errors."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        if self.api_key:
            kwargs["api_key"] = self.api_key

        if self.api_base:
            kwargs["api_base"] = self.api_base

        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        @retry(
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            wait=wait_exponential(multiplier=1, min=2, max=60),
            stop=stop_after_attempt(self.max_attempts),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async def _do_call():
            return await acompletion(**kwargs)

        response = await _do_call()
        return self._parse_response(response)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM with automatic retries and fallback.

        Raises:
            ModelCapabilityError: every candidate model failed, or the request
                was rejected as invalid.
        """
        sanitized = self._sanitize_messages(messages)

        primary_model = model or self.default_model
        models_to_try = [primary_model] + [fb for fb in self.fallbacks if fb != primary_model]

        last_exception: Exception | None = None
        for attempt_model in models_to_try:
            try:
                return await self._execute_model_call(
                    model=attempt_model,
                    messages=sanitized,
                    tools=tools,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except BadRequestError as e:
                # Fail fast on invalid requests (e.g. context too long, bad tools)
                logger.error(f"Invalid request for {attempt_model}: {e}")
                raise ModelCapabilityError(f"Invalid request: {e}", model=attempt_model) from e
            except Exception as e:
                logger.warning(f"Model {attempt_model} failed: {e}. Trying next...")
                last_exception = e

        raise ModelCapabilityError(
            f"All models failed. Last error: {last_exception}", model=primary_model
        ) from last_exception

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        if getattr(message, "tool_calls", None):
            for tc in message.tool_calls:
                # Parse arguments from JSON string if needed
                args = tc.function.arguments
                if isinstance(args, str):
                    try:
                        args = json.loads(args) if args.strip() else {}
                    except json.JSONDecodeError:
                        logger.warning(f"Unparseable arguments for tool call {tc.function.name}")

                tool_calls.append(ToolCallRequest(
                    id=tc.id or f"call_{uuid.uuid4().hex[:12]}",
                    name=tc.function.name,
                    arguments=args,
                ))

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
                "total_tokens": response.usage.total_tokens or 0,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None),
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
