"""LLM provider abstraction module."""

from yari.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from yari.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "ToolCallRequest"]
