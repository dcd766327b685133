"""Tests for the LiteLLM provider: response parsing and model fallback."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from litellm.exceptions import BadRequestError

from yari.errors import ModelCapabilityError
from yari.providers import litellm_provider
from yari.providers.litellm_provider import LiteLLMProvider


def completion(content=None, tool_calls=None, finish_reason="stop", usage=(12, 3, 15)):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1], total_tokens=usage[2]),
    )


def function_call(name, arguments, call_id="tc1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def test_parse_text_response():
    provider = LiteLLMProvider()

    response = provider._parse_response(completion(content="hello"))

    assert response.content == "hello"
    assert not response.has_tool_calls
    assert response.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}


def test_parse_tool_call_arguments():
    provider = LiteLLMProvider()
    calls = [
        function_call("search", '{"query": "x"}', "a"),
        function_call("plan", "", "b"),
        function_call("odd", "not json", "c"),
        function_call("list", "[1, 2]", None),
    ]

    response = provider._parse_response(completion(tool_calls=calls, finish_reason="tool_calls"))

    assert [tc.arguments for tc in response.tool_calls] == [
        {"query": "x"},
        {},
        "not json",
        [1, 2],
    ]
    assert response.tool_calls[3].id.startswith("call_")
    assert response.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_chat_forwards_only_known_message_keys(monkeypatch):
    fake = AsyncMock(return_value=completion(content="ok"))
    monkeypatch.setattr(litellm_provider, "acompletion", fake)
    provider = LiteLLMProvider(api_key="k", api_base="https://gateway", default_model="m1")

    await provider.chat(
        [
            {"role": "user", "content": "hi", "is_error": False},
            {"role": "assistant", "content": None, "tool_calls": [
                {"id": "a", "type": "function", "function": {"name": "t", "arguments": {"x": 1}}},
            ]},
        ],
        tools=[{"type": "function", "function": {"name": "t"}}],
    )

    kwargs = fake.await_args.kwargs
    assert kwargs["model"] == "m1"
    assert kwargs["api_key"] == "k"
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["messages"][0] == {"role": "user", "content": "hi"}
    assert kwargs["messages"][1]["tool_calls"][0]["function"]["arguments"] == '{"x": 1}'


@pytest.mark.asyncio
async def test_chat_falls_back_to_next_model(monkeypatch):
    async def fake(**kwargs):
        if kwargs["model"] == "primary":
            raise RuntimeError("primary down")
        return completion(content=f"from {kwargs['model']}")

    monkeypatch.setattr(litellm_provider, "acompletion", fake)
    provider = LiteLLMProvider(default_model="primary", fallbacks=["backup"], max_attempts=1)

    response = await provider.chat([{"role": "user", "content": "hi"}])

    assert response.content == "from backup"


@pytest.mark.asyncio
async def test_chat_raises_when_every_model_fails(monkeypatch):
    monkeypatch.setattr(litellm_provider, "acompletion", AsyncMock(side_effect=RuntimeError("down")))
    provider = LiteLLMProvider(default_model="primary", fallbacks=["backup"], max_attempts=1)

    with pytest.raises(ModelCapabilityError, match="All models failed"):
        await provider.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_bad_request_does_not_fall_back(monkeypatch):
    fake = AsyncMock(side_effect=BadRequestError(message="context too long", model="primary", llm_provider="openai"))
    monkeypatch.setattr(litellm_provider, "acompletion", fake)
    provider = LiteLLMProvider(default_model="primary", fallbacks=["backup"], max_attempts=1)

    with pytest.raises(ModelCapabilityError, match="Invalid request"):
        await provider.chat([{"role": "user", "content": "hi"}])

    assert fake.await_count == 1
