"""Tests for the built-in tools, run through the registry."""

import json

import httpx
import pytest

from yari.agent.tools import web_search
from yari.agent.tools.base import ToolStatus
from yari.agent.tools.final_answer import FinalAnswerTool
from yari.agent.tools.image_gen import ImageGenTool
from yari.agent.tools.planning import CreatePlanTool
from yari.agent.tools.registry import ToolRegistry
from yari.agent.tools.web_search import WebSearchTool


def mock_http(monkeypatch, handler):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        web_search.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )


@pytest.fixture
def registry(monkeypatch):
    monkeypatch.delenv("TAVILY_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    reg = ToolRegistry()
    for tool in (WebSearchTool(), ImageGenTool(), CreatePlanTool(), FinalAnswerTool()):
        reg.register(tool)
    return reg


@pytest.mark.asyncio
async def test_search_without_key_returns_note(registry):
    result = await registry.execute("web_search", {"query": "python"})
    assert result.status == ToolStatus.OK
    assert result.output["results"] == []
    assert "not configured" in result.output["note"]


@pytest.mark.asyncio
async def test_search_maps_tavily_results(monkeypatch):
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"results": [
            {"title": "Python", "url": "https://python.org", "content": "The language", "score": 0.9},
            {"title": "PyPI", "url": "https://pypi.org", "content": "Packages", "score": 0.5},
        ]})

    mock_http(monkeypatch, handler)
    tool = WebSearchTool(api_key="tvly-key", max_results=1)
    registry = ToolRegistry()
    registry.register(tool)

    result = await registry.execute("web_search", {"query": "python", "max_results": 5})

    assert result.status == ToolStatus.OK
    assert seen["max_results"] == 1
    assert result.output["results"] == [
        {"title": "Python", "url": "https://python.org", "snippet": "The language", "relevance_score": 0.9}
    ]


@pytest.mark.asyncio
async def test_search_http_failure_is_execution_error(monkeypatch):
    mock_http(monkeypatch, lambda request: httpx.Response(500, text="down"))
    registry = ToolRegistry()
    registry.register(WebSearchTool(api_key="tvly-key"))

    result = await registry.execute("web_search", {"query": "python"})

    assert result.status == ToolStatus.EXECUTION_ERROR
    assert "Search request failed" in result.error


@pytest.mark.asyncio
async def test_search_rejects_out_of_range_max_results(registry):
    result = await registry.execute("web_search", {"query": "python", "max_results": 50})
    assert result.status == ToolStatus.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_image_placeholder_without_key(registry):
    result = await registry.execute("generate_image", {"prompt": "a cat", "size": "1792x1024"})
    assert result.status == ToolStatus.OK
    assert "1792x1024" in result.output["url"]


@pytest.mark.asyncio
async def test_image_rejects_unknown_style(registry):
    result = await registry.execute("generate_image", {"prompt": "a cat", "style": "cubist"})
    assert result.status == ToolStatus.VALIDATION_ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("complexity, steps", [("simple", 3), ("moderate", 5), ("complex", 8)])
async def test_plan_size_follows_complexity(registry, complexity, steps):
    result = await registry.execute("create_plan", {"objective": "launch", "complexity": complexity})
    assert result.status == ToolStatus.OK
    assert len(result.output["steps"]) == steps
    assert result.output["steps"][1]["dependencies"] == ["Step 1"]


@pytest.mark.asyncio
async def test_final_answer_echoes_input(registry):
    result = await registry.execute("final_answer", {
        "answer": "Paris",
        "confidence": 95,
        "sources": ["atlas"],
    })
    assert result.status == ToolStatus.OK
    assert result.output == {"answer": "Paris", "sources": ["atlas"], "confidence": 95.0, "follow_up": []}


@pytest.mark.asyncio
async def test_final_answer_requires_answer(registry):
    result = await registry.execute("final_answer", {"answer": "", "confidence": 50})
    assert result.status == ToolStatus.VALIDATION_ERROR
