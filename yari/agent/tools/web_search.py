"""Web search tool backed by the Tavily search API."""

import os

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from yari.agent.tools.base import Tool
from yari.errors import ToolExecutionError

TAVILY_ENDPOINT = "https://api.tavily.com/search"


class WebSearchInput(BaseModel):
    query: str = Field(..., min_length=1, description="Search query to find relevant information")
    max_results: int = Field(5, ge=1, le=10, description="Maximum number of results to return")


class SearchHit(BaseModel):
    title: str
    url: str
    snippet: str
    relevance_score: float | None = None


class WebSearchOutput(BaseModel):
    query: str
    results: list[SearchHit] = Field(default_factory=list)
    note: str | None = None


class WebSearchTool(Tool):
    """Search the web for current information."""

    name = "web_search"
    description = "Search the web for current information and research. Returns titles, URLs, and snippets."
    input_model = WebSearchInput
    output_model = WebSearchOutput

    def __init__(self, api_key: str | None = None, timeout: float = 10.0, max_results: int = 10):
        self.api_key = api_key or os.environ.get("TAVILY_API_KEY", "")
        self.timeout = timeout
        self.max_results = max_results  # Upper bound on what the model may ask for

    async def run(self, params: WebSearchInput) -> WebSearchOutput:
        limit = min(params.max_results, self.max_results)
        logger.info(f"Web search: {params.query!r}")
        if not self.api_key:
            return WebSearchOutput(query=params.query, note="Search is not configured (TAVILY_API_KEY missing)")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    TAVILY_ENDPOINT,
                    json={
                        "api_key": self.api_key,
                        "query": params.query,
                        "search_depth": "basic",
                        "max_results": limit,
                    },
                )
                r.raise_for_status()
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Search request failed: {e}") from e

        hits = [
            SearchHit(
                title=item.get("title") or "",
                url=item.get("url") or "",
                snippet=item.get("content") or "",
                relevance_score=item.get("score"),
            )
            for item in r.json().get("results") or []
        ]
        return WebSearchOutput(query=params.query, results=hits[:limit])
