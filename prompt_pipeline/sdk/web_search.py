"""
Web search tool backed by the Google Custom Search JSON API.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from ..core.executor import ToolSpec

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"

# Custom Search rejects larger page sizes
MAX_RESULTS_PER_QUERY = 10

GOOGLE_SEARCH_SPEC = ToolSpec(
    name="google_search",
    description="Use Google Search to get information from the web.",
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to use.",
            },
        },
        "required": ["query"],
    },
)


@dataclass(frozen=True)
class SearchResult:
    title: str
    link: str


class GoogleSearchTool:
    """Search capability the model can call mid-generation."""

    spec = GOOGLE_SEARCH_SPEC

    def __init__(
        self,
        api_key: str,
        cx: str,
        max_results: int = 5,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None
    ):
        if not api_key or not cx:
            raise ValueError("Google API credentials missing.")
        if not 1 <= max_results <= MAX_RESULTS_PER_QUERY:
            raise ValueError(f"max_results must be between 1 and {MAX_RESULTS_PER_QUERY}")
        self.api_key = api_key
        self.cx = cx
        self.max_results = max_results
        self.timeout = timeout
        self.http_client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(
        cls,
        api_key_env: str = "GOOGLE_SEARCH_API_KEY",
        cx_env: str = "GOOGLE_SEARCH_CX",
        **kwargs: Any
    ) -> "GoogleSearchTool":
        """Build the tool from environment variables.

        Raises:
            ValueError: If either variable is unset
        """
        return cls(os.environ.get(api_key_env, ""), os.environ.get(cx_env, ""), **kwargs)

    def search(self, query: str) -> List[SearchResult]:
        """Run a search and return title/link pairs.

        Raises:
            ValueError: If query is empty
            httpx.HTTPError: If the request fails
        """
        if not query or not query.strip():
            raise ValueError("Missing search query.")

        response = self.http_client.get(
            GOOGLE_SEARCH_URL,
            params={"q": query, "key": self.api_key, "cx": self.cx, "num": self.max_results},
        )
        response.raise_for_status()

        items = response.json().get("items") or []
        return [
            SearchResult(title=item.get("title", ""), link=item.get("link", ""))
            for item in items[:self.max_results]
        ]

    def __call__(self, query: str = "", **_: Any) -> str:
        results = self.search(query)
        logger.debug("Search returned %d results", len(results))
        if not results:
            return "No results found."
        return "\n".join(f"{result.title} - {result.link}" for result in results)
