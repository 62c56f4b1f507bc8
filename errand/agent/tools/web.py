"""Web tools: web_search and web_fetch."""

import html
import json
import os
import re
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from errand.agent.tools.base import Tool
from errand.errors import ToolExecutionError, ValidationError

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
MAX_REDIRECTS = 5


def _strip_tags(text: str) -> str:
    """Remove HTML tags and decode entities."""
    text = re.sub(r"<script[\s\S]*?</script>", "", text, flags=re.I)
    text = re.sub(r"<style[\s\S]*?</style>", "", text, flags=re.I)
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text).strip()


def _normalize(text: str) -> str:
    """Normalize whitespace."""
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _to_markdown(raw: str) -> str:
    """Convert the readable parts of an HTML page to rough markdown."""
    raw = re.sub(r"<(nav|header|footer)[\s\S]*?</\1>", "", raw, flags=re.I)
    text = re.sub(
        r'<a\s+[^>]*href=["\']([^"\']+)["\'][^>]*>([\s\S]*?)</a>',
        lambda m: f"[{_strip_tags(m[2])}]({m[1]})",
        raw,
        flags=re.I,
    )
    text = re.sub(
        r"<h([1-6])[^>]*>([\s\S]*?)</h\1>",
        lambda m: f"\n{'#' * int(m[1])} {_strip_tags(m[2])}\n",
        text,
        flags=re.I,
    )
    text = re.sub(r"<li[^>]*>([\s\S]*?)</li>", lambda m: f"\n- {_strip_tags(m[1])}", text, flags=re.I)
    text = re.sub(r"</(p|div|section|article)>", "\n\n", text, flags=re.I)
    text = re.sub(r"<(br|hr)\s*/?>", "\n", text, flags=re.I)
    return _normalize(_strip_tags(text))


def _validate_url(url: str) -> str | None:
    """Return an error message for URLs we refuse to fetch."""
    try:
        p = urlparse(url)
    except ValueError as e:
        return str(e)
    if p.scheme not in ("http", "https"):
        return f"Only http/https allowed, got '{p.scheme or 'none'}'"
    if not p.netloc:
        return "Missing domain"
    return None


class WebSearchTool(Tool):
    """Search the web using Brave Search API."""

    name = "web_search"
    description = "Search the web. Returns titles, URLs, and snippets."
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query", "minLength": 1},
            "count": {"type": "integer", "description": "Results (1-10)", "minimum": 1, "maximum": 10},
        },
        "required": ["query"],
    }

    def __init__(
        self,
        api_key: str | None = None,
        max_results: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or os.environ.get("BRAVE_API_KEY", "")
        self.max_results = max_results
        self._transport = transport

    async def execute(self, query: str, count: int | None = None, **kwargs: Any) -> str:
        if not self.api_key:
            raise ToolExecutionError("BRAVE_API_KEY not configured")

        n = min(max(count or self.max_results, 1), 10)
        logger.debug("web_search: {}", query)
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.get(
                    BRAVE_SEARCH_URL,
                    params={"q": query, "count": n},
                    headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
                    timeout=10.0,
                )
                r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(f"Search API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Search failed: {e}") from e

        results = r.json().get("web", {}).get("results", [])
        if not results:
            return f"No results for: {query}"

        lines = [f"Results for: {query}\n"]
        for i, item in enumerate(results[:n], 1):
            lines.append(f"{i}. {item.get('title', '')}\n   {item.get('url', '')}")
            if desc := item.get("description"):
                lines.append(f"   {desc}")
        return "\n".join(lines)


class WebFetchTool(Tool):
    """Fetch a URL and extract its readable content."""

    name = "web_fetch"
    description = "Fetch URL and extract readable content (HTML to markdown/text)."
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "URL to fetch"},
            "extractMode": {"type": "string", "enum": ["markdown", "text"]},
            "maxChars": {"type": "integer", "minimum": 100},
        },
        "required": ["url"],
    }

    def __init__(self, max_chars: int = 50000, transport: httpx.AsyncBaseTransport | None = None):
        self.max_chars = max_chars
        self._transport = transport

    async def execute(
        self,
        url: str,
        extractMode: str = "markdown",
        maxChars: int | None = None,
        **kwargs: Any,
    ) -> str:
        if problem := _validate_url(url):
            raise ValidationError(f"URL validation failed: {problem}")

        max_chars = maxChars or self.max_chars
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                timeout=30.0,
                transport=self._transport,
            ) as client:
                r = await client.get(url, headers={"User-Agent": USER_AGENT})
                r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(f"Fetch returned {e.response.status_code} for {url}") from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Fetch failed: {e}") from e

        ctype = r.headers.get("content-type", "")
        if "application/json" in ctype:
            text, extractor = json.dumps(r.json(), indent=2), "json"
        elif "text/html" in ctype or r.text[:256].lower().lstrip().startswith(("<!doctype", "<html")):
            if extractMode == "text":
                text, extractor = _normalize(_strip_tags(r.text)), "text"
            else:
                text, extractor = _to_markdown(r.text), "markdown"
        else:
            text, extractor = r.text, "raw"

        truncated = len(text) > max_chars
        if truncated:
            text = text[:max_chars]

        return json.dumps({
            "url": url,
            "finalUrl": str(r.url),
            "status": r.status_code,
            "extractor": extractor,
            "truncated": truncated,
            "length": len(text),
            "text": text,
        })
